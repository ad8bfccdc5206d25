"""Generation providers: the backends the orchestrator routes requests to."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import httpx
import ollama

from mail_assistant.config import OllamaConfig, OpenAICompatibleConfig
from mail_assistant.errors import (
    AIProviderError,
    ProviderNotConfiguredError,
    ProviderRequestError,
    RateLimitedError,
)
from mail_assistant.models import GenerationRequest, GenerationResponse, ModelInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class GenerationProvider(Protocol):
    """Anything that can turn a GenerationRequest into text.

    Implementations must be safe to call concurrently.
    """

    id: str
    name: str

    async def generate(self, request: GenerationRequest) -> GenerationResponse: ...

    def stream(self, request: GenerationRequest) -> AsyncIterator[str]: ...

    async def validate_configuration(self) -> bool: ...

    async def available_models(self) -> list[ModelInfo]: ...


def build_messages(request: GenerationRequest) -> list[dict[str, str]]:
    """Convert a request into chat messages (optional system + user)."""
    messages = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.append({"role": "user", "content": request.prompt})
    return messages


class OllamaProvider:
    """Local models served by Ollama."""

    def __init__(
        self,
        config: OllamaConfig | None = None,
        provider_id: str = "ollama",
        client: ollama.AsyncClient | None = None,
    ) -> None:
        self.config = config or OllamaConfig()
        self.id = provider_id
        self.name = "Ollama"
        self._client = client or ollama.AsyncClient(host=self.config.host)

    def _options(self, request: GenerationRequest) -> dict:
        options = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        return options

    def _map_error(self, exc: ollama.ResponseError) -> AIProviderError:
        if exc.status_code == 429:
            return RateLimitedError(self.id)
        return ProviderRequestError(self.id, exc.status_code, exc.error)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Run a non-streaming chat completion.

        Args:
            request: Request with defaults already applied.

        Returns:
            The completion text plus token accounting from Ollama.

        Raises:
            RateLimitedError: If Ollama answers 429.
            ProviderRequestError: For any other error status.
        """
        model = request.model or self.config.model
        try:
            response = await self._client.chat(
                model=model,
                messages=build_messages(request),
                options=self._options(request),
            )
        except ollama.ResponseError as exc:
            raise self._map_error(exc) from exc

        tokens = (response.get("prompt_eval_count") or 0) + (
            response.get("eval_count") or 0
        )
        return GenerationResponse(
            text=response["message"]["content"],
            model=response.get("model") or model,
            tokens_used=tokens,
            finish_reason=response.get("done_reason") or "stop",
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        model = request.model or self.config.model
        try:
            parts = await self._client.chat(
                model=model,
                messages=build_messages(request),
                options=self._options(request),
                stream=True,
            )
            async for part in parts:
                content = part["message"]["content"]
                if content:
                    yield content
        except ollama.ResponseError as exc:
            raise self._map_error(exc) from exc

    async def available_models(self) -> list[ModelInfo]:
        listing = await self._client.list()
        models = []
        for entry in listing.get("models") or []:
            model_id = entry.get("model") or entry.get("name")
            if model_id:
                models.append(ModelInfo(id=model_id, name=model_id))
        return models

    async def validate_configuration(self) -> bool:
        """Check that Ollama is reachable and serves the configured model."""
        models = {m.id for m in await self.available_models()}
        if self.config.model not in models:
            logger.warning(
                "Ollama model %s not pulled (available: %s)",
                self.config.model,
                ", ".join(sorted(models)) or "none",
            )
            return False
        return True


class OpenAICompatibleProvider:
    """A hosted backend exposing ``/chat/completions`` with SSE streaming."""

    def __init__(
        self,
        config: OpenAICompatibleConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or OpenAICompatibleConfig()
        self.id = self.config.provider_id
        self.name = self.config.name
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )

    def _headers(self) -> dict[str, str]:
        api_key = self.config.api_key.get_secret_value() if self.config.api_key else ""
        if not api_key:
            raise ProviderNotConfiguredError(self.id)
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, request: GenerationRequest, stream: bool) -> dict:
        payload = {
            "model": request.model or self.config.model,
            "messages": build_messages(request),
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Map an error response to the orchestrator's taxonomy."""
        if response.status_code < 400:
            return
        message = ""
        try:
            message = response.json().get("error", {}).get("message", "")
        except (ValueError, AttributeError):
            message = response.text[:200]
        if response.status_code == 401:
            raise ProviderNotConfiguredError(self.id)
        if response.status_code == 429:
            raise RateLimitedError(self.id, _parse_retry_after(response))
        raise ProviderRequestError(self.id, response.status_code, message)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        response = await self._client.post(
            "/chat/completions",
            headers=self._headers(),
            json=self._payload(request, stream=False),
        )
        self._raise_for_status(response)
        body = response.json()
        choice = body["choices"][0]
        return GenerationResponse(
            text=choice["message"]["content"] or "",
            model=body.get("model") or request.model or self.config.model,
            tokens_used=(body.get("usage") or {}).get("total_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
        )

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            "/chat/completions",
            headers=self._headers(),
            json=self._payload(request, stream=True),
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response)
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    return
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Skipping undecodable stream chunk from %s", self.id)
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    yield content

    async def available_models(self) -> list[ModelInfo]:
        response = await self._client.get("/models", headers=self._headers())
        self._raise_for_status(response)
        return [
            ModelInfo(id=entry["id"], name=entry["id"])
            for entry in response.json().get("data", [])
        ]

    async def validate_configuration(self) -> bool:
        """An API key is set and the backend accepts it."""
        await self.available_models()
        return True


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
