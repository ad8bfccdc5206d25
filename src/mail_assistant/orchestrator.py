"""Provider orchestrator — routes generation requests across backends.

Keeps a registry of generation providers with priorities and retry
budgets, tracks a rolling health record per provider, and executes
requests against an ordered candidate list with same-provider retry
(exponential backoff) and cross-provider fallback.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from mail_assistant.config import AIProviderConfig, ConfigStore
from mail_assistant.errors import (
    AllProvidersFailedError,
    GenerationTimeoutError,
    InvalidConfigurationError,
    NoProviderAvailableError,
    ProviderNotFoundError,
    StreamInterruptedError,
    is_retryable_error,
)
from mail_assistant.models import (
    GenerationRequest,
    GenerationResponse,
    HealthSnapshot,
    WritingStyle,
)
from mail_assistant.providers import GenerationProvider

logger = logging.getLogger(__name__)

CONFIG_KEY = "ai_provider_configuration"

_UNHEALTHY_AFTER_FAILURES = 3
_LATENCY_ALPHA = 0.3
_INITIAL_RESPONSE_TIME = 1.0


@dataclass(frozen=True)
class ProviderRegistration:
    """A provider plus the policy the orchestrator applies to it."""

    provider: GenerationProvider
    priority: int = 0
    is_fallback: bool = False
    max_retries: int = 3


@dataclass
class ProviderHealth:
    """Rolling success/failure record for one provider."""

    is_healthy: bool = True
    last_failure: datetime | None = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    average_response_time: float = _INITIAL_RESPONSE_TIME

    def record_success(self, response_time: float) -> None:
        self.is_healthy = True
        self.consecutive_successes += 1
        self.consecutive_failures = 0
        self.average_response_time = (_LATENCY_ALPHA * response_time) + (
            (1 - _LATENCY_ALPHA) * self.average_response_time
        )

    def record_failure(self) -> None:
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        self.last_failure = datetime.now(UTC)
        if self.consecutive_failures >= _UNHEALTHY_AFTER_FAILURES:
            self.is_healthy = False

    def snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            is_healthy=self.is_healthy,
            average_response_time=self.average_response_time,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            last_failure=self.last_failure,
        )


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry number *attempt* (1-based)."""
    return float(2**attempt)


class ProviderOrchestrator:
    """Owns the provider registry, health table and configuration.

    All mutable state is guarded by a single lock that is never held
    across an ``await``, so provider calls from concurrent requests run
    in parallel while registry and health updates stay consistent.
    """

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        configuration: AIProviderConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Create an orchestrator.

        Args:
            config_store: Where the configuration is loaded from at
                startup and saved to on every update. Optional.
            configuration: Initial configuration, used when the store has
                no saved entry. Defaults to ``AIProviderConfig()``.
            sleep: Awaitable used for backoff between retries.
        """
        self._store = config_store
        self._sleep = sleep
        self._lock = threading.Lock()
        self._registrations: dict[str, ProviderRegistration] = {}
        self._health: dict[str, ProviderHealth] = {}
        self._configuration = configuration or AIProviderConfig()
        self._load_configuration()

    # -- configuration -----------------------------------------------------

    def _load_configuration(self) -> None:
        if self._store is None:
            return
        stored = self._store.load(CONFIG_KEY, AIProviderConfig)
        if stored is not None:
            self._configuration = stored
            logger.info("Loaded AI provider configuration")

    def get_configuration(self) -> AIProviderConfig:
        return self._configuration

    def set_configuration(self, configuration: AIProviderConfig) -> None:
        with self._lock:
            self._configuration = configuration
        if self._store is not None:
            self._store.save(CONFIG_KEY, configuration)
        logger.info("AI provider configuration updated")

    def set_active_provider(self, provider_id: str) -> None:
        """Make *provider_id* the active provider and persist the choice.

        Raises:
            ProviderNotFoundError: If no provider is registered under the id.
        """
        with self._lock:
            if provider_id not in self._registrations:
                raise ProviderNotFoundError(provider_id)
            updated = self._configuration.model_copy(
                update={"active_provider_id": provider_id}
            )
        self.set_configuration(updated)

    # -- registry ----------------------------------------------------------

    def register(self, registration: ProviderRegistration) -> None:
        provider_id = registration.provider.id
        with self._lock:
            self._registrations[provider_id] = registration
            self._health[provider_id] = ProviderHealth()
        logger.info(
            "Registered AI provider: %s (priority=%d)",
            provider_id,
            registration.priority,
        )

    def unregister(self, provider_id: str) -> None:
        with self._lock:
            removed = self._registrations.pop(provider_id, None)
            self._health.pop(provider_id, None)
        if removed is not None:
            logger.info("Unregistered AI provider: %s", provider_id)

    def get_registered_providers(self) -> list[GenerationProvider]:
        """Registered providers, highest priority first."""
        with self._lock:
            ordered = sorted(
                self._registrations.values(), key=lambda r: r.priority, reverse=True
            )
        return [r.provider for r in ordered]

    def get_registration(self, provider_id: str) -> ProviderRegistration | None:
        with self._lock:
            return self._registrations.get(provider_id)

    def get_provider(self, provider_id: str) -> GenerationProvider | None:
        registration = self.get_registration(provider_id)
        return registration.provider if registration else None

    # -- health ------------------------------------------------------------

    def _is_healthy(self, provider_id: str) -> bool:
        health = self._health.get(provider_id)
        return health.is_healthy if health else True

    def _record_success(self, provider_id: str, response_time: float) -> None:
        with self._lock:
            health = self._health.get(provider_id)
            if health is not None:
                health.record_success(response_time)

    def _record_failure(self, provider_id: str) -> None:
        with self._lock:
            health = self._health.get(provider_id)
            if health is not None:
                health.record_failure()
                if not health.is_healthy:
                    logger.warning(
                        "Provider %s marked unhealthy after %d consecutive failures",
                        provider_id,
                        health.consecutive_failures,
                    )

    def get_health(self, provider_id: str) -> HealthSnapshot | None:
        with self._lock:
            health = self._health.get(provider_id)
            return health.snapshot() if health else None

    def reset_health(self, provider_id: str) -> None:
        with self._lock:
            if provider_id in self._registrations:
                self._health[provider_id] = ProviderHealth()
        logger.info("Reset health for provider %s", provider_id)

    # -- selection ---------------------------------------------------------

    def get_active_provider(self) -> GenerationProvider:
        """Return the provider a single-shot caller should use.

        The configured active provider wins while it is healthy; otherwise
        the first healthy fallback in configured order; otherwise the
        highest-priority healthy provider.

        Raises:
            NoProviderAvailableError: If no registered provider is healthy.
        """
        with self._lock:
            config = self._configuration
            active_id = config.active_provider_id
            if active_id and active_id in self._registrations:
                if self._is_healthy(active_id):
                    return self._registrations[active_id].provider
                logger.warning(
                    "Active provider %s is unhealthy, trying fallbacks", active_id
                )

            for fallback_id in config.fallback_provider_ids:
                if fallback_id in self._registrations and self._is_healthy(
                    fallback_id
                ):
                    logger.info("Using fallback provider: %s", fallback_id)
                    return self._registrations[fallback_id].provider

            available = sorted(
                (
                    r
                    for pid, r in self._registrations.items()
                    if self._is_healthy(pid)
                ),
                key=lambda r: r.priority,
                reverse=True,
            )
        if available:
            return available[0].provider
        raise NoProviderAvailableError()

    def resolve_providers(
        self, provider_id: str | None = None
    ) -> list[ProviderRegistration]:
        """Build the ordered candidate list for one call.

        Args:
            provider_id: Pin the call to this provider; no fallback.

        Returns:
            Registrations in the order they should be attempted: active,
            configured fallbacks, then remaining healthy providers by
            descending priority. Unregistered ids are skipped.

        Raises:
            ProviderNotFoundError: If *provider_id* is given but unknown.
            NoProviderAvailableError: If the list would be empty.
        """
        with self._lock:
            if provider_id is not None:
                registration = self._registrations.get(provider_id)
                if registration is None:
                    raise ProviderNotFoundError(provider_id)
                return [registration]

            config = self._configuration
            candidates: list[ProviderRegistration] = []
            seen: set[str] = set()

            active_id = config.active_provider_id
            if active_id and active_id in self._registrations:
                candidates.append(self._registrations[active_id])
                seen.add(active_id)

            for fallback_id in config.fallback_provider_ids:
                if fallback_id in seen or fallback_id not in self._registrations:
                    continue
                candidates.append(self._registrations[fallback_id])
                seen.add(fallback_id)

            remaining = sorted(
                (
                    r
                    for pid, r in self._registrations.items()
                    if pid not in seen and self._is_healthy(pid)
                ),
                key=lambda r: r.priority,
                reverse=True,
            )
            candidates.extend(remaining)

        if not candidates:
            raise NoProviderAvailableError()
        return candidates

    def _apply_defaults(
        self, request: GenerationRequest, stream: bool
    ) -> GenerationRequest:
        """Fill unset sampling fields from configuration, on a copy."""
        config = self._configuration
        return dataclasses.replace(
            request,
            model=request.model if request.model is not None else config.default_model,
            temperature=(
                request.temperature
                if request.temperature is not None
                else config.default_temperature
            ),
            max_tokens=(
                request.max_tokens
                if request.max_tokens is not None
                else config.default_max_tokens
            ),
            stream=stream,
        )

    # -- generation --------------------------------------------------------

    async def generate(
        self,
        request: GenerationRequest,
        provider_id: str | None = None,
        timeout: float | None = None,
    ) -> GenerationResponse:
        """Generate a completion with retry and fallback.

        Args:
            request: The caller's request; never modified.
            provider_id: Pin to one provider (no fallback).
            timeout: Upper bound in seconds for the whole call, all
                candidates and retries included. Defaults to the
                configured ``timeout_seconds``.

        Returns:
            The first successful provider response.

        Raises:
            ProviderNotFoundError: Pinned provider is not registered.
            NoProviderAvailableError: No candidate could be resolved.
            AllProvidersFailedError: Every candidate failed.
            GenerationTimeoutError: The call exceeded *timeout*.
        """
        candidates = self.resolve_providers(provider_id)
        limit = self._configuration.timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                self._generate_with_fallback(request, candidates), timeout=limit
            )
        except TimeoutError as exc:
            logger.error("Generation timed out after %.1fs", limit)
            raise GenerationTimeoutError(limit) from exc

    async def _generate_with_fallback(
        self,
        request: GenerationRequest,
        candidates: list[ProviderRegistration],
    ) -> GenerationResponse:
        errors: list[BaseException] = []

        for registration in candidates:
            provider = registration.provider
            prepared = self._apply_defaults(request, stream=False)
            attempt = 0
            while True:
                attempt += 1
                started = time.monotonic()
                try:
                    response = await provider.generate(prepared)
                except Exception as exc:
                    self._record_failure(provider.id)
                    errors.append(exc)
                    logger.error("Provider %s failed: %s", provider.id, exc)
                    if is_retryable_error(exc) and attempt <= registration.max_retries:
                        delay = backoff_delay(attempt)
                        logger.info(
                            "Retrying provider %s in %.0fs (attempt %d/%d)",
                            provider.id,
                            delay,
                            attempt + 1,
                            registration.max_retries + 1,
                        )
                        await self._sleep(delay)
                        continue
                    break

                self._record_success(provider.id, time.monotonic() - started)
                return response

        raise AllProvidersFailedError(errors)

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        context: Any = None,
        style: WritingStyle | None = None,
    ) -> GenerationResponse:
        """Shortcut for a request with no sampling overrides."""
        request = GenerationRequest(
            prompt=prompt, system_prompt=system_prompt, context=context, style=style
        )
        return await self.generate(request)

    async def stream(
        self,
        request: GenerationRequest,
        provider_id: str | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[str]:
        """Start a streaming generation.

        Candidate resolution happens before this coroutine returns, so
        availability errors are raised here rather than on first
        iteration. The returned iterator retries a provider only before
        its first chunk; once text has been delivered a failure ends the
        stream with StreamInterruptedError.
        """
        candidates = self.resolve_providers(provider_id)
        limit = self._configuration.timeout_seconds if timeout is None else timeout
        return self._stream_with_fallback(request, candidates, limit)

    async def _stream_with_fallback(
        self,
        request: GenerationRequest,
        candidates: list[ProviderRegistration],
        limit: float,
    ) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        errors: list[BaseException] = []

        for registration in candidates:
            provider = registration.provider
            prepared = self._apply_defaults(request, stream=True)
            attempt = 0
            while True:
                attempt += 1
                started = time.monotonic()
                delivered = 0
                chunks = provider.stream(prepared)
                try:
                    while True:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            raise GenerationTimeoutError(limit)
                        try:
                            chunk = await asyncio.wait_for(anext(chunks), remaining)
                        except StopAsyncIteration:
                            break
                        except TimeoutError:
                            if loop.time() >= deadline:
                                raise GenerationTimeoutError(limit) from None
                            raise
                        delivered += 1
                        yield chunk
                except GenerationTimeoutError:
                    logger.error("Streaming timed out after %.1fs", limit)
                    raise
                except Exception as exc:
                    self._record_failure(provider.id)
                    errors.append(exc)
                    logger.error("Provider %s streaming failed: %s", provider.id, exc)
                    if delivered:
                        raise StreamInterruptedError(provider.id, delivered) from exc
                    if is_retryable_error(exc) and attempt <= registration.max_retries:
                        delay = min(backoff_delay(attempt), deadline - loop.time())
                        await self._sleep(max(delay, 0.0))
                        continue
                    break
                finally:
                    aclose = getattr(chunks, "aclose", None)
                    if aclose is not None:
                        await aclose()

                self._record_success(provider.id, time.monotonic() - started)
                return

        raise AllProvidersFailedError(errors)

    # -- validation --------------------------------------------------------

    async def validate_configuration(self, provider_id: str) -> bool:
        """Ask a provider to check its own configuration.

        Raises:
            ProviderNotFoundError: Unknown provider id.
            InvalidConfigurationError: The self-check raised.
        """
        provider = self.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        try:
            return await provider.validate_configuration()
        except Exception as exc:
            raise InvalidConfigurationError(str(exc) or exc.__class__.__name__) from exc

    async def validate_all(self) -> dict[str, bool | InvalidConfigurationError]:
        """Validate every registered provider concurrently.

        Returns:
            Mapping of provider id to the check result, or the
            InvalidConfigurationError raised for that provider.
        """
        with self._lock:
            provider_ids = list(self._registrations)

        async def _check(pid: str) -> bool | InvalidConfigurationError:
            try:
                return await self.validate_configuration(pid)
            except InvalidConfigurationError as exc:
                return exc
            except ProviderNotFoundError as exc:
                # Unregistered while the checks were running.
                return InvalidConfigurationError(str(exc))

        results = await asyncio.gather(*(_check(pid) for pid in provider_ids))
        return dict(zip(provider_ids, results))
