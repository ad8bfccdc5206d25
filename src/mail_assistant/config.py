"""Centralized configuration for the mail assistant."""

import json
import logging
import threading
from pathlib import Path
from typing import Annotated, TypeVar

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _parse_str_list(v: object) -> list[str]:
    """Accept a JSON array string or comma-separated string from env vars."""
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
        except (json.JSONDecodeError, ValueError):
            parsed = [item.strip() for item in v.split(",") if item.strip()]
        if not isinstance(parsed, list):
            return [str(parsed)]
        return [str(item) for item in parsed]
    return v  # type: ignore[return-value]


class AIProviderConfig(BaseSettings):
    """Provider selection and request defaults for the orchestrator."""

    model_config = SettingsConfigDict(env_prefix="AI_", frozen=True)

    active_provider_id: str | None = None
    fallback_provider_ids: Annotated[list[str], NoDecode] = Field(default_factory=list)
    default_model: str | None = None
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=2048, gt=0)
    enable_streaming: bool = True
    timeout_seconds: float = Field(default=60.0, gt=0)

    @field_validator("fallback_provider_ids", mode="before")
    @classmethod
    def _parse_fallbacks(cls, v: object) -> list[str]:
        return _parse_str_list(v)


class RAGConfig(BaseSettings):
    """Retrieval and ranking parameters."""

    model_config = SettingsConfigDict(env_prefix="RAG_", frozen=True)

    top_k: int = Field(default=5, gt=0)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_context_tokens: int = Field(default=2000, gt=0)
    include_recent_emails: bool = True
    recent_emails_limit: int = Field(default=10, ge=0)
    time_decay_enabled: bool = True
    time_decay_days: int = Field(default=90, gt=0)


class StyleConfig(BaseSettings):
    """Writing-style learning from the user's sent mail."""

    model_config = SettingsConfigDict(env_prefix="STYLE_", frozen=True)

    enabled: bool = True
    min_emails: int = Field(default=5, gt=0)
    phrase_threshold: int = Field(default=3, gt=0)
    max_patterns: int = Field(default=5, gt=0)


class VectorStoreConfig(BaseSettings):
    """ChromaDB vector store and embedding model settings."""

    model_config = SettingsConfigDict(env_prefix="VS_", frozen=True)

    db_path: str = "./chroma_db"
    collection_name: str = "mail_embeddings"
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimension: int = Field(default=384, gt=0)


class OllamaConfig(BaseSettings):
    """Local Ollama backend settings."""

    model_config = SettingsConfigDict(env_prefix="OLLAMA_", frozen=True)

    enabled: bool = True
    host: str = "http://localhost:11434"
    model: str = "gemma3:1b"
    available_models: Annotated[list[str], NoDecode] = Field(
        default=["gemma3:1b", "llama3.2:1b"],
    )
    priority: int = 10
    max_retries: int = Field(default=3, ge=0)

    @field_validator("available_models", mode="before")
    @classmethod
    def _parse_available_models(cls, v: object) -> list[str]:
        return _parse_str_list(v)


class OpenAICompatibleConfig(BaseSettings):
    """A hosted backend speaking the OpenAI chat-completions protocol."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_", frozen=True)

    enabled: bool = False
    provider_id: str = "openai"
    name: str = "OpenAI"
    base_url: str = "https://api.openai.com/v1"
    api_key: SecretStr | None = None
    model: str = "gpt-4o-mini"
    priority: int = 5
    max_retries: int = Field(default=3, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)


class ServerConfig(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(env_prefix="SERVER_", frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=8000, gt=0, le=65535)
    ssl_certfile: str | None = None
    ssl_keyfile: str | None = None


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(frozen=True)

    mailbox_dir: str = "./mailbox"
    state_path: str = "./mail_assistant_state.json"
    ai: AIProviderConfig = Field(default_factory=AIProviderConfig)
    rag: RAGConfig = Field(default_factory=RAGConfig)
    style: StyleConfig = Field(default_factory=StyleConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    openai: OpenAICompatibleConfig = Field(default_factory=OpenAICompatibleConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


class ConfigStore:
    """JSON key-value file holding runtime-editable configuration.

    Each key maps to one serialized settings model. The whole file is
    rewritten on every save.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("Could not read configuration from %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, key: str, model: type[_ModelT]) -> _ModelT | None:
        """Load and validate the value stored under *key*.

        Args:
            key: Entry name in the JSON file.
            model: Pydantic model class to validate the entry with.

        Returns:
            The validated model, or None if the entry is missing or invalid.
        """
        with self._lock:
            raw = self._read().get(key)
        if raw is None:
            return None
        try:
            return model.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring invalid stored configuration for %r", key)
            return None

    def save(self, key: str, value: BaseModel) -> None:
        """Serialize *value* under *key*, keeping the other entries."""
        with self._lock:
            data = self._read()
            data[key] = value.model_dump(mode="json")
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.debug("Saved configuration %r to %s", key, self.path)
