"""Build the orchestrator and retrieval engine from AppConfig."""

import logging

from mail_assistant.config import AppConfig, ConfigStore
from mail_assistant.embeddings import EmbeddingProvider, SentenceTransformerEmbeddingProvider
from mail_assistant.orchestrator import ProviderOrchestrator, ProviderRegistration
from mail_assistant.providers import OllamaProvider, OpenAICompatibleProvider
from mail_assistant.repository import MailRepository
from mail_assistant.retrieval import RetrievalEngine
from mail_assistant.vector_store import ChromaVectorStore, VectorStore

logger = logging.getLogger(__name__)


def build_orchestrator(config: AppConfig | None = None) -> ProviderOrchestrator:
    """Create an orchestrator with every enabled backend registered.

    The AI configuration saved in ``state_path`` takes precedence over
    the environment-derived defaults.
    """
    cfg = config or AppConfig()
    orchestrator = ProviderOrchestrator(
        config_store=ConfigStore(cfg.state_path),
        configuration=cfg.ai,
    )

    if cfg.ollama.enabled:
        orchestrator.register(
            ProviderRegistration(
                provider=OllamaProvider(cfg.ollama),
                priority=cfg.ollama.priority,
                max_retries=cfg.ollama.max_retries,
            )
        )
    if cfg.openai.enabled:
        if cfg.openai.api_key is None:
            logger.warning(
                "Provider %s enabled without an API key", cfg.openai.provider_id
            )
        orchestrator.register(
            ProviderRegistration(
                provider=OpenAICompatibleProvider(cfg.openai),
                priority=cfg.openai.priority,
                is_fallback=cfg.openai.provider_id in cfg.ai.fallback_provider_ids,
                max_retries=cfg.openai.max_retries,
            )
        )

    if not orchestrator.get_registered_providers():
        logger.warning("No AI providers enabled")
    return orchestrator


def build_retrieval_engine(
    config: AppConfig | None = None,
    repository: MailRepository | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    vector_store: VectorStore | None = None,
) -> RetrievalEngine:
    """Create a retrieval engine backed by ChromaDB and sentence-transformers.

    Args:
        config: Application configuration. Uses defaults if not provided.
        repository: Source of messages and contacts for retrieved hits.
        embedding_provider: Overrides the configured embedding model.
        vector_store: Overrides the configured ChromaDB collection.

    Returns:
        A configured RetrievalEngine.
    """
    cfg = config or AppConfig()
    embedder = embedding_provider or SentenceTransformerEmbeddingProvider(
        cfg.vector_store.embedding_model,
        dimension=cfg.vector_store.embedding_dimension,
    )
    store = vector_store or ChromaVectorStore(cfg.vector_store)
    return RetrievalEngine(
        embedding_provider=embedder,
        vector_store=store,
        repository=repository,
        config=cfg.rag,
    )
