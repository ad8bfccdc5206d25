"""Retrieval engine — index past mail and find grounding examples for replies."""

import dataclasses
import logging
import threading
from collections import OrderedDict
from datetime import UTC, datetime

from mail_assistant.config import RAGConfig
from mail_assistant.embeddings import EmbeddingProvider
from mail_assistant.errors import RetrievalError
from mail_assistant.models import (
    Email,
    PromptContext,
    RAGExample,
    RAGSearchResult,
    ResponseLength,
    ResponseTone,
    WritingStyle,
)
from mail_assistant.prompts import detect_purpose
from mail_assistant.repository import MailRepository
from mail_assistant.vector_store import VectorSearchHit, VectorStore

logger = logging.getLogger(__name__)

INDEX_BATCH_SIZE = 32
CHARS_PER_TOKEN = 4
DEFAULT_CACHE_SIZE = 1000

_SIMILARITY_WEIGHT = 0.7
_DECAY_WEIGHT = 0.3
_SECONDS_PER_DAY = 24 * 60 * 60


class EmbeddingCache:
    """Bounded map of email id to embedding, in least-recently-used order.

    When full, the oldest tenth of the entries is evicted before inserting.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, email_id: object) -> bool:
        with self._lock:
            return email_id in self._entries

    def get(self, email_id: str) -> list[float] | None:
        with self._lock:
            vector = self._entries.get(email_id)
            if vector is not None:
                self._entries.move_to_end(email_id)
            return vector

    def put(self, email_id: str, vector: list[float]) -> None:
        with self._lock:
            if email_id in self._entries:
                self._entries.move_to_end(email_id)
            elif len(self._entries) >= self.max_size:
                for _ in range(max(1, self.max_size // 10)):
                    self._entries.popitem(last=False)
            self._entries[email_id] = vector

    def pop(self, email_id: str) -> list[float] | None:
        with self._lock:
            return self._entries.pop(email_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def apply_time_decay(
    similarity: float,
    sent_date: datetime | None,
    config: RAGConfig,
    now: datetime | None = None,
) -> float:
    """Down-weight older matches.

    ``adjusted = 0.7 * s + 0.3 * decay * s`` where ``decay`` falls linearly
    from 1 (sent now) to 0 (``time_decay_days`` old or more). Messages
    without a date get no recency credit. Naive datetimes are taken as UTC.

    Args:
        similarity: Raw similarity in [0, 1].
        sent_date: When the matched message was sent.
        config: Supplies ``time_decay_enabled`` and ``time_decay_days``.
        now: Reference time; defaults to the current time.

    Returns:
        The adjusted similarity, never above *similarity*.
    """
    if not config.time_decay_enabled:
        return similarity
    if sent_date is None:
        decay = 0.0
    else:
        now = _aware(now or datetime.now(UTC))
        days = (now - _aware(sent_date)).total_seconds() / _SECONDS_PER_DAY
        decay = min(max(1.0 - days / config.time_decay_days, 0.0), 1.0)
    return similarity * _SIMILARITY_WEIGHT + decay * _DECAY_WEIGHT * similarity


def prepare_email_content(email: Email) -> str:
    """Text that is embedded for a message: subject, sender, then body."""
    content = ""
    if email.subject:
        content += f"Subject: {email.subject}\n\n"
    content += f"From: {email.sender_display}\n"
    content += f"\n{email.body_text}"
    return content


def _metadata(email: Email, content: str) -> dict[str, str]:
    return {
        "subject": email.subject or "",
        "sender": email.sender_email,
        "date": email.sent_date.isoformat() if email.sent_date else "",
        "content": content,
    }


class RetrievalEngine:
    """Indexes mail into a vector store and retrieves similar past messages.

    Every collaborator is optional. Without an embedding provider and a
    vector store, indexing is skipped and retrieval returns nothing, each
    with a logged warning. Without a repository, hits cannot be resolved
    to messages and are dropped.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider | None = None,
        vector_store: VectorStore | None = None,
        repository: MailRepository | None = None,
        config: RAGConfig | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._lock = threading.Lock()
        self._embedding_provider = embedding_provider
        self._vector_store = vector_store
        self._repository = repository
        self._config = config or RAGConfig()
        self.cache = EmbeddingCache(cache_size)

    # -- configuration -------------------------------------------------------

    def configure(
        self,
        embedding_provider: EmbeddingProvider | None = None,
        vector_store: VectorStore | None = None,
        repository: MailRepository | None = None,
        config: RAGConfig | None = None,
    ) -> None:
        """Replace the collaborators; *config* is only replaced when given."""
        with self._lock:
            self._embedding_provider = embedding_provider
            self._vector_store = vector_store
            if repository is not None:
                self._repository = repository
            if config is not None:
                self._config = config
        logger.info(
            "Retrieval engine configured (embedding dimension %d)",
            embedding_provider.dimension if embedding_provider else 0,
        )

    def set_configuration(self, config: RAGConfig) -> None:
        with self._lock:
            self._config = config
        logger.info("Retrieval configuration updated")

    def get_configuration(self) -> RAGConfig:
        with self._lock:
            return self._config

    @property
    def is_configured(self) -> bool:
        with self._lock:
            return self._embedding_provider is not None and self._vector_store is not None

    def _collaborators(
        self,
    ) -> tuple[EmbeddingProvider | None, VectorStore | None, MailRepository | None, RAGConfig]:
        with self._lock:
            return (
                self._embedding_provider,
                self._vector_store,
                self._repository,
                self._config,
            )

    # -- indexing ------------------------------------------------------------

    async def index(self, email: Email) -> bool:
        """Embed and store one message.

        Returns:
            True if the message was indexed, False if it was skipped
            (engine unconfigured or message already indexed).

        Raises:
            RetrievalError: If embedding or storing fails.
        """
        embedder, store, _, _ = self._collaborators()
        if embedder is None or store is None:
            logger.warning("Retrieval engine not configured, skipping indexing")
            return False

        try:
            if await store.has_embedding(email.id):
                logger.debug("Email %s already indexed", email.id)
                return False
            content = prepare_email_content(email)
            vector = await embedder.embed(content)
            await store.store(email.id, vector, _metadata(email, content))
        except Exception as exc:
            raise RetrievalError(f"Failed to index email {email.id}: {exc}") from exc

        self.cache.put(email.id, vector)
        logger.debug("Indexed email %s", email.id)
        return True

    async def index_many(self, emails: list[Email]) -> int:
        """Index every message not yet in the store, in batches of 32.

        Returns:
            Number of messages newly indexed.

        Raises:
            RetrievalError: If embedding or storing fails. Batches stored
                before the failure stay indexed.
        """
        embedder, store, _, _ = self._collaborators()
        if embedder is None or store is None:
            logger.warning("Retrieval engine not configured, skipping indexing")
            return 0

        logger.info("Batch indexing %d emails", len(emails))
        indexed = 0
        try:
            pending = []
            seen = set()
            for email in emails:
                if email.id in seen or await store.has_embedding(email.id):
                    continue
                seen.add(email.id)
                pending.append(email)

            if not pending:
                logger.info("All emails already indexed")
                return 0

            for start in range(0, len(pending), INDEX_BATCH_SIZE):
                batch = pending[start : start + INDEX_BATCH_SIZE]
                contents = [prepare_email_content(e) for e in batch]
                vectors = await embedder.embed_batch(contents)
                for email, content, vector in zip(batch, contents, vectors):
                    await store.store(email.id, vector, _metadata(email, content))
                    self.cache.put(email.id, vector)
                    indexed += 1
        except Exception as exc:
            raise RetrievalError(
                f"Batch indexing failed after {indexed} email(s): {exc}"
            ) from exc

        logger.info("Indexed %d new emails", indexed)
        return indexed

    async def remove(self, email_id: str) -> None:
        _, store, _, _ = self._collaborators()
        if store is not None:
            try:
                await store.delete(email_id)
            except Exception as exc:
                raise RetrievalError(f"Failed to remove email {email_id}: {exc}") from exc
        self.cache.pop(email_id)
        logger.debug("Removed email %s from index", email_id)

    # -- retrieval -----------------------------------------------------------

    async def retrieve_similar(
        self, query: str, limit: int | None = None
    ) -> list[RAGSearchResult]:
        """Find indexed messages similar to free text.

        Args:
            query: Text to search for.
            limit: Maximum results; defaults to ``top_k``.

        Returns:
            Results sorted by time-decayed similarity, best first.

        Raises:
            RetrievalError: If embedding the query or searching fails.
        """
        embedder, store, _, _ = self._collaborators()
        if embedder is None or store is None:
            logger.warning("Retrieval engine not configured, returning no results")
            return []
        try:
            vector = await embedder.embed(query)
        except Exception as exc:
            raise RetrievalError(f"Failed to embed query: {exc}") from exc
        return await self._search(vector, limit)

    async def retrieve_similar_to(
        self, email: Email, limit: int | None = None
    ) -> list[RAGSearchResult]:
        """Like retrieve_similar, using a message as the query.

        The cached embedding of *email* is reused when present, and *email*
        itself never appears in the results.
        """
        embedder, store, _, _ = self._collaborators()
        if embedder is None or store is None:
            logger.warning("Retrieval engine not configured, returning no results")
            return []
        vector = self.cache.get(email.id)
        if vector is None:
            try:
                vector = await embedder.embed(prepare_email_content(email))
            except Exception as exc:
                raise RetrievalError(f"Failed to embed email {email.id}: {exc}") from exc
        return await self._search(vector, limit, exclude_id=email.id)

    async def _search(
        self,
        vector: list[float],
        limit: int | None,
        exclude_id: str | None = None,
    ) -> list[RAGSearchResult]:
        _, store, repository, config = self._collaborators()
        effective_limit = limit if limit is not None else config.top_k
        if effective_limit <= 0:
            return []

        # Over-fetch so decay re-ranking and dropped hits still fill the limit.
        fetch = effective_limit * 2 + (1 if exclude_id else 0)
        try:
            hits = await store.search(vector, fetch, config.similarity_threshold)
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc

        if repository is None:
            if hits:
                logger.warning("No mail repository configured, dropping %d hits", len(hits))
            return []

        now = datetime.now(UTC)
        results = []
        for hit in hits:
            if hit.email_id == exclude_id:
                continue
            email = await self._load_hit(repository, hit)
            if email is None:
                continue
            results.append(
                RAGSearchResult(
                    email=email,
                    similarity=apply_time_decay(hit.similarity, email.sent_date, config, now),
                    matched_text=hit.metadata.get("content") or email.body_text,
                )
            )

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:effective_limit]

    async def _load_hit(self, repository: MailRepository, hit: VectorSearchHit) -> Email | None:
        try:
            email = await repository.load_email(hit.email_id)
        except Exception:
            logger.exception("Failed to load email %s", hit.email_id)
            return None
        if email is None:
            logger.debug("Indexed email %s no longer in repository", hit.email_id)
        return email

    async def _find_user_response(
        self, repository: MailRepository, email: Email
    ) -> str | None:
        thread_id = email.thread_id or email.id
        try:
            reply = await repository.load_prior_response(thread_id, email.sent_date)
        except Exception:
            logger.exception("Failed to find user response in thread %s", thread_id)
            return None
        if reply is None:
            return None
        return reply.body_text or None

    async def get_rag_examples(self, email: Email) -> list[RAGExample]:
        """Similar past messages that the user answered, with their answers.

        Raises:
            RetrievalError: If the underlying search fails.
        """
        _, _, repository, _ = self._collaborators()
        if repository is None:
            return []
        examples = []
        for result in await self.retrieve_similar_to(email):
            response = await self._find_user_response(repository, result.email)
            if response:
                examples.append(
                    dataclasses.replace(result, user_response=response).to_example()
                )
        return examples

    async def _thread_context(
        self, repository: MailRepository, email: Email, limit: int
    ) -> list[Email]:
        thread_id = email.thread_id or email.id
        try:
            thread = await repository.load_thread(thread_id, limit + 1)
        except Exception:
            logger.exception("Failed to load thread %s", thread_id)
            return []
        return [e for e in thread if e.id != email.id][-limit:] if limit > 0 else []

    async def assemble_context(
        self,
        email: Email,
        thread_emails: list[Email] | None = None,
        style: WritingStyle | None = None,
        tone: ResponseTone = ResponseTone.AUTO,
        length: ResponseLength = ResponseLength.MEDIUM,
    ) -> PromptContext:
        """Gather everything needed to prompt for a reply to *email*.

        Each optional part degrades independently: a failed search yields
        no examples, a failed contact lookup no sender information.

        Args:
            email: The message being answered.
            thread_emails: Earlier messages of the conversation. When None
                and ``include_recent_emails`` is set, they are loaded from
                the repository.
            style: The user's writing style profile, if known.
            tone: Requested tone.
            length: Requested length.

        Returns:
            A PromptContext whose examples fit in ``max_context_tokens``.
        """
        _, _, repository, config = self._collaborators()

        try:
            examples = await self.get_rag_examples(email)
        except RetrievalError:
            logger.exception("Retrieval failed, drafting without examples")
            examples = []
        examples = _fit_to_budget(examples, config.max_context_tokens)

        contact = None
        if repository is not None:
            try:
                contact = await repository.load_contact(email.sender_email)
            except Exception:
                logger.exception("Failed to load contact %s", email.sender_email)

        if thread_emails is None:
            thread_emails = []
            if repository is not None and config.include_recent_emails:
                thread_emails = await self._thread_context(
                    repository, email, config.recent_emails_limit
                )

        return PromptContext(
            email=email,
            thread_context=tuple(thread_emails),
            sender_contact=contact,
            user_writing_style=style,
            rag_examples=tuple(examples),
            tone=tone,
            length=length,
            purpose=detect_purpose(email),
        )


def _fit_to_budget(examples: list[RAGExample], max_tokens: int) -> list[RAGExample]:
    """Keep examples, best first, while their text fits in *max_tokens*."""
    budget = max_tokens * CHARS_PER_TOKEN
    kept = []
    used = 0
    for example in sorted(examples, key=lambda e: e.similarity, reverse=True):
        size = len(example.incoming_email) + len(example.user_response)
        if used + size > budget:
            break
        kept.append(example)
        used += size
    return kept
