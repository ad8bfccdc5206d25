"""Vector stores for message embeddings."""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import chromadb
import numpy as np

from mail_assistant.config import VectorStoreConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VectorSearchHit:
    """One similarity-search match."""

    email_id: str
    similarity: float
    metadata: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class VectorStore(Protocol):
    async def store(
        self, email_id: str, embedding: list[float], metadata: dict[str, str]
    ) -> None: ...

    async def search(
        self, query: list[float], top_k: int, threshold: float
    ) -> list[VectorSearchHit]: ...

    async def delete(self, email_id: str) -> None: ...

    async def has_embedding(self, email_id: str) -> bool: ...


def _cosine_similarity(vec_a: np.ndarray, vec_b: np.ndarray) -> float:
    """Compute cosine similarity between two vectors."""
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))


def get_client(config: VectorStoreConfig | None = None) -> chromadb.PersistentClient:
    """Return a ChromaDB persistent client.

    Args:
        config: Vector store settings (db path, etc.).
            Uses defaults if not provided.

    Returns:
        A ChromaDB PersistentClient connected to the configured path.
    """
    cfg = config or VectorStoreConfig()
    return chromadb.PersistentClient(path=cfg.db_path)


class ChromaVectorStore:
    """Embeddings persisted in a ChromaDB collection with cosine distance.

    Vectors are computed by the caller; the collection has no embedding
    function of its own. ChromaDB calls are blocking and run in a worker
    thread.
    """

    def __init__(
        self,
        config: VectorStoreConfig | None = None,
        client: chromadb.ClientAPI | None = None,
    ) -> None:
        self.config = config or VectorStoreConfig()
        self._client = client or get_client(self.config)
        self._collection = self._client.get_or_create_collection(
            name=self.config.collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    @property
    def collection(self) -> chromadb.Collection:
        return self._collection

    def count(self) -> int:
        return self._collection.count()

    def _store(self, email_id: str, embedding: list[float], metadata: dict[str, str]) -> None:
        self._collection.upsert(
            ids=[email_id],
            embeddings=[embedding],
            metadatas=[metadata] if metadata else None,
        )

    def _search(self, query: list[float], top_k: int, threshold: float) -> list[VectorSearchHit]:
        count = self._collection.count()
        if count == 0:
            return []
        results = self._collection.query(
            query_embeddings=[query],
            n_results=min(top_k, count),
            include=["metadatas", "distances"],
        )
        ids = results.get("ids", [[]])[0]
        metadatas = results.get("metadatas", [[]])[0]
        distances = results.get("distances", [[]])[0]

        hits = []
        for email_id, meta, dist in zip(ids, metadatas, distances):
            similarity = 1 - dist  # cosine distance → similarity
            if similarity < threshold:
                continue
            hits.append(
                VectorSearchHit(
                    email_id=email_id,
                    similarity=min(max(similarity, 0.0), 1.0),
                    metadata={k: str(v) for k, v in (meta or {}).items()},
                )
            )
        return hits

    def _has_embedding(self, email_id: str) -> bool:
        return bool(self._collection.get(ids=[email_id], include=["metadatas"])["ids"])

    async def store(self, email_id: str, embedding: list[float], metadata: dict[str, str]) -> None:
        await asyncio.to_thread(self._store, email_id, embedding, metadata)

    async def search(self, query: list[float], top_k: int, threshold: float) -> list[VectorSearchHit]:
        return await asyncio.to_thread(self._search, query, top_k, threshold)

    async def delete(self, email_id: str) -> None:
        await asyncio.to_thread(self._collection.delete, ids=[email_id])

    async def has_embedding(self, email_id: str) -> bool:
        return await asyncio.to_thread(self._has_embedding, email_id)


class InMemoryVectorStore:
    """Exact cosine search over vectors held in memory."""

    def __init__(self) -> None:
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    async def store(self, email_id: str, embedding: list[float], metadata: dict[str, str]) -> None:
        with self._lock:
            self._vectors[email_id] = np.asarray(embedding, dtype=float)
            self._metadata[email_id] = dict(metadata)

    async def search(self, query: list[float], top_k: int, threshold: float) -> list[VectorSearchHit]:
        query_vec = np.asarray(query, dtype=float)
        with self._lock:
            items = list(self._vectors.items())
            metadata = dict(self._metadata)

        hits = []
        for email_id, vector in items:
            similarity = min(max(_cosine_similarity(query_vec, vector), 0.0), 1.0)
            if similarity >= threshold:
                hits.append(VectorSearchHit(email_id, similarity, metadata[email_id]))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:top_k]

    async def delete(self, email_id: str) -> None:
        with self._lock:
            self._vectors.pop(email_id, None)
            self._metadata.pop(email_id, None)

    async def has_embedding(self, email_id: str) -> bool:
        with self._lock:
            return email_id in self._vectors
