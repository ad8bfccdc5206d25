"""Embedding providers that turn text into fixed-size vectors."""

import asyncio
import functools
import hashlib
import logging
import re
from typing import Protocol, runtime_checkable

import numpy as np
from chromadb.utils import embedding_functions

logger = logging.getLogger(__name__)

# Module-level cache to avoid re-creating the embedding function repeatedly.
_embedding_fn_cache: dict[str, object] = {}

_TOKEN_RE = re.compile(r"[^\W_]+")

# Upper bound on memoized token vectors shared by all hashing providers.
TOKEN_CACHE_SIZE = 4096


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that can produce embedding vectors from text."""

    dimension: int

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a cached SentenceTransformer embedding function.

    Embedding functions are cached at module level so the model is
    loaded only once per model name, regardless of how many providers
    are created.

    Args:
        model_name: HuggingFace model identifier for the embedding model.

    Returns:
        A SentenceTransformerEmbeddingFunction instance (cached).
    """
    if model_name not in _embedding_fn_cache:
        _embedding_fn_cache[model_name] = (
            embedding_functions.SentenceTransformerEmbeddingFunction(
                model_name=model_name,
            )
        )
    return _embedding_fn_cache[model_name]  # type: ignore[return-value]


class SentenceTransformerEmbeddingProvider:
    """Embeddings from a local sentence-transformers model.

    Encoding is CPU-bound, so it runs in a worker thread.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", dimension: int = 384) -> None:
        self.model_name = model_name
        self.dimension = dimension

    def _encode(self, texts: list[str]) -> list[list[float]]:
        embed_fn = get_embedding_function(self.model_name)
        return [np.asarray(vec, dtype=float).tolist() for vec in embed_fn(texts)]

    async def embed(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self._encode, [text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


@functools.lru_cache(maxsize=TOKEN_CACHE_SIZE)
def _token_vector(token: str, dimension: int) -> np.ndarray:
    """Pseudo-random vector for *token*, seeded from a stable hash of it."""
    seed = int.from_bytes(hashlib.sha256(token.encode("utf-8")).digest()[:8], "big")
    vector = np.random.default_rng(seed).uniform(-1.0, 1.0, dimension)
    vector.flags.writeable = False
    return vector


class HashingEmbeddingProvider:
    """Deterministic bag-of-words embeddings that need no model download.

    Every token maps to a pseudo-random vector seeded from a stable hash
    of the token; a text's embedding is the L2-normalized mean of its
    token vectors. Useful offline and in tests, not for quality retrieval.
    """

    def __init__(self, dimension: int = 384) -> None:
        self.dimension = dimension

    def _encode(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return [0.0] * self.dimension
        mean = np.mean([_token_vector(t, self.dimension) for t in tokens], axis=0)
        norm = np.linalg.norm(mean)
        if norm > 0:
            mean = mean / norm
        return mean.tolist()

    async def embed(self, text: str) -> list[float]:
        return self._encode(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._encode(text) for text in texts]
