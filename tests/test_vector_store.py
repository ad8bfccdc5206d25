"""Tests for the vector_store module."""

import pytest

from mail_assistant.config import VectorStoreConfig
from mail_assistant.vector_store import (
    ChromaVectorStore,
    InMemoryVectorStore,
    VectorStore,
    get_client,
)


@pytest.fixture
def tmp_db_config(tmp_path) -> VectorStoreConfig:
    """Return a config pointing to a temporary ChromaDB directory."""
    return VectorStoreConfig(db_path=str(tmp_path / "chroma"), collection_name="test_mail")


@pytest.fixture
def chroma_store(tmp_db_config: VectorStoreConfig) -> ChromaVectorStore:
    return ChromaVectorStore(tmp_db_config)


class TestGetClient:
    def test_returns_persistent_client(self, tmp_db_config: VectorStoreConfig) -> None:
        assert get_client(tmp_db_config) is not None


class TestChromaVectorStore:
    def test_satisfies_protocol(self, chroma_store) -> None:
        assert isinstance(chroma_store, VectorStore)

    def test_collection_name(self, chroma_store) -> None:
        assert chroma_store.collection.name == "test_mail"

    @pytest.mark.asyncio
    async def test_store_and_has_embedding(self, chroma_store) -> None:
        assert await chroma_store.has_embedding("e1") is False
        await chroma_store.store("e1", [1.0, 0.0, 0.0], {"subject": "Hi"})
        assert await chroma_store.has_embedding("e1") is True
        assert chroma_store.count() == 1

    @pytest.mark.asyncio
    async def test_store_is_upsert(self, chroma_store) -> None:
        await chroma_store.store("e1", [1.0, 0.0, 0.0], {"subject": "old"})
        await chroma_store.store("e1", [0.0, 1.0, 0.0], {"subject": "new"})
        assert chroma_store.count() == 1

    @pytest.mark.asyncio
    async def test_search_on_empty_collection(self, chroma_store) -> None:
        assert await chroma_store.search([1.0, 0.0, 0.0], top_k=5, threshold=0.0) == []

    @pytest.mark.asyncio
    async def test_search_orders_and_filters(self, chroma_store) -> None:
        await chroma_store.store("same", [1.0, 0.0, 0.0], {"subject": "same"})
        await chroma_store.store("close", [0.9, 0.1, 0.0], {"subject": "close"})
        await chroma_store.store("orthogonal", [0.0, 0.0, 1.0], {"subject": "far"})

        hits = await chroma_store.search([1.0, 0.0, 0.0], top_k=5, threshold=0.5)

        assert [h.email_id for h in hits] == ["same", "close"]
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
        assert hits[0].metadata == {"subject": "same"}

    @pytest.mark.asyncio
    async def test_search_respects_top_k(self, chroma_store) -> None:
        for i in range(4):
            await chroma_store.store(f"e{i}", [1.0, float(i) / 10, 0.0], {})
        hits = await chroma_store.search([1.0, 0.0, 0.0], top_k=2, threshold=0.0)
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_delete(self, chroma_store) -> None:
        await chroma_store.store("e1", [1.0, 0.0, 0.0], {})
        await chroma_store.delete("e1")
        assert await chroma_store.has_embedding("e1") is False

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_db_config) -> None:
        await ChromaVectorStore(tmp_db_config).store("e1", [1.0, 0.0, 0.0], {})
        assert await ChromaVectorStore(tmp_db_config).has_embedding("e1") is True


class TestInMemoryVectorStore:
    @pytest.mark.asyncio
    async def test_search_orders_and_filters(self) -> None:
        store = InMemoryVectorStore()
        await store.store("a", [1.0, 0.0], {"k": "a"})
        await store.store("b", [0.6, 0.8], {"k": "b"})
        await store.store("c", [-1.0, 0.0], {"k": "c"})

        hits = await store.search([1.0, 0.0], top_k=5, threshold=0.5)

        assert [h.email_id for h in hits] == ["a", "b"]
        assert hits[1].similarity == pytest.approx(0.6)
        assert hits[1].metadata == {"k": "b"}

    @pytest.mark.asyncio
    async def test_negative_similarity_clamped(self) -> None:
        store = InMemoryVectorStore()
        await store.store("c", [-1.0, 0.0], {})
        hits = await store.search([1.0, 0.0], top_k=5, threshold=0.0)
        assert hits[0].similarity == 0.0

    @pytest.mark.asyncio
    async def test_zero_vector(self) -> None:
        store = InMemoryVectorStore()
        await store.store("z", [0.0, 0.0], {})
        hits = await store.search([1.0, 0.0], top_k=1, threshold=0.1)
        assert hits == []

    @pytest.mark.asyncio
    async def test_delete_and_len(self) -> None:
        store = InMemoryVectorStore()
        await store.store("a", [1.0], {})
        assert len(store) == 1
        await store.delete("a")
        await store.delete("a")
        assert len(store) == 0
        assert await store.has_embedding("a") is False
