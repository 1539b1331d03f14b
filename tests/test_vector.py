from __future__ import annotations

import asyncio

import httpx
import numpy as np
import pytest

from mneme.config import VectorConfig
from mneme.embeddings import EmbeddingCache, LocalEmbeddingProvider, OllamaEmbeddingProvider, create_provider
from mneme.exceptions import NotFoundError, ProviderDisabledError, ProviderError
from mneme.retrieval.vector import VectorSearch, cosine_similarity, pack_embedding, unpack_embedding
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.types import Memory


class _FakeProvider:
    """Maps known texts to fixed vectors; anything else is the zero vector."""

    name = "fake"
    dimension = 3

    def __init__(self, table: dict[str, list[float]]) -> None:
        self.table = table
        self.calls = 0

    async def generate_embedding(self, text: str) -> np.ndarray:
        self.calls += 1
        return np.asarray(self.table.get(text, [0.0, 0.0, 0.0]), dtype=np.float32)

    async def close(self) -> None:
        return None


class _FailingProvider:
    name = "broken"
    dimension = 3

    async def generate_embedding(self, text: str) -> np.ndarray:
        raise ProviderError("upstream unavailable")

    async def close(self) -> None:
        return None


def _store(tmp_path) -> KnowledgeStore:
    return KnowledgeStore(tmp_path / "db" / "mneme.db")


def test_cosine_similarity_properties():
    rng = np.random.default_rng(7)
    a = rng.standard_normal(64).astype(np.float32)
    b = rng.standard_normal(64).astype(np.float32)
    assert cosine_similarity(a, a) == pytest.approx(1.0, abs=1e-6)
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a), abs=1e-9)
    assert cosine_similarity(a, np.zeros(64)) == 0.0
    assert cosine_similarity(a, a[:32]) == 0.0


def test_unpack_rejects_empty_and_corrupt_blobs():
    vec = np.asarray([0.5, -1.0, 2.0], dtype=np.float32)
    assert np.array_equal(unpack_embedding(pack_embedding(vec)), vec)
    assert unpack_embedding(b"") is None
    assert unpack_embedding(None) is None
    assert unpack_embedding(b"\x00\x01\x02") is None


def test_local_provider_is_deterministic_and_normalised():
    async def _run() -> None:
        a = await LocalEmbeddingProvider(dimension=64).generate_embedding("hiking in Yosemite")
        b = await LocalEmbeddingProvider(dimension=64).generate_embedding("hiking in Yosemite")
        assert a.shape == (64,)
        assert np.allclose(a, b)
        assert float(np.linalg.norm(a)) == pytest.approx(1.0, abs=1e-5)
        empty = await LocalEmbeddingProvider(dimension=64).generate_embedding("")
        assert not empty.any()

    asyncio.run(_run())


def test_create_provider_falls_back_to_local():
    provider = create_provider(VectorConfig(provider="does-not-exist", dimension=32))
    assert provider.name == "local"
    assert provider.dimension == 32


def test_disabled_subsystem_raises(tmp_path):
    async def _run() -> None:
        store = _store(tmp_path)
        try:
            off = VectorSearch(store, LocalEmbeddingProvider(), VectorConfig(enabled=False))
            assert not off.enabled
            with pytest.raises(ProviderDisabledError):
                await off.search("u1", "anything")
            missing = VectorSearch(store, None, VectorConfig(enabled=True))
            with pytest.raises(ProviderDisabledError):
                await missing.generate_embedding("anything")
        finally:
            store.close()

    asyncio.run(_run())


def test_index_and_search_ranks_by_similarity(tmp_path):
    async def _run() -> None:
        store = _store(tmp_path)
        provider = _FakeProvider({
            "hiking trip": [1.0, 0.0, 0.0],
            "mountain walk": [0.9, 0.3, 0.0],
            "tax forms": [0.0, 0.0, 1.0],
            "hiking": [1.0, 0.1, 0.0],
        })
        vs = VectorSearch(store, provider, VectorConfig(min_similarity=0.5))
        try:
            ids = {}
            for text in ("hiking trip", "mountain walk", "tax forms"):
                mem = store.create_memory(Memory(user_id="u1", content=text))
                await vs.index_memory("u1", mem.id, text)
                ids[text] = mem.id
            other = store.create_memory(Memory(user_id="u2", content="hiking trip"))
            await vs.index_memory("u2", other.id, "hiking trip")

            results = await vs.search("u1", "hiking", limit=10)
            assert [r.memory_id for r in results] == [ids["hiking trip"], ids["mountain walk"]]
            assert results[0].similarity > results[1].similarity > 0.5

            strict = await vs.search_with_threshold("u1", "hiking", limit=10, min_similarity=0.99)
            assert [r.memory_id for r in strict] == [ids["hiking trip"]]

            with pytest.raises(NotFoundError):
                await vs.index_memory("u1", "mem_missing", "hiking")
        finally:
            store.close()

    asyncio.run(_run())


def test_search_loads_each_stored_vector_once(tmp_path):
    async def _run() -> None:
        store = _store(tmp_path)
        provider = _FakeProvider({"a": [1.0, 0.0, 0.0]})
        try:
            mem = store.create_memory(Memory(user_id="u1", content="a"))
            store.set_embedding("u1", mem.id, pack_embedding(np.asarray([1.0, 0.0, 0.0])), "fake:x")
            cache = EmbeddingCache()
            vs = VectorSearch(store, provider, VectorConfig(), cache)
            await vs.search("u1", "a")
            await vs.search("u1", "a")
            assert cache.loads == 1
            assert mem.id in cache
            vs.evict(mem.id)
            assert mem.id not in cache
        finally:
            store.close()

    asyncio.run(_run())


def test_reindex_collects_provider_failures(tmp_path):
    async def _run() -> None:
        store = _store(tmp_path)
        try:
            store.create_memory(Memory(user_id="u1", content="one"))
            store.create_memory(Memory(user_id="u1", content="two"))
            vs = VectorSearch(store, _FailingProvider(), VectorConfig())
            indexed, errors = await vs.reindex_all("u1")
            assert indexed == 0
            assert len(errors) == 2
            assert all("upstream unavailable" in e for e in errors)
        finally:
            store.close()

    asyncio.run(_run())


def test_ollama_provider_parses_and_wraps_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if b"boom" in request.content:
            return httpx.Response(500, json={"error": "model not loaded"})
        return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

    async def _run() -> None:
        provider = OllamaEmbeddingProvider(model="all-minilm")
        provider._client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://ollama.test"
        )
        try:
            assert provider.dimension == 384
            vec = await provider.generate_embedding("hello")
            assert vec.dtype == np.float32
            assert vec.tolist() == pytest.approx([0.1, 0.2, 0.3])
            with pytest.raises(ProviderError):
                await provider.generate_embedding("boom")
        finally:
            await provider.close()

    asyncio.run(_run())
