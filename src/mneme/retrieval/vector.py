"""Brute-force cosine search over stored memory embeddings."""

from __future__ import annotations

import logging

import numpy as np

from mneme.config import VectorConfig
from mneme.embeddings.backends import EmbeddingProvider
from mneme.embeddings.cache import EmbeddingCache
from mneme.exceptions import NotFoundError, ProviderDisabledError, ProviderError
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.types import VectorResult

logger = logging.getLogger(__name__)


def pack_embedding(vector: np.ndarray) -> bytes:
    """Little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def unpack_embedding(blob: bytes | None) -> np.ndarray | None:
    """Inverse of :func:`pack_embedding`; ``None`` for empty or corrupt blobs."""
    if not blob or len(blob) % 4:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape or a.size == 0:
        return 0.0
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


class VectorSearch:
    """Embeds memories and ranks them against a query by cosine similarity."""

    def __init__(
        self,
        store: KnowledgeStore,
        provider: EmbeddingProvider | None,
        config: VectorConfig | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or VectorConfig()
        self.cache = cache or EmbeddingCache()

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled and self.provider is not None)

    def _require_enabled(self) -> EmbeddingProvider:
        if not self.enabled or self.provider is None:
            raise ProviderDisabledError("vector search is disabled")
        return self.provider

    async def generate_embedding(self, text: str) -> np.ndarray:
        provider = self._require_enabled()
        vec = await provider.generate_embedding(text)
        return np.asarray(vec, dtype=np.float32)

    async def index_memory(self, user_id: str, memory_id: str, content: str) -> np.ndarray:
        vec = await self.generate_embedding(content)
        provider = self._require_enabled()
        stored = self.store.set_embedding(
            user_id, memory_id, pack_embedding(vec), f"{provider.name}:{memory_id}"
        )
        if not stored:
            raise NotFoundError(f"memory {memory_id} not found")
        self.cache.put(memory_id, vec)
        return vec

    async def search(self, user_id: str, query: str, limit: int = 10) -> list[VectorResult]:
        q = await self.generate_embedding(query)
        results: list[VectorResult] = []
        for memory, blob in self.store.get_memories_with_embeddings(user_id, limit=self.config.max_scan):
            vec = self.cache.get_or_load(memory.id, lambda b=blob: unpack_embedding(b))
            if vec is None or vec.shape != q.shape:
                continue
            sim = cosine_similarity(q, vec)
            if sim > self.config.min_similarity:
                results.append(VectorResult(
                    memory_id=memory.id,
                    content=memory.content,
                    similarity=sim,
                    memory_type=memory.type.value,
                    importance=memory.importance,
                ))
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    async def search_with_threshold(
        self, user_id: str, query: str, limit: int = 10, min_similarity: float = 0.7
    ) -> list[VectorResult]:
        candidates = await self.search(user_id, query, limit=limit * 2)
        return [r for r in candidates if r.similarity >= min_similarity][:limit]

    async def reindex_all(self, user_id: str, only_missing: bool = False) -> tuple[int, list[str]]:
        """Re-embed a user's memories. Returns ``(indexed, errors)``."""
        self._require_enabled()
        if only_missing:
            memories = self.store.get_memories_without_embeddings(user_id, limit=self.config.max_scan)
        else:
            memories = [m for m, _ in self.store.get_memories_with_embeddings(user_id, limit=self.config.max_scan)]
            memories += self.store.get_memories_without_embeddings(user_id, limit=self.config.max_scan)
        indexed = 0
        errors: list[str] = []
        for memory in memories:
            try:
                await self.index_memory(user_id, memory.id, memory.content)
            except (ProviderError, NotFoundError) as exc:
                logger.warning("reindex of %s failed: %s", memory.id, exc)
                errors.append(f"{memory.id}: {exc}")
                continue
            indexed += 1
        logger.info("reindexed %d memories for %s (%d errors)", indexed, user_id, len(errors))
        return indexed, errors

    def evict(self, memory_id: str) -> None:
        self.cache.evict(memory_id)
