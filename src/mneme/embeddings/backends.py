"""Embedding providers: deterministic local hashing plus remote HTTP variants."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from typing import Callable, Protocol, runtime_checkable

import httpx
import numpy as np

from mneme.config import VectorConfig
from mneme.exceptions import ProviderError

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str
    dimension: int

    async def generate_embedding(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


class LocalEmbeddingProvider:
    """Hash-seeded token vectors, summed and L2-normalised.

    Stable across runs and processes; no network or API keys. Quality is
    lexical only: texts sharing tokens score high, paraphrases do not.
    """

    name = "local"
    _TOKEN_RE = re.compile(r"[a-z0-9_']+")

    def __init__(self, dimension: int = 384, max_vocab: int = 50_000) -> None:
        self.dimension = max(8, int(dimension))
        self.max_vocab = max_vocab
        self._vocab: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def _token_vector(self, token: str) -> np.ndarray:
        with self._lock:
            vec = self._vocab.get(token)
        if vec is not None:
            return vec
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        rng = np.random.default_rng(int.from_bytes(digest, "little", signed=False))
        vec = rng.standard_normal(self.dimension).astype(np.float32)
        vec /= float(np.linalg.norm(vec)) or 1.0
        with self._lock:
            if len(self._vocab) < self.max_vocab:
                vec = self._vocab.setdefault(token, vec)
        return vec

    def encode(self, text: str) -> np.ndarray:
        out = np.zeros((self.dimension,), dtype=np.float32)
        for token in self._TOKEN_RE.findall((text or "").lower()):
            out += self._token_vector(token)
        norm = float(np.linalg.norm(out))
        if norm > 0.0:
            out /= norm
        return out

    async def generate_embedding(self, text: str) -> np.ndarray:
        return self.encode(text)

    async def close(self) -> None:
        return None


_OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbeddingProvider:
    name = "openai"

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.model = model or "text-embedding-3-small"
        self.dimension = _OPENAI_DIMENSIONS.get(self.model, 1536)
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY is required for the openai embedding provider")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._client

    async def generate_embedding(self, text: str) -> np.ndarray:
        client = await self._get_client()
        try:
            resp = await client.post("/embeddings", json={"model": self.model, "input": text})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"openai embedding request failed: {exc}") from exc
        items = data.get("data") or []
        if not items or not items[0].get("embedding"):
            raise ProviderError("openai returned no embedding")
        return np.asarray(items[0]["embedding"], dtype=np.float32)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


_OLLAMA_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
}


class OllamaEmbeddingProvider:
    name = "ollama"

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        timeout: float = 30.0,
    ) -> None:
        self.model = model or "nomic-embed-text"
        self.dimension = _OLLAMA_DIMENSIONS.get(self.model.split(":")[0], 4096)
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def generate_embedding(self, text: str) -> np.ndarray:
        client = await self._get_client()
        try:
            resp = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"ollama embedding request failed: {exc}") from exc
        embedding = data.get("embedding") or []
        if not embedding:
            raise ProviderError("ollama returned no embedding")
        return np.asarray(embedding, dtype=np.float32)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _local(cfg: VectorConfig) -> EmbeddingProvider:
    return LocalEmbeddingProvider(dimension=cfg.dimension)


def _openai(cfg: VectorConfig) -> EmbeddingProvider:
    return OpenAIEmbeddingProvider(
        api_key=cfg.openai_api_key,
        model=cfg.model or "text-embedding-3-small",
        base_url=cfg.openai_base_url,
        timeout=cfg.timeout,
    )


def _ollama(cfg: VectorConfig) -> EmbeddingProvider:
    return OllamaEmbeddingProvider(
        model=cfg.model or "nomic-embed-text",
        base_url=cfg.ollama_host,
        timeout=cfg.timeout,
    )


PROVIDERS: dict[str, Callable[[VectorConfig], EmbeddingProvider]] = {
    "local": _local,
    "openai": _openai,
    "ollama": _ollama,
}


def create_provider(config: VectorConfig | None = None) -> EmbeddingProvider:
    """Look up the configured provider; unknown names fall back to local."""
    cfg = config or VectorConfig()
    name = (cfg.provider or "local").strip().lower()
    factory = PROVIDERS.get(name)
    if factory is None:
        logger.warning("unknown embedding provider %r, using local", cfg.provider)
        factory = PROVIDERS["local"]
    return factory(cfg)
