"""Embedding providers and the vector cache."""

from mneme.embeddings.backends import (
    PROVIDERS,
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_provider,
)
from mneme.embeddings.cache import EmbeddingCache

__all__ = [
    "PROVIDERS",
    "EmbeddingCache",
    "EmbeddingProvider",
    "LocalEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "create_provider",
]
