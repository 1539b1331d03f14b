"""mneme: personal knowledge memory engine."""

__version__ = "0.1.0"

from mneme.config import Config
from mneme.engine import KnowledgeEngine
from mneme.exceptions import (
    MnemeError,
    NoPathError,
    NotFoundError,
    ProviderDisabledError,
    ProviderError,
    StorageError,
    ValidationError,
)

__all__ = [
    "__version__",
    "Config",
    "KnowledgeEngine",
    "MnemeError",
    "NoPathError",
    "NotFoundError",
    "ProviderDisabledError",
    "ProviderError",
    "StorageError",
    "ValidationError",
]
