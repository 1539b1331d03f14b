"""In-process embedding cache. The store remains the source of truth."""

from __future__ import annotations

import threading
from typing import Callable

import numpy as np


class EmbeddingCache:
    """Map of memory id to vector guarded by one lock.

    ``get_or_load`` checks, loads and stores while holding the lock, so
    concurrent misses on the same key run the loader once.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()
        self.loads = 0

    def get(self, key: str) -> np.ndarray | None:
        with self._lock:
            return self._vectors.get(key)

    def get_or_load(self, key: str, loader: Callable[[], np.ndarray | None]) -> np.ndarray | None:
        with self._lock:
            vec = self._vectors.get(key)
            if vec is not None:
                return vec
            vec = loader()
            self.loads += 1
            if vec is not None:
                self._vectors[key] = vec
            return vec

    def put(self, key: str, vector: np.ndarray) -> None:
        with self._lock:
            self._vectors[key] = vector

    def evict(self, key: str) -> None:
        with self._lock:
            self._vectors.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._vectors.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._vectors)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._vectors
