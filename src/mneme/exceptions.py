"""Error taxonomy for the knowledge engine."""

from __future__ import annotations


class MnemeError(Exception):
    """Base class for all engine errors."""


class NotFoundError(MnemeError):
    """Entity, relationship or memory absent."""


class NoPathError(NotFoundError):
    """No relationship chain connects two entities within the depth limit."""

    def __init__(self, source_id: str, target_id: str, max_depth: int) -> None:
        super().__init__(f"no path from {source_id} to {target_id} within {max_depth} hops")
        self.source_id = source_id
        self.target_id = target_id
        self.max_depth = max_depth


class ValidationError(MnemeError):
    """Missing or invalid caller input."""


class ProviderDisabledError(MnemeError):
    """The vector subsystem is not enabled."""


class ProviderError(MnemeError):
    """Network or API failure from an embedding or chat provider."""


class StorageError(MnemeError):
    """Underlying persistence failure."""
