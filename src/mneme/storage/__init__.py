"""Persistence layer."""

from mneme.storage.sqlite_store import KnowledgeStore, MemoryFilters

__all__ = ["KnowledgeStore", "MemoryFilters"]
