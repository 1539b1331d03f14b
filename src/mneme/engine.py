"""Knowledge engine: wires storage, extraction, search, vectors and compaction behind the tool surface."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict
from typing import Any

from mneme.config import Config
from mneme.consolidation.compressor import Compressor
from mneme.embeddings.backends import EmbeddingProvider, create_provider
from mneme.embeddings.cache import EmbeddingCache
from mneme.exceptions import NotFoundError, ProviderError, ValidationError
from mneme.graph.extractor import Extractor
from mneme.llm.backends import ChatBackend, create_chat_backend
from mneme.retrieval.question import is_question
from mneme.retrieval.search import KnowledgeSearch
from mneme.retrieval.vector import VectorSearch
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.timeparse import RANGE_ALIASES, time_window
from mneme.types import (
    Entity,
    EntityType,
    ExtractionResult,
    Memory,
    MemoryType,
    Relationship,
    SearchQuery,
    TimeRange,
)
from mneme.workers import BackgroundExtractor

logger = logging.getLogger(__name__)

SUPPORTED_FORGET_TYPES = ("memory",)


def _entity_out(entity: Entity, relevance: float | None = None) -> dict[str, Any]:
    out = entity.model_dump(mode="json")
    if relevance is not None:
        out["relevance"] = round(relevance, 4)
    return out


def _memory_out(memory: Memory, relevance: float | None = None) -> dict[str, Any]:
    out = memory.model_dump(mode="json")
    if relevance is not None:
        out["relevance"] = round(relevance, 4)
    return out


def _relationship_out(rel: Relationship, relevance: float | None = None) -> dict[str, Any]:
    out = rel.model_dump(mode="json", exclude={"source", "target"})
    if rel.source is not None:
        out["source_name"] = rel.source.name
    if rel.target is not None:
        out["target_name"] = rel.target.name
    if relevance is not None:
        out["relevance"] = round(relevance, 4)
    return out


def summarize_extraction(result: ExtractionResult) -> str:
    """Human-readable one-liner such as "Found 2 persons, 1 place and extracted 1 memories."."""
    parts: list[str] = []
    if result.entities:
        counts: dict[str, int] = {}
        for e in result.entities:
            counts[e.type.value] = counts.get(e.type.value, 0) + 1
        names = [f"1 {t}" if n == 1 else f"{n} {t}s" for t, n in counts.items()]
        parts.append(f"Found {', '.join(names)}")
    if result.memories:
        parts.append(f"extracted {len(result.memories)} memories")
    if not parts:
        return "No knowledge extracted"
    return " and ".join(parts) + "."


def _require_user(user_id: str) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")
    return user_id


def _parse_entity_type(value: str | EntityType | None) -> EntityType | None:
    if value is None or value == "" or value == "all":
        return None
    try:
        return EntityType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown entity type: {value}") from exc


def _parse_time_range(value: str | TimeRange | None) -> TimeRange | None:
    if value is None or isinstance(value, TimeRange):
        return value
    key = value.strip().lower()
    if not key or key == "all":
        return None
    phrase = RANGE_ALIASES.get(key, key)
    window = time_window(phrase)
    if window is None:
        raise ValidationError(f"unknown time range: {value}")
    return window


class KnowledgeEngine:
    """Central orchestrator exposing the knowledge tools per user."""

    def __init__(
        self,
        config: Config | None = None,
        chat: ChatBackend | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()

        self.store = KnowledgeStore(self.config.db_path)
        self.extractor = Extractor(self.store, self.config.extraction)

        if chat is None:
            chat = create_chat_backend(self.config.chat, ollama_host=self.config.vector.ollama_host)
        self.chat = chat
        if provider is None and self.config.vector.enabled:
            provider = create_provider(self.config.vector)
        self.provider = provider

        self.embed_cache = EmbeddingCache()
        self.vectors = VectorSearch(self.store, provider, self.config.vector, self.embed_cache)
        self.search = KnowledgeSearch(self.store, self.vectors, self.config.search, chat)
        self.compressor = Compressor(
            self.store, self.config.compression, chat, on_created=self._index_best_effort
        )
        self.workers = BackgroundExtractor(
            self.extractor,
            max_workers=self.config.extraction.background_workers,
            timeout=self.config.extraction.background_timeout,
            on_stored=self._index_best_effort,
        )

    # --- Ingest ---

    async def remember(self, user_id: str, text: str, conversation_id: str = "") -> dict[str, Any]:
        user_id = _require_user(user_id)
        if not (text or "").strip():
            raise ValidationError("text is required")
        result = self.extractor.process_and_store(user_id, text, conversation_id=conversation_id)
        for memory_id in result.memory_ids:
            await self._index_best_effort(user_id, memory_id)
        extraction = result.extraction
        return {
            "extracted": {
                "entities": len(extraction.entities),
                "relationships": len(extraction.relationships),
                "memories": len(extraction.memories),
            },
            "stored": result.stored,
            "confidence": extraction.overall_confidence,
            "summary": summarize_extraction(extraction),
            "errors": list(result.errors),
        }

    def submit_extraction(self, user_id: str, text: str, conversation_id: str = "") -> asyncio.Task:
        """Queue ``remember``-style extraction without waiting for it."""
        user_id = _require_user(user_id)
        if not (text or "").strip():
            raise ValidationError("text is required")
        return self.workers.submit(user_id, text, conversation_id)

    async def add_memory(
        self,
        user_id: str,
        content: str,
        type: str | MemoryType = "fact",
        category: str = "",
        importance: int = 5,
    ) -> dict[str, Any]:
        user_id = _require_user(user_id)
        content = (content or "").strip()
        if not content:
            raise ValidationError("content is required")
        try:
            mtype = MemoryType(type or MemoryType.FACT)
        except ValueError as exc:
            raise ValidationError(f"unknown memory type: {type}") from exc
        try:
            importance = int(importance)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"importance must be an integer: {importance!r}") from exc

        memory = self.store.create_memory(Memory(
            user_id=user_id,
            content=content,
            type=mtype,
            category=(category or "").strip(),
            importance=importance,
            confidence=1.0,
        ))
        linked = self.extractor.process_and_store(user_id, content, store_memories=False)
        for entity_id in linked.entity_ids:
            self.store.link_entity(user_id, memory.id, entity_id)
        await self._index_best_effort(user_id, memory.id)
        return {"memory_id": memory.id, "stored": True}

    def create_entity(
        self,
        user_id: str,
        name: str,
        type: str | EntityType = "concept",
        description: str = "",
        importance: int = 5,
    ) -> dict[str, Any]:
        """Explicitly register an entity. An existing name is returned as-is."""
        user_id = _require_user(user_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        etype = _parse_entity_type(type) or EntityType.CONCEPT
        existing = self.store.get_entity_by_name(user_id, name)
        if existing is not None:
            return {"entity_id": existing.id, "created": False, "entity": _entity_out(existing)}
        try:
            entity = Entity(
                user_id=user_id, type=etype, name=name,
                description=(description or "").strip(), importance=int(importance),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc)) from exc
        entity = self.store.create_entity(entity)
        return {"entity_id": entity.id, "created": True, "entity": _entity_out(entity)}

    async def _index_best_effort(self, user_id: str, memory_id: str) -> None:
        if not self.vectors.enabled:
            return
        memory = self.store.get_memory(user_id, memory_id)
        if memory is None:
            return
        try:
            await self.vectors.index_memory(user_id, memory_id, memory.content)
        except (ProviderError, NotFoundError) as exc:
            logger.warning("indexing %s failed: %s", memory_id, exc)

    # --- Retrieval ---

    async def recall(
        self,
        user_id: str,
        query: str,
        entity_type: str | EntityType | None = None,
        time_range: str | TimeRange | None = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        user_id = _require_user(user_id)
        query = (query or "").strip()
        if not query:
            raise ValidationError("query is required")
        etype = _parse_entity_type(entity_type)
        window = _parse_time_range(time_range)
        limit = max(1, int(limit or self.config.search.default_limit))

        if is_question(query):
            result = await self.search.query_answer(
                user_id, query,
                entity_types=[etype] if etype else None,
                time_range=window,
                limit=limit,
            )
        else:
            result = await self.search.execute(user_id, SearchQuery(
                text=query,
                entity_types=[etype] if etype else [],
                time_range=window,
                limit=limit,
            ))

        for scored in result.memories:
            self.store.record_access(user_id, scored.memory.id)

        return {
            "query": query,
            "entities": [_entity_out(s.entity, s.relevance) for s in result.entities],
            "memories": [_memory_out(s.memory, s.relevance) for s in result.memories],
            "relationships": [_relationship_out(s.relationship, s.relevance) for s in result.relationships],
            "answer": result.answer,
            "confidence": result.confidence,
        }

    def get_entity(self, user_id: str, name: str) -> dict[str, Any]:
        user_id = _require_user(user_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        entity = self.store.get_entity_by_name(user_id, name)
        if entity is None:
            return {"found": False, "message": f"I don't know anything about '{name}'"}
        return {
            "found": True,
            "entity": _entity_out(entity),
            "relationships": [_relationship_out(r) for r in self.store.get_relationships(user_id, entity.id)],
            "memories": [_memory_out(m) for m in self.store.get_memories_for_entity(user_id, entity.id, limit=10)],
        }

    def list_entities(
        self, user_id: str, entity_type: str | EntityType | None = None, limit: int = 20
    ) -> dict[str, Any]:
        user_id = _require_user(user_id)
        etype = _parse_entity_type(entity_type)
        if etype is None:
            entities = self.store.list_entities(user_id, limit=limit)
        else:
            entities = self.store.get_entities_by_type(user_id, etype, limit=limit)
        return {"entities": [_entity_out(e) for e in entities], "count": len(entities)}

    def find_path(self, user_id: str, source: str, target: str, max_depth: int = 3) -> dict[str, Any]:
        """Shortest relationship chain between two entities given by id or name."""
        user_id = _require_user(user_id)
        src = self._resolve_entity(user_id, source)
        dst = self._resolve_entity(user_id, target)
        path = self.search.find_path(user_id, src.id, dst.id, max_depth=max_depth)
        return {
            "source": src.name,
            "target": dst.name,
            "hops": len(path),
            "path": [_relationship_out(r) for r in path],
        }

    def _resolve_entity(self, user_id: str, ref: str) -> Entity:
        ref = (ref or "").strip()
        if not ref:
            raise ValidationError("entity reference is required")
        entity = self.store.get_entity(user_id, ref) or self.store.get_entity_by_name(user_id, ref)
        if entity is None:
            raise NotFoundError(f"entity '{ref}' not found")
        return entity

    def get_stats(self, user_id: str) -> dict[str, Any]:
        user_id = _require_user(user_id)
        return asdict(self.store.get_stats(user_id))

    # --- Lifecycle ---

    def forget(self, user_id: str, type: str, id: str, confirm: bool = False) -> dict[str, Any]:
        user_id = _require_user(user_id)
        item_type = (type or "").strip().lower()
        item_id = (id or "").strip()
        if not item_type or not item_id:
            raise ValidationError("type and id are required")
        if item_type not in SUPPORTED_FORGET_TYPES:
            raise ValidationError(f"unsupported type: {type}")
        if not confirm:
            return {
                "confirm_required": True,
                "message": f"Set confirm=true to delete this {item_type}",
            }
        if not self.store.delete_memory(user_id, item_id):
            return {
                "deleted": False,
                "found": False,
                "type": item_type,
                "id": item_id,
                "message": f"No {item_type} with id '{item_id}'",
            }
        self.vectors.evict(item_id)
        logger.info("forgot %s %s for %s", item_type, item_id, user_id)
        return {"deleted": True, "type": item_type, "id": item_id}

    async def compact(self, user_id: str) -> dict[str, Any]:
        user_id = _require_user(user_id)
        return asdict(await self.compressor.run(user_id))

    async def reindex(self, user_id: str, only_missing: bool = False) -> dict[str, Any]:
        user_id = _require_user(user_id)
        indexed, errors = await self.vectors.reindex_all(user_id, only_missing=only_missing)
        return {"indexed": indexed, "errors": errors}

    async def close(self) -> None:
        await self.workers.close()
        for obj in (self.provider, self.chat):
            close_fn = getattr(obj, "close", None)
            if close_fn is None:
                continue
            maybe = close_fn()
            if inspect.isawaitable(maybe):
                await maybe
        self.store.close()
