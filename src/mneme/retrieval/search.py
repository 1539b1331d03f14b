"""Structured + semantic search over the knowledge graph, with answer synthesis."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta

from mneme.config import SearchConfig
from mneme.exceptions import NoPathError, ProviderError
from mneme.llm.backends import ChatBackend, simple_chat
from mneme.retrieval.question import (
    extract_entity_candidates,
    parse_question,
    question_keywords,
    synthesize_answer,
)
from mneme.retrieval.vector import VectorSearch
from mneme.storage.sqlite_store import KnowledgeStore, MemoryFilters
from mneme.timeparse import find_time_reference, time_window
from mneme.types import (
    Entity,
    EntityType,
    Memory,
    Relationship,
    ScoredEntity,
    ScoredMemory,
    ScoredRelationship,
    SearchQuery,
    SearchResult,
    TimeRange,
)
from mneme.utils import utcnow

logger = logging.getLogger(__name__)

_RECENT = timedelta(days=7)

_POLISH_SYSTEM = (
    "You rewrite answers from a personal memory assistant. Keep every fact, "
    "add nothing new, and reply with one or two natural sentences."
)


def entity_relevance(entity: Entity, now: datetime | None = None) -> float:
    now = now or utcnow()
    score = 0.5
    if entity.mention_count > 5:
        score += 0.1
    if entity.mention_count > 10:
        score += 0.1
    if entity.last_mentioned is not None and now - entity.last_mentioned < _RECENT:
        score += 0.1
    score += entity.importance / 100
    return min(score, 1.0)


def memory_relevance(memory: Memory, now: datetime | None = None) -> float:
    now = now or utcnow()
    score = 0.5 + memory.importance / 20
    if memory.access_count > 5:
        score += 0.1
    if memory.last_accessed is not None and now - memory.last_accessed < _RECENT:
        score += 0.1
    return min(score, 1.0)


class KnowledgeSearch:
    """Executes structured queries, blends in vector hits and answers questions."""

    def __init__(
        self,
        store: KnowledgeStore,
        vectors: VectorSearch | None = None,
        config: SearchConfig | None = None,
        chat: ChatBackend | None = None,
    ) -> None:
        self.store = store
        self.vectors = vectors
        self.config = config or SearchConfig()
        self.chat = chat

    async def execute(self, user_id: str, query: SearchQuery) -> SearchResult:
        now = utcnow()
        result = SearchResult()

        explicit_ids: list[str] = []
        found: dict[str, ScoredEntity] = {}
        for name in query.entities:
            entity = self.store.get_entity_by_name(user_id, name)
            if entity is not None and entity.id not in found:
                found[entity.id] = ScoredEntity(entity, 1.0, ["name"])
                explicit_ids.append(entity.id)
        for term in [query.text, *query.keywords]:
            if not term.strip():
                continue
            for entity in self.store.search_entities(user_id, term, limit=query.limit):
                if entity.id not in found:
                    found[entity.id] = ScoredEntity(entity, entity_relevance(entity, now), ["text"])
        entities = list(found.values())
        if query.entity_types:
            allowed = {EntityType(t) for t in query.entity_types}
            entities = [s for s in entities if s.entity.type in allowed]
        entities.sort(key=lambda s: s.relevance, reverse=True)
        result.entities = entities[: query.limit]

        result.memories = await self._search_memories(user_id, query, explicit_ids, now)

        seen_rels: set[str] = set()
        for scored in result.entities:
            for rel in self.store.get_relationships(user_id, scored.entity.id):
                if rel.id in seen_rels:
                    continue
                seen_rels.add(rel.id)
                result.relationships.append(ScoredRelationship(rel, scored.relevance * 0.9))

        result.confidence = 0.8 if (result.entities or result.memories) else 0.0
        return result

    async def _search_memories(
        self,
        user_id: str,
        query: SearchQuery,
        entity_ids: list[str],
        now: datetime,
    ) -> list[ScoredMemory]:
        window = query.time_range
        filters = MemoryFilters(
            types=list(query.memory_types),
            categories=list(query.categories),
            entity_ids=entity_ids,
            since=window.start if window else None,
            until=window.end if window else None,
            text=query.text,
            keywords=list(query.keywords),
            limit=query.limit,
        )
        scored = [
            ScoredMemory(m, memory_relevance(m, now), ["text"])
            for m in self.store.get_memories(user_id, filters)
        ]

        semantic_text = query.semantic_text or query.text
        if self.vectors is not None and self.vectors.enabled and semantic_text.strip():
            by_id = {s.memory.id: s for s in scored}
            for hit in await self.vectors.search(user_id, semantic_text, limit=query.limit):
                if hit.memory_id in by_id:
                    by_id[hit.memory_id].matches.append("semantic")
                    continue
                memory = self.store.get_memory(user_id, hit.memory_id)
                if memory is None or not self._passes(memory, query, entity_ids, window):
                    continue
                item = ScoredMemory(memory, memory_relevance(memory, now), ["semantic"])
                by_id[memory.id] = item
                scored.append(item)

        scored.sort(key=lambda s: s.relevance, reverse=True)
        return scored[: query.limit]

    @staticmethod
    def _passes(
        memory: Memory,
        query: SearchQuery,
        entity_ids: list[str],
        window: TimeRange | None,
    ) -> bool:
        if query.memory_types and memory.type not in query.memory_types:
            return False
        if query.categories and memory.category not in query.categories:
            return False
        if entity_ids and not any(eid in memory.entity_ids for eid in entity_ids):
            return False
        if window is not None and not window.contains(memory.event_time):
            return False
        return True

    async def query_answer(
        self,
        user_id: str,
        question: str,
        entity_types: list[EntityType] | None = None,
        time_range: TimeRange | None = None,
        limit: int | None = None,
    ) -> SearchResult:
        qtype = parse_question(question)
        window = time_range
        if window is None:
            phrase = find_time_reference(question)
            window = time_window(phrase) if phrase else None

        names = extract_entity_candidates(question)
        resolved = any(self.store.get_entity_by_name(user_id, n) for n in names)
        query = SearchQuery(
            semantic_text=question,
            entities=names,
            keywords=[] if resolved else question_keywords(question),
            entity_types=list(entity_types or []),
            time_range=window,
            limit=limit or self.config.default_limit,
        )
        result = await self.execute(user_id, query)
        result.question_type = qtype.value
        result.answer = await self._polish(question, synthesize_answer(qtype, result), result)
        return result

    async def _polish(self, question: str, answer: str, result: SearchResult) -> str:
        if self.chat is None or not self.config.polish_answers or result.empty:
            return answer
        context = "\n".join(f"- {s.memory.content}" for s in result.memories[:5])
        prompt = f"Question: {question}\nDraft answer: {answer}\nMemories:\n{context}"
        try:
            polished = await simple_chat(self.chat, _POLISH_SYSTEM, prompt)
        except ProviderError as exc:
            logger.warning("answer polishing skipped: %s", exc)
            return answer
        return polished or answer

    def find_path(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        max_depth: int = 3,
    ) -> list[Relationship]:
        """Shortest relationship chain, ignoring edge direction.

        ``max_depth`` bounds the number of entities on the path, endpoints
        included, so the chain has at most ``max_depth - 1`` relationships.
        Non-positive values mean 3. Raises :class:`NoPathError` when no chain
        fits.
        """
        if max_depth <= 0:
            max_depth = 3
        if source_id == target_id:
            return []
        visited = {source_id}
        queue: deque[tuple[str, list[Relationship]]] = deque([(source_id, [])])
        while queue:
            node, chain = queue.popleft()
            if len(chain) + 1 >= max_depth:
                continue
            for rel in self.store.get_relationships(user_id, node, hydrate=False):
                nxt = rel.other_end(node)
                if nxt in visited:
                    continue
                path = chain + [rel]
                if nxt == target_id:
                    return path
                visited.add(nxt)
                queue.append((nxt, path))
        raise NoPathError(source_id, target_id, max_depth)
