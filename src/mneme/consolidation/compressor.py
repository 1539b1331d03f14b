"""Memory compaction: fold stale low-importance memories into summaries, then expire them."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import timedelta
from typing import Awaitable, Callable

from mneme.config import CompressionConfig
from mneme.exceptions import ProviderError, StorageError
from mneme.llm.backends import ChatBackend, simple_chat
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.types import CompressionResult, IdSet, Memory, MemoryType
from mneme.utils import utcnow

logger = logging.getLogger(__name__)

IndexHook = Callable[[str, str], Awaitable[None]]

MIN_GROUP_SIZE = 3
DELETE_MAX_IMPORTANCE = 2
DELETE_SCAN_LIMIT = 1000

_TERM_RE = re.compile(r"[a-z0-9']+")

_STOPWORDS = {
    "the", "be", "to", "of", "and", "a", "in", "that", "have", "i", "it", "for",
    "not", "on", "with", "he", "as", "you", "do", "at", "this", "but", "his",
    "by", "from", "they", "we", "say", "her", "she", "or", "an", "will", "my",
    "one", "all", "would", "there", "their", "what", "so", "up", "out", "if",
    "about", "who", "get", "which", "go", "me", "when", "make", "can", "like",
    "time", "no", "just", "him", "know", "take", "people", "into", "year",
    "your", "good", "some", "could", "them", "see", "other", "than", "then",
    "now", "look", "only", "come", "its", "over", "think", "also", "back",
    "after", "use", "two", "how", "our", "work", "first", "well", "way",
    "even", "want", "because", "any", "these", "give", "most", "been", "were",
    "was", "has", "had", "really", "very", "much",
}

_SUMMARY_SYSTEM = (
    "You condense old personal memories into one short factual summary. "
    "Mention the recurring people, places and topics. Reply with the summary only."
)

# Type counts reported in the template summary, in this order.
_COUNTED_TYPES = [
    (MemoryType.EVENT, "events"),
    (MemoryType.PREFERENCE, "preferences"),
    (MemoryType.FACT, "facts"),
]


def group_by_category(memories: list[Memory]) -> dict[str, list[Memory]]:
    groups: dict[str, list[Memory]] = {}
    for memory in memories:
        groups.setdefault(memory.bucket, []).append(memory)
    return groups


def top_terms(memories: list[Memory], n: int = 5) -> list[str]:
    """Most frequent content words; ties keep first-seen order."""
    counts: dict[str, int] = {}
    for memory in memories:
        for word in _TERM_RE.findall(memory.content.lower()):
            word = word.strip("'")
            if len(word) > 3 and word not in _STOPWORDS:
                counts[word] = counts.get(word, 0) + 1
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [word for word, _ in ranked[:n]]


def template_summary(memories: list[Memory], category: str) -> str:
    summary = f"Compressed {len(memories)} memories from {category} category"
    parts = []
    for mtype, label in _COUNTED_TYPES:
        count = sum(1 for m in memories if m.type == mtype)
        if count:
            parts.append(f"{count} {label}")
    if parts:
        summary += " including " + ", ".join(parts)
    terms = top_terms(memories)
    if terms:
        summary += ". Key topics: " + ", ".join(terms)
    return summary


def compressed_importance(memories: list[Memory]) -> int:
    return max(max(m.importance for m in memories) - 1, 1)


class Compressor:
    """Runs the compression and deletion passes for one user at a time."""

    def __init__(
        self,
        store: KnowledgeStore,
        config: CompressionConfig | None = None,
        chat: ChatBackend | None = None,
        on_created: IndexHook | None = None,
    ) -> None:
        self.store = store
        self.config = config or CompressionConfig()
        self.chat = chat
        # Called with (user_id, memory_id) for each summary memory created.
        self.on_created = on_created
        self._lock = asyncio.Lock()

    async def run(self, user_id: str, config: CompressionConfig | None = None) -> CompressionResult:
        cfg = config or self.config
        result = CompressionResult()
        if cfg.enable_compression:
            await self._compress(user_id, cfg, result)
            if self.on_created is not None:
                for memory_id in result.created_ids:
                    await self.on_created(user_id, memory_id)
        if cfg.enable_deletion:
            self._delete_expired(user_id, cfg, result)
        logger.info(
            "compaction for %s: compressed=%d deleted=%d errors=%d",
            user_id, result.compressed_count, result.deleted_count, len(result.errors),
        )
        return result

    # --- Compression ---

    async def _compress(self, user_id: str, cfg: CompressionConfig, result: CompressionResult) -> None:
        cutoff = utcnow() - cfg.compress_after
        try:
            candidates = self.store.get_unaccessed_memories(
                user_id, cutoff, limit=cfg.max_memories_per_batch
            )
        except StorageError as exc:
            logger.warning("compression selection failed for %s: %s", user_id, exc)
            result.errors.append(f"select: {exc}")
            return

        for category, group in group_by_category(candidates).items():
            if len(group) < MIN_GROUP_SIZE:
                continue
            eligible = [
                m for m in group
                if not m.is_compressed and m.importance <= cfg.min_importance_to_keep
            ]
            if len(eligible) < MIN_GROUP_SIZE:
                continue
            try:
                created = await self._compress_group(user_id, category, eligible, result)
            except StorageError as exc:
                logger.warning("compression of %s/%s failed: %s", user_id, category, exc)
                result.errors.append(f"{category}: {exc}")
                continue
            result.created_ids.append(created.id)

    async def _compress_group(
        self, user_id: str, category: str, memories: list[Memory], result: CompressionResult
    ) -> Memory:
        summary = await self._summarize(category, memories)
        entity_ids = IdSet()
        for m in memories:
            entity_ids.update(m.entity_ids)
        synthetic = self.store.create_memory(Memory(
            user_id=user_id,
            content=summary,
            summary=summary,
            type=MemoryType.FACT,
            category=category,
            entity_ids=entity_ids,
            is_compressed=True,
            compressed_from=IdSet(m.id for m in memories),
            importance=compressed_importance(memories),
        ))
        for m in memories:
            try:
                self.store.mark_memory_compressed(user_id, m.id, summary)
            except StorageError as exc:
                logger.warning("marking %s compressed failed: %s", m.id, exc)
                result.errors.append(f"{m.id}: {exc}")
                continue
            result.compressed_count += 1
        logger.debug("compressed %d %s memories into %s", len(memories), category, synthetic.id)
        return synthetic

    async def _summarize(self, category: str, memories: list[Memory]) -> str:
        fallback = template_summary(memories, category)
        if self.chat is None:
            return fallback
        lines = "\n".join(f"- ({m.type.value}) {m.content[:260]}" for m in memories[:20])
        prompt = f"Category: {category}\nMemories:\n{lines}"
        try:
            text = await simple_chat(self.chat, _SUMMARY_SYSTEM, prompt)
        except ProviderError as exc:
            logger.warning("chat summary failed, using template: %s", exc)
            return fallback
        return text or fallback

    # --- Deletion ---

    def _delete_expired(self, user_id: str, cfg: CompressionConfig, result: CompressionResult) -> None:
        cutoff = utcnow() - cfg.delete_after
        try:
            expired = self.store.get_deletable_memories(
                user_id, cutoff, max_importance=DELETE_MAX_IMPORTANCE, limit=DELETE_SCAN_LIMIT
            )
        except StorageError as exc:
            logger.warning("deletion selection failed for %s: %s", user_id, exc)
            result.errors.append(f"delete-select: {exc}")
            return
        for memory in expired:
            try:
                if self.store.delete_memory(user_id, memory.id):
                    result.deleted_count += 1
            except StorageError as exc:
                logger.warning("delete of %s failed: %s", memory.id, exc)
                result.errors.append(f"{memory.id}: {exc}")

    # --- Scheduling ---

    async def run_all(self, user_ids: list[str] | None = None) -> dict[str, CompressionResult]:
        """One compaction round; overlapping calls wait for the running one."""
        async with self._lock:
            users = user_ids if user_ids is not None else self.store.list_user_ids()
            return {uid: await self.run(uid) for uid in users}

    async def schedule(
        self,
        user_ids: list[str] | None = None,
        interval: timedelta | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        every = (interval or self.config.schedule_interval).total_seconds()
        stop = stop_event or asyncio.Event()
        logger.info("compaction scheduled every %.0fs", every)
        while not stop.is_set():
            try:
                await self.run_all(user_ids)
            except StorageError as exc:
                logger.warning("scheduled compaction failed: %s", exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=every)
            except asyncio.TimeoutError:
                continue
