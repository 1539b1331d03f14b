"""Rule-based extraction of entities, relationships and memories from text."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from mneme.config import ExtractionConfig
from mneme.exceptions import StorageError
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.timeparse import MONTHS, WEEKDAYS, resolve_date_phrase
from mneme.types import (
    EntityType,
    ExtractedEntity,
    ExtractedMemory,
    ExtractedRelationship,
    ExtractionResult,
    IdSet,
    Memory,
    MemoryType,
    ProcessResult,
    RelationshipType,
)
from mneme.utils import utcnow

logger = logging.getLogger(__name__)

_COMMON_WORDS = {
    "the", "a", "an", "this", "that", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "them", "us",
    "my", "your", "his", "her", "its", "our", "their",
    "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "must", "shall",
    "what", "when", "where", "who", "why", "how", "which",
    "today", "tomorrow", "yesterday", "tonight", "now", "later",
    "there", "here", "and", "but", "or", "so", "then", "also", "just",
}
_CALENDAR_WORDS = set(WEEKDAYS) | set(MONTHS)

_WEEKDAY_ALT = "|".join(WEEKDAYS)
_MONTH_ALT = "|".join(MONTHS)

# A capitalised token of at least two characters ("I" never qualifies).
_NAME = r"[A-Z][A-Za-z0-9&-]*[A-Za-z0-9]"
_SP = r"[ \t]+"
_PERSON = rf"(?P<name>{_NAME}(?:{_SP}{_NAME})?)"

_PERSON_PATTERNS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(
        r"\b(?i:met(?:\s+up)?\s+with|met|talked\s+(?:to|with)|spoke\s+(?:to|with)|called"
        r"|ran\s+into|had\s+(?:lunch|dinner|coffee|drinks|breakfast)\s+with|hung\s+out\s+with)"
        rf"\s+{_PERSON}"
    ), 0.8),
    (re.compile(
        r"\b(?i:my\s+(?:best\s+)?(?P<role>friend|colleague|coworker|co-worker|boss|manager"
        r"|sister|brother|mom|dad|mother|father|wife|husband|partner|girlfriend|boyfriend"
        r"|neighbor|neighbour|cousin|son|daughter|roommate|mentor))"
        rf"\s+{_PERSON}"
    ), 0.8),
    (re.compile(rf"\b{_PERSON}\s+(?i:said|says|told\s+me|mentioned|asked)\b"), 0.8),
    (re.compile(
        rf"\b{_PERSON}\s+(?i:works\s+(?:at|for)|worked\s+(?:at|for)|lives\s+in"
        r"|is\s+married\s+to|is\s+friends\s+with)\b"
    ), 0.7),
]

_PLACE_SUFFIXES = (
    "Cafe|Café|Coffee|Restaurant|Bar|Pub|Bakery|Diner|Shop|Store|Market|Mall|Park|Beach|Lake"
    "|Hotel|Hospital|Clinic|School|College|University|Library|Museum|Theater|Theatre|Stadium"
    "|Gym|Office|Building|Tower|Street|Avenue|Road|Boulevard|Plaza|Square|Center|Centre"
    "|Station|Airport"
)
_PLACE_SUFFIX_RE = re.compile(
    r"\b(?i:at|in|from|near|to|into)\s+(?:(?i:the)\s+)?"
    rf"(?P<name>(?:{_NAME}{_SP}){{1,3}}(?:{_PLACE_SUFFIXES}))\b"
)
_PLACE_GENERIC_RE = re.compile(
    rf"\b(?i:at|in)\s+(?:(?i:the)\s+)?(?P<name>{_NAME}(?:{_SP}{_NAME}){{0,2}})"
)

_ORG_SUFFIXES = (
    "Inc|LLC|Corp|Corporation|Ltd|Limited|Company|Co|Group|Team|Department|Dept"
    "|Labs|Lab|Foundation|Institute|Agency|Bank|Partners|Studios|Technologies|Systems"
)
_ORG_RE = re.compile(
    r"\b(?i:at|for|with|joined|join|from|by)\s+(?:(?i:the)\s+)?"
    rf"(?P<name>(?:{_NAME}{_SP}){{1,3}}(?:{_ORG_SUFFIXES}))\b"
)

# Longer forms first so overlapping shorter matches are suppressed.
_TIME_PATTERNS: list[re.Pattern[str]] = [
    re.compile(rf"\b(?:last|next|this)\s+(?:week|weekend|month|year|{_WEEKDAY_ALT})\b", re.IGNORECASE),
    re.compile(rf"\b(?:{_MONTH_ALT})\s+\d{{1,2}}(?:st|nd|rd|th)?\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}:\d{2}\s*(?:am|pm)?\b|\b\d{1,2}\s*(?:am|pm)\b", re.IGNORECASE),
    re.compile(rf"\b(?:{_WEEKDAY_ALT})\b", re.IGNORECASE),
]

_REL_VERBS: list[tuple[str, RelationshipType, float]] = [
    (r"(?:works|worked)\s+(?:at|for)|(?:is\s+)?employed\s+(?:at|by)", RelationshipType.WORKS_AT, 0.75),
    (r"(?:lives|lived|resides)\s+in", RelationshipType.LIVES_IN, 0.75),
    (r"(?:is\s+)?located\s+in", RelationshipType.LOCATED_IN, 0.75),
    (r"was\s+born\s+in", RelationshipType.BORN_IN, 0.75),
    (r"is\s+married\s+to|married", RelationshipType.MARRIED_TO, 0.75),
    (r"is\s+friends\s+with|is\s+a\s+friend\s+of", RelationshipType.FRIEND_OF, 0.75),
    (r"knows", RelationshipType.KNOWS, 0.7),
    (r"is\s+(?:a\s+)?(?:colleague|coworker|co-worker)\s+(?:of|with)|works\s+with",
     RelationshipType.COLLEAGUE_OF, 0.75),
    (r"is\s+(?:a\s+)?member\s+of|belongs\s+to", RelationshipType.MEMBER_OF, 0.7),
]

_CLAUSE = r"[^.,;!?\n]+"
_PROFESSIONS = (
    "engineer|developer|manager|designer|teacher|doctor|nurse|lawyer|consultant|analyst"
    "|scientist|student|writer|researcher|architect|accountant"
)
_KIN = (
    "friend|best\\s+friend|sister|brother|mother|father|mom|dad|wife|husband|partner"
    "|boss|manager|colleague|coworker|cousin|neighbor|son|daughter|mentor"
)

_MEMORY_PATTERNS: list[tuple[re.Pattern[str], MemoryType, str, float]] = [
    (re.compile(rf"\b(?i:I\s+(?:really\s+)?(?:like|love|enjoy|prefer|adore))\s+{_CLAUSE}"),
     MemoryType.PREFERENCE, "personal", 0.85),
    (re.compile(rf"\b(?i:I\s+(?:really\s+)?(?:hate|dislike|can't\s+stand|don't\s+like))\s+{_CLAUSE}"),
     MemoryType.PREFERENCE, "personal", 0.85),
    (re.compile(rf"\b(?i:I(?:\s+am|'m)?\s+(?:want|wants|plan|planning|intend|hope)\s+to)\s+{_CLAUSE}"),
     MemoryType.GOAL, "personal", 0.8),
    (re.compile(rf"\b(?i:I\s+(?:need\s+to|must|have\s+to))\s+{_CLAUSE}"),
     MemoryType.GOAL, "personal", 0.8),
    (re.compile(
        rf"\b(?i:I(?:\s+am|'m|\s+work\s+as)\s+(?:an?\s+)?[^.,;!?\n]*?(?:{_PROFESSIONS}))s?\b"
    ), MemoryType.FACT, "professional", 0.85),
    (re.compile(rf"\b(?i:my\s+(?:birthday|anniversary)\s+is)\s+{_CLAUSE}"),
     MemoryType.FACT, "personal", 0.9),
    (re.compile(rf"\b{_NAME}\s+(?i:is\s+my\s+(?:{_KIN}))\b"),
     MemoryType.RELATIONSHIP, "social", 0.8),
    (re.compile(
        r"\b(?i:I\s+(?:met|saw|visited|went|attended|had|talked|spoke|ran\s+into|caught\s+up))"
        rf"\s+{_CLAUSE}"
    ), MemoryType.EVENT, "life", 0.75),
]

_DATED_MEMORY_TYPES = {MemoryType.EVENT, MemoryType.GOAL, MemoryType.PLAN}


@dataclass
class ExtractionOptions:
    extract_entities: bool = True
    extract_relationships: bool = True
    extract_memories: bool = True
    extract_times: bool = True
    min_confidence: float = 0.6

    @classmethod
    def from_config(cls, cfg: ExtractionConfig) -> ExtractionOptions:
        return cls(
            extract_entities=cfg.extract_entities,
            extract_relationships=cfg.extract_relationships,
            extract_memories=cfg.extract_memories,
            extract_times=cfg.extract_times,
            min_confidence=cfg.min_confidence,
        )


def calculate_importance(memory_type: MemoryType, confidence: float) -> int:
    importance = 5
    if memory_type == MemoryType.PREFERENCE:
        importance = 7
    elif memory_type == MemoryType.GOAL:
        importance = 8
    elif memory_type == MemoryType.RELATIONSHIP:
        importance = 9
    if confidence > 0.9:
        importance += 1
    return min(importance, 10)


def is_common_word(word: str) -> bool:
    return word.strip().lower() in _COMMON_WORDS


def _clean_name(raw: str) -> str:
    """Trim stop and calendar words from both ends of a captured name."""
    tokens = raw.split()
    noise = _COMMON_WORDS | _CALENDAR_WORDS
    while tokens and tokens[0].lower() in noise:
        tokens.pop(0)
    while tokens and tokens[-1].lower() in noise:
        tokens.pop()
    return " ".join(tokens)


class Extractor:
    """Pattern battery that turns conversational text into graph facts."""

    def __init__(self, store: KnowledgeStore, config: ExtractionConfig | None = None) -> None:
        self.store = store
        self.config = config or ExtractionConfig()
        self._write_lock = threading.Lock()

    def default_options(self) -> ExtractionOptions:
        return ExtractionOptions.from_config(self.config)

    def extract_from_text(
        self,
        user_id: str,
        text: str,
        options: ExtractionOptions | None = None,
    ) -> ExtractionResult:
        opts = options or self.default_options()
        result = ExtractionResult()
        text = text or ""
        if not text.strip():
            return result

        entities = self._extract_entities(text, opts) if opts.extract_entities else []
        result.entities = [e for e in entities if e.confidence >= opts.min_confidence]

        if opts.extract_relationships and len(result.entities) > 1:
            rels = self._extract_relationships(text, result.entities)
            result.relationships = [r for r in rels if r.confidence >= opts.min_confidence]

        if opts.extract_memories:
            mems = self._extract_memories(text, result.entities)
            result.memories = [m for m in mems if m.confidence >= opts.min_confidence]

        if result.entities:
            result.overall_confidence = sum(e.confidence for e in result.entities) / len(result.entities)
        logger.debug(
            "extracted %d entities, %d relationships, %d memories for %s",
            len(result.entities), len(result.relationships), len(result.memories), user_id,
        )
        return result

    def extract_from_conversation(
        self,
        user_id: str,
        messages: Iterable[Mapping[str, str]],
        options: ExtractionOptions | None = None,
    ) -> ExtractionResult:
        """Extract from the user turns of a conversation only."""
        text = "\n".join(
            str(m.get("content", "")) for m in messages if m.get("role", "user") == "user"
        )
        return self.extract_from_text(user_id, text, options)

    def process_and_store(
        self,
        user_id: str,
        text: str,
        conversation_id: str = "",
        store_memories: bool = True,
        options: ExtractionOptions | None = None,
    ) -> ProcessResult:
        """Extract, then persist with entity resolution.

        A failed write is logged, recorded in ``errors`` and skipped; the rest
        of the batch is still stored. Synchronous, and batches are written one at
        a time, so callers on worker threads never interleave their writes.
        """
        extraction = self.extract_from_text(user_id, text, options)
        with self._write_lock:
            result = self._persist(user_id, extraction, conversation_id, store_memories)
        logger.info(
            "stored %d entities, %d relationships, %d memories for %s (%d errors)",
            len(result.entity_ids), len(result.relationship_ids), len(result.memory_ids),
            user_id, len(result.errors),
        )
        return result

    def _persist(
        self,
        user_id: str,
        extraction: ExtractionResult,
        conversation_id: str,
        store_memories: bool,
    ) -> ProcessResult:
        result = ProcessResult(extraction=extraction)
        name_to_id: dict[str, str] = {}

        for ext in extraction.entities:
            try:
                entity = self.store.find_or_create_entity(
                    user_id, ext.name, ext.type, confidence=ext.confidence
                )
                changed = False
                if ext.description and not entity.description:
                    entity.description = ext.description
                    changed = True
                for alias in ext.aliases:
                    if alias not in entity.aliases:
                        entity.aliases.add(alias)
                        changed = True
                if ext.confidence > entity.confidence:
                    entity.confidence = ext.confidence
                    changed = True
                if conversation_id and entity.source_conversation != conversation_id:
                    entity.source_conversation = conversation_id
                    changed = True
                if changed:
                    self.store.update_entity(entity)
            except (StorageError, ValueError) as exc:
                logger.warning("skipping entity %r for %s: %s", ext.name, user_id, exc)
                result.errors.append(f"entity {ext.name}: {exc}")
                continue
            name_to_id[ext.name.lower()] = entity.id
            if entity.id not in result.entity_ids:
                result.entity_ids.append(entity.id)

        for rel in extraction.relationships:
            source_id = name_to_id.get(rel.source_name.lower())
            target_id = name_to_id.get(rel.target_name.lower())
            if not source_id or not target_id or source_id == target_id:
                continue
            try:
                stored = self.store.find_or_create_relationship(
                    user_id, source_id, target_id, rel.type,
                    confidence=rel.confidence, properties=rel.properties,
                )
            except (StorageError, ValueError) as exc:
                logger.warning(
                    "skipping relationship %s-%s->%s for %s: %s",
                    rel.source_name, rel.type.value, rel.target_name, user_id, exc,
                )
                result.errors.append(f"relationship {rel.source_name}->{rel.target_name}: {exc}")
                continue
            result.relationship_ids.append(stored.id)

        if store_memories:
            for mem in extraction.memories:
                ids = IdSet(name_to_id[n.lower()] for n in mem.entity_names if n.lower() in name_to_id)
                try:
                    memory = self.store.create_memory(Memory(
                        user_id=user_id,
                        content=mem.content,
                        type=mem.type,
                        category=mem.category,
                        entity_ids=ids,
                        timestamp=mem.timestamp,
                        date_text=mem.date_text,
                        confidence=mem.confidence,
                        importance=mem.importance,
                        conversation_id=conversation_id,
                    ))
                except (StorageError, ValueError) as exc:
                    logger.warning("skipping memory %r for %s: %s", mem.content[:40], user_id, exc)
                    result.errors.append(f"memory {mem.content[:40]}: {exc}")
                    continue
                result.memory_ids.append(memory.id)
        return result

    # --- Entities ---

    def _extract_entities(self, text: str, opts: ExtractionOptions) -> list[ExtractedEntity]:
        found: dict[tuple[str, EntityType], ExtractedEntity] = {}

        def add(name: str, etype: EntityType, conf: float, description: str = "") -> None:
            name = _clean_name(name)
            if len(name) < 2 or is_common_word(name):
                return
            key = (name.lower(), etype)
            if key in found:
                found[key].confidence = max(found[key].confidence, conf)
                if description and not found[key].description:
                    found[key].description = description
                return
            found[key] = ExtractedEntity(name=name, type=etype, confidence=conf, description=description)

        for pattern, conf in _PERSON_PATTERNS:
            for m in pattern.finditer(text):
                role = m.groupdict().get("role") or ""
                add(m.group("name"), EntityType.PERSON, conf, " ".join(role.lower().split()))

        for m in _ORG_RE.finditer(text):
            add(m.group("name"), EntityType.ORGANIZATION, 0.75)

        taken = {name for name, etype in found}
        for pattern, conf in ((_PLACE_SUFFIX_RE, 0.75), (_PLACE_GENERIC_RE, 0.7)):
            for m in pattern.finditer(text):
                name = _clean_name(m.group("name"))
                if name.lower() in taken or name.lower() in _CALENDAR_WORDS:
                    continue
                add(name, EntityType.PLACE, conf)

        if opts.extract_times:
            for name in self._extract_times(text):
                key = (name.lower(), EntityType.TIME)
                if key not in found:
                    found[key] = ExtractedEntity(name=name, type=EntityType.TIME, confidence=0.9)

        return list(found.values())

    @staticmethod
    def _extract_times(text: str) -> list[str]:
        spans: list[tuple[int, int]] = []
        names: list[str] = []
        for pattern in _TIME_PATTERNS:
            for m in pattern.finditer(text):
                start, end = m.span()
                if any(start < e and s < end for s, e in spans):
                    continue
                spans.append((start, end))
                names.append(" ".join(m.group(0).split()))
        return names

    # --- Relationships ---

    @staticmethod
    def _extract_relationships(
        text: str, entities: list[ExtractedEntity]
    ) -> list[ExtractedRelationship]:
        names = sorted({e.name for e in entities if e.type != EntityType.TIME}, key=len, reverse=True)
        if len(names) < 2:
            return []
        alt = "|".join(re.escape(n) for n in names)
        canonical = {n.lower(): n for n in names}
        out: dict[tuple[str, str, RelationshipType], ExtractedRelationship] = {}

        def add(src: str, tgt: str, rtype: RelationshipType, conf: float) -> None:
            src, tgt = canonical[src.lower()], canonical[tgt.lower()]
            if src.lower() == tgt.lower():
                return
            key = (src.lower(), tgt.lower(), rtype)
            if key not in out:
                out[key] = ExtractedRelationship(source_name=src, target_name=tgt, type=rtype, confidence=conf)

        for verb, rtype, conf in _REL_VERBS:
            pattern = re.compile(
                rf"(?<!\w)({alt})\s+(?i:{verb})\s+(?:(?i:the)\s+)?({alt})(?!\w)"
            )
            for m in pattern.finditer(text):
                add(m.group(1), m.group(2), rtype, conf)

        met_at = re.compile(
            rf"(?i:met(?:\s+with)?)\s+({alt})\s+(?i:at|in)\s+(?:(?i:the)\s+)?({alt})(?!\w)"
        )
        for m in met_at.finditer(text):
            add(m.group(1), m.group(2), RelationshipType.MET_AT, 0.75)
        return list(out.values())

    # --- Memories ---

    @staticmethod
    def _extract_memories(text: str, entities: list[ExtractedEntity]) -> list[ExtractedMemory]:
        now = utcnow()
        out: list[ExtractedMemory] = []
        seen: set[str] = set()
        for pattern, mtype, category, conf in _MEMORY_PATTERNS:
            for m in pattern.finditer(text):
                content = " ".join(m.group(0).split()).rstrip(".,;!? ")
                if not content or content.lower() in seen:
                    continue
                seen.add(content.lower())
                lowered = content.lower()
                linked = [e.name for e in entities if e.name.lower() in lowered]
                timestamp, date_text = None, ""
                if mtype in _DATED_MEMORY_TYPES:
                    timestamp, date_text = resolve_date_phrase(content, now)
                out.append(ExtractedMemory(
                    content=content,
                    type=mtype,
                    category=category,
                    confidence=conf,
                    importance=calculate_importance(mtype, conf),
                    entity_names=linked,
                    timestamp=timestamp,
                    date_text=date_text,
                ))
        return out
