"""Core data types for the knowledge graph and memory log."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, MutableSet
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import core_schema

from mneme.utils import clamp, new_id, utcnow


class IdSet(MutableSet):
    """Ordered, de-duplicated set of identifiers.

    Members are whitespace-stripped on insert and on lookup, so
    ``" ent_1"`` and ``"ent_1 "`` are the same member. A comma-joined
    string is accepted as input for legacy payloads.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[str] | str | None = None) -> None:
        self._items: dict[str, None] = {}
        if items is None:
            return
        if isinstance(items, str):
            items = items.split(",")
        for item in items:
            self.add(item)

    def add(self, value: str) -> None:
        key = str(value).strip()
        if key:
            self._items.setdefault(key, None)

    def discard(self, value: str) -> None:
        self._items.pop(str(value).strip(), None)

    def update(self, values: Iterable[str]) -> None:
        for v in values:
            self.add(v)

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and value.strip() in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"IdSet({list(self._items)!r})"

    def to_list(self) -> list[str]:
        return list(self._items)

    def copy(self) -> IdSet:
        return IdSet(self._items)

    @classmethod
    def _validate(cls, value: Any) -> IdSet:
        if isinstance(value, IdSet):
            return value
        if value is None:
            return cls()
        if isinstance(value, (str, list, tuple, set, frozenset)):
            return cls(value)
        raise ValueError(f"cannot build IdSet from {type(value).__name__}")

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(list),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, schema: Any, handler: Any) -> dict[str, Any]:
        return {"type": "array", "items": {"type": "string"}}


class EntityType(str, Enum):
    PERSON = "person"
    PLACE = "place"
    ORGANIZATION = "organization"
    EVENT = "event"
    CONCEPT = "concept"
    PREFERENCE = "preference"
    GOAL = "goal"
    HABIT = "habit"
    RELATIONSHIP = "relationship"
    ITEM = "item"
    TIME = "time"


class RelationshipType(str, Enum):
    KNOWS = "knows"
    WORKS_AT = "works_at"
    LOCATED_IN = "located_in"
    LIVES_IN = "lives_in"
    BORN_IN = "born_in"
    MARRIED_TO = "married_to"
    RELATED_TO = "related_to"
    FRIEND_OF = "friend_of"
    COLLEAGUE_OF = "colleague_of"
    MEMBER_OF = "member_of"
    CREATED = "created"
    PART_OF = "part_of"
    HAS = "has"
    PREFERS = "prefers"
    DISLIKES = "dislikes"
    INTERESTED_IN = "interested_in"
    MET_AT = "met_at"
    ATTENDED = "attended"
    SCHEDULED_FOR = "scheduled_for"

    @property
    def directional(self) -> bool:
        return self not in _SYMMETRIC_RELATIONSHIPS


_SYMMETRIC_RELATIONSHIPS = frozenset({
    RelationshipType.KNOWS,
    RelationshipType.MARRIED_TO,
    RelationshipType.RELATED_TO,
    RelationshipType.FRIEND_OF,
    RelationshipType.COLLEAGUE_OF,
})


class MemoryType(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    EVENT = "event"
    PLAN = "plan"
    OBSERVATION = "observation"
    GOAL = "goal"
    RELATIONSHIP = "relationship"


DEFAULT_CATEGORY = "general"


# --- Persisted records ---


class Entity(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("ent"))
    user_id: str
    type: EntityType
    name: str
    aliases: IdSet = Field(default_factory=IdSet)
    description: str = ""
    mention_count: int = 0
    first_mentioned: datetime | None = None
    last_mentioned: datetime | None = None
    confidence: float = 1.0
    importance: int = 5
    source_conversation: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return clamp(float(v), 0.0, 1.0)

    @field_validator("importance")
    @classmethod
    def _clamp_importance(cls, v: int) -> int:
        return int(clamp(int(v), 1, 10))


class Relationship(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("rel"))
    user_id: str
    source_id: str
    target_id: str
    type: RelationshipType
    directional: bool = True
    mention_count: int = 0
    first_mentioned: datetime | None = None
    last_mentioned: datetime | None = None
    confidence: float = 1.0
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    # Hydrated endpoints, never persisted.
    source: Entity | None = None
    target: Entity | None = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return clamp(float(v), 0.0, 1.0)

    def other_end(self, entity_id: str) -> str:
        return self.target_id if self.source_id == entity_id else self.source_id


class Memory(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("mem"))
    user_id: str
    content: str
    summary: str = ""
    type: MemoryType = MemoryType.FACT
    category: str = ""
    entity_ids: IdSet = Field(default_factory=IdSet)
    timestamp: datetime | None = None
    date_text: str = ""
    confidence: float = 1.0
    importance: int = 5
    access_count: int = 0
    last_accessed: datetime | None = None
    is_compressed: bool = False
    compressed_from: IdSet = Field(default_factory=IdSet)
    embedding_id: str = ""
    conversation_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return clamp(float(v), 0.0, 1.0)

    @field_validator("importance")
    @classmethod
    def _clamp_importance(cls, v: int) -> int:
        return int(clamp(int(v), 1, 10))

    @property
    def bucket(self) -> str:
        return self.category or DEFAULT_CATEGORY

    @property
    def event_time(self) -> datetime:
        return self.timestamp or self.created_at


# --- Extraction ---


@dataclass
class ExtractedEntity:
    name: str
    type: EntityType
    confidence: float
    description: str = ""
    aliases: list[str] = field(default_factory=list)


@dataclass
class ExtractedRelationship:
    source_name: str
    target_name: str
    type: RelationshipType
    confidence: float
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedMemory:
    content: str
    type: MemoryType
    category: str
    confidence: float
    importance: int = 5
    entity_names: list[str] = field(default_factory=list)
    timestamp: datetime | None = None
    date_text: str = ""


@dataclass
class ExtractionResult:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)
    memories: list[ExtractedMemory] = field(default_factory=list)
    overall_confidence: float = 0.0

    @property
    def empty(self) -> bool:
        return not (self.entities or self.relationships or self.memories)


@dataclass
class ProcessResult:
    extraction: ExtractionResult
    entity_ids: list[str] = field(default_factory=list)
    relationship_ids: list[str] = field(default_factory=list)
    memory_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return len(self.entity_ids) + len(self.relationship_ids) + len(self.memory_ids)


# --- Search ---


@dataclass
class TimeRange:
    start: datetime
    end: datetime

    def contains(self, dt: datetime) -> bool:
        return self.start <= dt < self.end


@dataclass
class SearchQuery:
    text: str = ""
    semantic_text: str = ""
    entities: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    entity_types: list[EntityType] = field(default_factory=list)
    memory_types: list[MemoryType] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    time_range: TimeRange | None = None
    limit: int = 10


@dataclass
class ScoredEntity:
    entity: Entity
    relevance: float
    matches: list[str] = field(default_factory=list)


@dataclass
class ScoredMemory:
    memory: Memory
    relevance: float
    matches: list[str] = field(default_factory=list)


@dataclass
class ScoredRelationship:
    relationship: Relationship
    relevance: float


@dataclass
class SearchResult:
    entities: list[ScoredEntity] = field(default_factory=list)
    memories: list[ScoredMemory] = field(default_factory=list)
    relationships: list[ScoredRelationship] = field(default_factory=list)
    confidence: float = 0.0
    answer: str = ""
    question_type: str = ""

    @property
    def empty(self) -> bool:
        return not self.entities and not self.memories


@dataclass
class VectorResult:
    memory_id: str
    content: str
    similarity: float
    memory_type: str = ""
    importance: int = 0


# --- Maintenance ---


@dataclass
class CompressionResult:
    compressed_count: int = 0
    deleted_count: int = 0
    created_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class GraphStats:
    total_entities: int = 0
    total_relationships: int = 0
    total_memories: int = 0
    compressed_memories: int = 0
    entity_types: dict[str, int] = field(default_factory=dict)
    memory_types: dict[str, int] = field(default_factory=dict)
    recent_mentions: int = 0
