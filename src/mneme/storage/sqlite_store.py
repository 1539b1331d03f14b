"""SQLite persistence for entities, relationships and memories."""

from __future__ import annotations

import functools
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, TypeVar

from mneme.exceptions import StorageError
from mneme.types import (
    Entity,
    EntityType,
    GraphStats,
    IdSet,
    Memory,
    MemoryType,
    Relationship,
    RelationshipType,
)
from mneme.utils import (
    iso_or_none,
    iso_str,
    json_dumps,
    json_loads,
    parse_iso,
    parse_iso_or_none,
    utcnow,
)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]',
    description TEXT NOT NULL DEFAULT '',
    mention_count INTEGER NOT NULL DEFAULT 0,
    first_mentioned TEXT,
    last_mentioned TEXT,
    confidence REAL NOT NULL DEFAULT 1.0,
    importance INTEGER NOT NULL DEFAULT 5,
    source_conversation TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_user_name ON entities(user_id, lower(name));
CREATE INDEX IF NOT EXISTS idx_entities_user_type ON entities(user_id, type);
CREATE INDEX IF NOT EXISTS idx_entities_last_mentioned ON entities(user_id, last_mentioned);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    type TEXT NOT NULL,
    directional INTEGER NOT NULL DEFAULT 1,
    mention_count INTEGER NOT NULL DEFAULT 0,
    first_mentioned TEXT,
    last_mentioned TEXT,
    confidence REAL NOT NULL DEFAULT 1.0,
    properties TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(user_id, source_id, target_id, type)
);
CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(user_id, source_id);
CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(user_id, target_id);

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT '',
    entity_ids TEXT NOT NULL DEFAULT '[]',
    timestamp TEXT,
    date_text TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL DEFAULT 1.0,
    importance INTEGER NOT NULL DEFAULT 5,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed TEXT,
    is_compressed INTEGER NOT NULL DEFAULT 0,
    compressed_from TEXT NOT NULL DEFAULT '[]',
    embedding_id TEXT NOT NULL DEFAULT '',
    embedding BLOB,
    conversation_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_user_type ON memories(user_id, type);
CREATE INDEX IF NOT EXISTS idx_memories_user_category ON memories(user_id, category);
CREATE INDEX IF NOT EXISTS idx_memories_user_created ON memories(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(user_id, importance);
"""

_EVENT_TIME = "COALESCE(timestamp, created_at)"

F = TypeVar("F", bound=Callable[..., Any])


def _storage_op(fn: F) -> F:
    """Re-raise sqlite failures as StorageError."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as exc:
            raise StorageError(f"{fn.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _like(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class MemoryFilters:
    """Filters for :meth:`KnowledgeStore.get_memories`. Empty fields match everything."""

    types: list[MemoryType] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    entity_ids: list[str] = field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    text: str = ""
    keywords: list[str] = field(default_factory=list)
    include_compressed: bool = True
    limit: int = 100


class KnowledgeStore:
    """Per-user SQLite store for the knowledge graph and memory log."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False,
                                     timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=30000")
        self._init_schema()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._conn.cursor()
                cur.executescript(_SCHEMA)
                cur.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                self._conn.commit()
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise StorageError(f"schema init failed: {e}") from e

    def close(self) -> None:
        self._conn.close()

    # --- Entities ---

    @_storage_op
    def create_entity(self, entity: Entity) -> Entity:
        now = utcnow()
        entity.created_at = entity.updated_at = now
        self._conn.execute(
            """INSERT INTO entities(id, user_id, type, name, aliases, description,
                   mention_count, first_mentioned, last_mentioned, confidence, importance,
                   source_conversation, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entity.id, entity.user_id, entity.type.value, entity.name,
                json_dumps(entity.aliases.to_list()), entity.description,
                entity.mention_count, iso_or_none(entity.first_mentioned),
                iso_or_none(entity.last_mentioned), entity.confidence, entity.importance,
                entity.source_conversation, iso_str(now), iso_str(now),
            ),
        )
        self._conn.commit()
        return entity

    @_storage_op
    def get_entity(self, user_id: str, entity_id: str) -> Entity | None:
        row = self._conn.execute(
            "SELECT * FROM entities WHERE id=? AND user_id=?", (entity_id, user_id)
        ).fetchone()
        return self._row_to_entity(row) if row else None

    @_storage_op
    def get_entity_by_name(self, user_id: str, name: str) -> Entity | None:
        row = self._conn.execute(
            """SELECT * FROM entities WHERE user_id=? AND lower(name)=lower(?)
               ORDER BY mention_count DESC, created_at ASC LIMIT 1""",
            (user_id, name.strip()),
        ).fetchone()
        return self._row_to_entity(row) if row else None

    @_storage_op
    def update_entity(self, entity: Entity) -> None:
        """Persist descriptive fields. Mention bookkeeping goes through increment_mention."""
        entity.updated_at = utcnow()
        self._conn.execute(
            """UPDATE entities SET type=?, name=?, aliases=?, description=?, confidence=?,
                   importance=?, source_conversation=?, updated_at=?
               WHERE id=? AND user_id=?""",
            (
                entity.type.value, entity.name, json_dumps(entity.aliases.to_list()),
                entity.description, entity.confidence, entity.importance,
                entity.source_conversation, iso_str(entity.updated_at),
                entity.id, entity.user_id,
            ),
        )
        self._conn.commit()

    @_storage_op
    def increment_mention(self, user_id: str, entity_id: str, at: datetime | None = None) -> None:
        ts = iso_str(at or utcnow())
        self._conn.execute(
            """UPDATE entities SET
                   mention_count = mention_count + 1,
                   first_mentioned = COALESCE(first_mentioned, ?),
                   last_mentioned = CASE
                       WHEN last_mentioned IS NULL OR last_mentioned < ? THEN ?
                       ELSE last_mentioned END,
                   updated_at = ?
               WHERE id=? AND user_id=?""",
            (ts, ts, ts, ts, entity_id, user_id),
        )
        self._conn.commit()

    def find_or_create_entity(
        self,
        user_id: str,
        name: str,
        entity_type: EntityType,
        confidence: float = 1.0,
    ) -> Entity:
        """Resolve by case-insensitive name, counting the mention on a hit."""
        existing = self.get_entity_by_name(user_id, name)
        if existing is not None:
            self.increment_mention(user_id, existing.id)
            refreshed = self.get_entity(user_id, existing.id)
            return refreshed or existing
        now = utcnow()
        entity = Entity(
            user_id=user_id,
            type=entity_type,
            name=name.strip(),
            mention_count=1,
            first_mentioned=now,
            last_mentioned=now,
            confidence=confidence,
        )
        return self.create_entity(entity)

    @_storage_op
    def add_alias(self, user_id: str, entity_id: str, alias: str) -> bool:
        entity = self.get_entity(user_id, entity_id)
        if entity is None:
            return False
        entity.aliases.add(alias)
        self.update_entity(entity)
        return True

    @_storage_op
    def search_entities(self, user_id: str, text: str, limit: int = 20) -> list[Entity]:
        pattern = _like(text.strip())
        rows = self._conn.execute(
            """SELECT * FROM entities
               WHERE user_id=? AND (name LIKE ? ESCAPE '\\' OR aliases LIKE ? ESCAPE '\\')
               ORDER BY mention_count DESC, updated_at DESC LIMIT ?""",
            (user_id, pattern, pattern, limit),
        ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    @_storage_op
    def get_entities_by_type(self, user_id: str, entity_type: EntityType, limit: int = 50) -> list[Entity]:
        rows = self._conn.execute(
            """SELECT * FROM entities WHERE user_id=? AND type=?
               ORDER BY mention_count DESC, updated_at DESC LIMIT ?""",
            (user_id, EntityType(entity_type).value, limit),
        ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    @_storage_op
    def get_recent_entities(self, user_id: str, since: datetime, limit: int = 50) -> list[Entity]:
        rows = self._conn.execute(
            """SELECT * FROM entities WHERE user_id=? AND last_mentioned >= ?
               ORDER BY last_mentioned DESC LIMIT ?""",
            (user_id, iso_str(since), limit),
        ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    @_storage_op
    def list_entities(self, user_id: str, limit: int = 50) -> list[Entity]:
        rows = self._conn.execute(
            """SELECT * FROM entities WHERE user_id=?
               ORDER BY COALESCE(last_mentioned, created_at) DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    # --- Relationships ---

    @_storage_op
    def create_relationship(self, rel: Relationship) -> Relationship:
        now = utcnow()
        rel.created_at = rel.updated_at = now
        self._conn.execute(
            """INSERT INTO relationships(id, user_id, source_id, target_id, type, directional,
                   mention_count, first_mentioned, last_mentioned, confidence, properties,
                   created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                rel.id, rel.user_id, rel.source_id, rel.target_id, rel.type.value,
                int(rel.directional), rel.mention_count, iso_or_none(rel.first_mentioned),
                iso_or_none(rel.last_mentioned), rel.confidence, json_dumps(rel.properties),
                iso_str(now), iso_str(now),
            ),
        )
        self._conn.commit()
        return rel

    @_storage_op
    def get_relationship(self, user_id: str, rel_id: str) -> Relationship | None:
        row = self._conn.execute(
            "SELECT * FROM relationships WHERE id=? AND user_id=?", (rel_id, user_id)
        ).fetchone()
        return self._row_to_relationship(row) if row else None

    @_storage_op
    def find_or_create_relationship(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        rel_type: RelationshipType,
        confidence: float = 1.0,
        properties: dict[str, Any] | None = None,
    ) -> Relationship:
        rel_type = RelationshipType(rel_type)
        ts = iso_str(utcnow())
        row = self._conn.execute(
            """SELECT id FROM relationships
               WHERE user_id=? AND source_id=? AND target_id=? AND type=?""",
            (user_id, source_id, target_id, rel_type.value),
        ).fetchone()
        if row is not None:
            self._conn.execute(
                """UPDATE relationships SET
                       mention_count = mention_count + 1,
                       last_mentioned = CASE
                           WHEN last_mentioned IS NULL OR last_mentioned < ? THEN ?
                           ELSE last_mentioned END,
                       confidence = MAX(confidence, ?),
                       updated_at = ?
                   WHERE id=?""",
                (ts, ts, confidence, ts, row["id"]),
            )
            self._conn.commit()
            found = self.get_relationship(user_id, row["id"])
            if found is None:
                raise StorageError(f"relationship {row['id']} vanished during update")
            return found
        now = parse_iso(ts)
        rel = Relationship(
            user_id=user_id,
            source_id=source_id,
            target_id=target_id,
            type=rel_type,
            directional=rel_type.directional,
            mention_count=1,
            first_mentioned=now,
            last_mentioned=now,
            confidence=confidence,
            properties=properties or {},
        )
        return self.create_relationship(rel)

    @_storage_op
    def get_relationships(self, user_id: str, entity_id: str, hydrate: bool = True) -> list[Relationship]:
        """Edges touching ``entity_id`` on either end, strongest first."""
        rows = self._conn.execute(
            """SELECT * FROM relationships
               WHERE user_id=? AND (source_id=? OR target_id=?)
               ORDER BY mention_count DESC, created_at ASC, rowid ASC""",
            (user_id, entity_id, entity_id),
        ).fetchall()
        rels = [self._row_to_relationship(r) for r in rows]
        if hydrate:
            cache: dict[str, Entity | None] = {}
            for rel in rels:
                for attr, eid in (("source", rel.source_id), ("target", rel.target_id)):
                    if eid not in cache:
                        cache[eid] = self.get_entity(user_id, eid)
                    setattr(rel, attr, cache[eid])
        return rels

    def get_related_entities(self, user_id: str, entity_id: str) -> list[Entity]:
        seen: set[str] = set()
        out: list[Entity] = []
        for rel in self.get_relationships(user_id, entity_id):
            other = rel.target if rel.source_id == entity_id else rel.source
            if other is not None and other.id not in seen:
                seen.add(other.id)
                out.append(other)
        return out

    # --- Memories ---

    @_storage_op
    def create_memory(self, memory: Memory) -> Memory:
        now = utcnow()
        memory.created_at = memory.updated_at = now
        self._conn.execute(
            """INSERT INTO memories(id, user_id, content, summary, type, category, entity_ids,
                   timestamp, date_text, confidence, importance, access_count, last_accessed,
                   is_compressed, compressed_from, embedding_id, conversation_id,
                   created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                memory.id, memory.user_id, memory.content, memory.summary, memory.type.value,
                memory.category, json_dumps(memory.entity_ids.to_list()),
                iso_or_none(memory.timestamp), memory.date_text, memory.confidence,
                memory.importance, memory.access_count, iso_or_none(memory.last_accessed),
                int(memory.is_compressed), json_dumps(memory.compressed_from.to_list()),
                memory.embedding_id, memory.conversation_id, iso_str(now), iso_str(now),
            ),
        )
        self._conn.commit()
        return memory

    @_storage_op
    def get_memory(self, user_id: str, memory_id: str) -> Memory | None:
        row = self._conn.execute(
            "SELECT * FROM memories WHERE id=? AND user_id=?", (memory_id, user_id)
        ).fetchone()
        return self._row_to_memory(row) if row else None

    @_storage_op
    def update_memory(self, memory: Memory) -> None:
        memory.updated_at = utcnow()
        self._conn.execute(
            """UPDATE memories SET content=?, summary=?, type=?, category=?, entity_ids=?,
                   timestamp=?, date_text=?, confidence=?, importance=?, is_compressed=?,
                   compressed_from=?, embedding_id=?, updated_at=?
               WHERE id=? AND user_id=?""",
            (
                memory.content, memory.summary, memory.type.value, memory.category,
                json_dumps(memory.entity_ids.to_list()), iso_or_none(memory.timestamp),
                memory.date_text, memory.confidence, memory.importance,
                int(memory.is_compressed), json_dumps(memory.compressed_from.to_list()),
                memory.embedding_id, iso_str(memory.updated_at), memory.id, memory.user_id,
            ),
        )
        self._conn.commit()

    @_storage_op
    def delete_memory(self, user_id: str, memory_id: str) -> bool:
        cur = self._conn.execute(
            "DELETE FROM memories WHERE id=? AND user_id=?", (memory_id, user_id)
        )
        self._conn.commit()
        return cur.rowcount > 0

    @_storage_op
    def get_memories(self, user_id: str, filters: MemoryFilters | None = None) -> list[Memory]:
        f = filters or MemoryFilters()
        clauses = ["user_id=?"]
        params: list[Any] = [user_id]
        if f.types:
            clauses.append(f"type IN ({','.join('?' * len(f.types))})")
            params.extend(MemoryType(t).value for t in f.types)
        if f.categories:
            clauses.append(f"category IN ({','.join('?' * len(f.categories))})")
            params.extend(f.categories)
        if f.entity_ids:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(memories.entity_ids) "
                f"WHERE json_each.value IN ({','.join('?' * len(f.entity_ids))}))"
            )
            params.extend(f.entity_ids)
        if f.since is not None:
            clauses.append(f"{_EVENT_TIME} >= ?")
            params.append(iso_str(f.since))
        if f.until is not None:
            clauses.append(f"{_EVENT_TIME} < ?")
            params.append(iso_str(f.until))
        if f.text.strip():
            clauses.append("(content LIKE ? ESCAPE '\\' OR summary LIKE ? ESCAPE '\\')")
            params.extend([_like(f.text.strip())] * 2)
        terms = [k.strip() for k in f.keywords if k.strip()]
        if terms:
            ors = " OR ".join(["content LIKE ? ESCAPE '\\'"] * len(terms))
            clauses.append(f"({ors})")
            params.extend(_like(t) for t in terms)
        if not f.include_compressed:
            clauses.append("is_compressed=0")
        params.append(f.limit)
        rows = self._conn.execute(
            f"""SELECT * FROM memories WHERE {' AND '.join(clauses)}
                ORDER BY importance DESC, {_EVENT_TIME} DESC LIMIT ?""",
            params,
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def get_memories_for_entity(self, user_id: str, entity_id: str, limit: int = 50) -> list[Memory]:
        return self.get_memories(user_id, MemoryFilters(entity_ids=[entity_id], limit=limit))

    @_storage_op
    def get_recent_memories(self, user_id: str, since: datetime, limit: int = 50) -> list[Memory]:
        rows = self._conn.execute(
            """SELECT * FROM memories WHERE user_id=? AND created_at >= ?
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, iso_str(since), limit),
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    @_storage_op
    def get_unaccessed_memories(self, user_id: str, since: datetime, limit: int = 100) -> list[Memory]:
        """Uncompressed memories not touched since ``since``; never-accessed ones age from creation."""
        rows = self._conn.execute(
            """SELECT * FROM memories
               WHERE user_id=? AND is_compressed=0
                 AND COALESCE(last_accessed, created_at) < ?
               ORDER BY importance ASC, created_at ASC LIMIT ?""",
            (user_id, iso_str(since), limit),
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    @_storage_op
    def get_deletable_memories(
        self, user_id: str, before: datetime, max_importance: int = 2, limit: int = 1000
    ) -> list[Memory]:
        rows = self._conn.execute(
            """SELECT * FROM memories
               WHERE user_id=? AND is_compressed=1 AND created_at < ? AND importance <= ?
               ORDER BY created_at ASC LIMIT ?""",
            (user_id, iso_str(before), max_importance, limit),
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    @_storage_op
    def mark_memory_compressed(self, user_id: str, memory_id: str, summary: str) -> bool:
        """Overwrite content with ``summary``; the original text is gone afterwards."""
        cur = self._conn.execute(
            """UPDATE memories SET is_compressed=1, summary=?, content=?, embedding=NULL,
                   embedding_id='', updated_at=?
               WHERE id=? AND user_id=?""",
            (summary, summary, iso_str(utcnow()), memory_id, user_id),
        )
        self._conn.commit()
        return cur.rowcount > 0

    @_storage_op
    def record_access(self, user_id: str, memory_id: str, at: datetime | None = None) -> None:
        self._conn.execute(
            """UPDATE memories SET access_count = access_count + 1, last_accessed=?
               WHERE id=? AND user_id=?""",
            (iso_str(at or utcnow()), memory_id, user_id),
        )
        self._conn.commit()

    def link_entity(self, user_id: str, memory_id: str, entity_id: str) -> bool:
        memory = self.get_memory(user_id, memory_id)
        if memory is None:
            return False
        if entity_id in memory.entity_ids:
            return True
        memory.entity_ids.add(entity_id)
        self.update_memory(memory)
        return True

    # --- Embeddings ---

    @_storage_op
    def set_embedding(self, user_id: str, memory_id: str, blob: bytes, embedding_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE memories SET embedding=?, embedding_id=? WHERE id=? AND user_id=?",
            (blob, embedding_id, memory_id, user_id),
        )
        self._conn.commit()
        return cur.rowcount > 0

    @_storage_op
    def get_memories_with_embeddings(self, user_id: str, limit: int = 1000) -> list[tuple[Memory, bytes]]:
        """Embedded memories, most recent first."""
        rows = self._conn.execute(
            """SELECT * FROM memories WHERE user_id=? AND embedding IS NOT NULL
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return [(self._row_to_memory(r), bytes(r["embedding"])) for r in rows]

    @_storage_op
    def get_memories_without_embeddings(self, user_id: str, limit: int = 1000) -> list[Memory]:
        rows = self._conn.execute(
            """SELECT * FROM memories WHERE user_id=? AND embedding IS NULL
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    # --- Stats ---

    @_storage_op
    def get_stats(self, user_id: str) -> GraphStats:
        stats = GraphStats()
        c = self._conn
        stats.total_entities = c.execute(
            "SELECT COUNT(*) FROM entities WHERE user_id=?", (user_id,)
        ).fetchone()[0]
        stats.total_relationships = c.execute(
            "SELECT COUNT(*) FROM relationships WHERE user_id=?", (user_id,)
        ).fetchone()[0]
        stats.total_memories = c.execute(
            "SELECT COUNT(*) FROM memories WHERE user_id=?", (user_id,)
        ).fetchone()[0]
        stats.compressed_memories = c.execute(
            "SELECT COUNT(*) FROM memories WHERE user_id=? AND is_compressed=1", (user_id,)
        ).fetchone()[0]
        for row in c.execute(
            "SELECT type, COUNT(*) AS n FROM entities WHERE user_id=? GROUP BY type", (user_id,)
        ):
            stats.entity_types[row["type"]] = row["n"]
        for row in c.execute(
            "SELECT type, COUNT(*) AS n FROM memories WHERE user_id=? GROUP BY type", (user_id,)
        ):
            stats.memory_types[row["type"]] = row["n"]
        since = iso_str(utcnow() - timedelta(days=30))
        stats.recent_mentions = c.execute(
            "SELECT COUNT(*) FROM entities WHERE user_id=? AND last_mentioned >= ?",
            (user_id, since),
        ).fetchone()[0]
        return stats

    @_storage_op
    def list_user_ids(self) -> list[str]:
        rows = self._conn.execute(
            """SELECT user_id FROM memories UNION SELECT user_id FROM entities
               ORDER BY user_id"""
        ).fetchall()
        return [r[0] for r in rows]

    # --- Row converters ---

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            name=row["name"],
            aliases=IdSet(json_loads(row["aliases"])),
            description=row["description"],
            mention_count=row["mention_count"],
            first_mentioned=parse_iso_or_none(row["first_mentioned"]),
            last_mentioned=parse_iso_or_none(row["last_mentioned"]),
            confidence=row["confidence"],
            importance=row["importance"],
            source_conversation=row["source_conversation"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> Relationship:
        return Relationship(
            id=row["id"],
            user_id=row["user_id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            type=row["type"],
            directional=bool(row["directional"]),
            mention_count=row["mention_count"],
            first_mentioned=parse_iso_or_none(row["first_mentioned"]),
            last_mentioned=parse_iso_or_none(row["last_mentioned"]),
            confidence=row["confidence"],
            properties=json_loads(row["properties"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            summary=row["summary"],
            type=row["type"],
            category=row["category"],
            entity_ids=IdSet(json_loads(row["entity_ids"])),
            timestamp=parse_iso_or_none(row["timestamp"]),
            date_text=row["date_text"],
            confidence=row["confidence"],
            importance=row["importance"],
            access_count=row["access_count"],
            last_accessed=parse_iso_or_none(row["last_accessed"]),
            is_compressed=bool(row["is_compressed"]),
            compressed_from=IdSet(json_loads(row["compressed_from"])),
            embedding_id=row["embedding_id"],
            conversation_id=row["conversation_id"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
