from __future__ import annotations

from datetime import timedelta

from mneme.storage.sqlite_store import KnowledgeStore, MemoryFilters
from mneme.types import EntityType, Memory, MemoryType, RelationshipType
from mneme.utils import utcnow


def _store(tmp_path) -> KnowledgeStore:
    return KnowledgeStore(tmp_path / "db" / "mneme.db")


def test_find_or_create_entity_counts_mentions(tmp_path):
    store = _store(tmp_path)
    try:
        first = store.find_or_create_entity("u1", "Sarah", EntityType.PERSON, confidence=0.8)
        second = store.find_or_create_entity("u1", "sarah", EntityType.PERSON, confidence=0.8)
        third = store.find_or_create_entity("u1", "SARAH", EntityType.PERSON, confidence=0.8)

        assert first.id == second.id == third.id
        assert first.mention_count == 1
        assert second.mention_count == 2
        assert third.mention_count == 3
        assert third.first_mentioned == first.first_mentioned
        assert second.last_mentioned >= first.last_mentioned
        assert third.last_mentioned >= second.last_mentioned
    finally:
        store.close()


def test_entities_are_scoped_per_user(tmp_path):
    store = _store(tmp_path)
    try:
        a = store.find_or_create_entity("alice", "Google", EntityType.ORGANIZATION)
        b = store.find_or_create_entity("bob", "Google", EntityType.ORGANIZATION)
        assert a.id != b.id
        assert store.get_entity("alice", b.id) is None
        assert [e.id for e in store.list_entities("bob")] == [b.id]
    finally:
        store.close()


def test_search_entities_matches_names_and_aliases(tmp_path):
    store = _store(tmp_path)
    try:
        store.find_or_create_entity("u1", "Sarah Connor", EntityType.PERSON)
        other = store.find_or_create_entity("u1", "Sarah Lee", EntityType.PERSON)
        store.find_or_create_entity("u1", "Google", EntityType.ORGANIZATION)
        assert store.add_alias("u1", other.id, "Sal")

        assert len(store.search_entities("u1", "Sarah")) == 2
        assert [e.id for e in store.search_entities("u1", "Sal")] == [other.id]
        assert store.search_entities("u1", "100%") == []
    finally:
        store.close()


def test_relationship_find_or_create_increments(tmp_path):
    store = _store(tmp_path)
    try:
        sarah = store.find_or_create_entity("u1", "Sarah", EntityType.PERSON)
        google = store.find_or_create_entity("u1", "Google", EntityType.ORGANIZATION)
        r1 = store.find_or_create_relationship("u1", sarah.id, google.id, RelationshipType.WORKS_AT, 0.7)
        r2 = store.find_or_create_relationship("u1", sarah.id, google.id, RelationshipType.WORKS_AT, 0.9)

        assert r1.id == r2.id
        assert r2.mention_count == 2
        assert r2.confidence == 0.9
        assert r1.directional

        rels = store.get_relationships("u1", google.id)
        assert len(rels) == 1
        assert rels[0].source is not None and rels[0].source.name == "Sarah"
        assert [e.name for e in store.get_related_entities("u1", sarah.id)] == ["Google"]
    finally:
        store.close()


def test_memory_filters(tmp_path):
    store = _store(tmp_path)
    try:
        now = utcnow()
        store.create_memory(Memory(user_id="u1", content="I love hiking", type=MemoryType.PREFERENCE,
                                   category="personal", importance=7))
        old = store.create_memory(Memory(user_id="u1", content="I met Sarah", type=MemoryType.EVENT,
                                         category="life", timestamp=now - timedelta(days=3)))
        store.create_memory(Memory(user_id="u2", content="I love hiking too"))

        assert [m.content for m in store.get_memories("u1", MemoryFilters(text="hiking"))] == ["I love hiking"]
        assert [m.id for m in store.get_memories("u1", MemoryFilters(types=[MemoryType.EVENT]))] == [old.id]
        assert store.get_memories("u1", MemoryFilters(categories=["work"])) == []

        window = MemoryFilters(since=now - timedelta(days=4), until=now - timedelta(days=2))
        assert [m.id for m in store.get_memories("u1", window)] == [old.id]

        hits = store.get_memories("u1", MemoryFilters(keywords=["meet", "met"]))
        assert [m.id for m in hits] == [old.id]
    finally:
        store.close()


def test_link_entity_and_record_access(tmp_path):
    store = _store(tmp_path)
    try:
        ent = store.find_or_create_entity("u1", "Yosemite", EntityType.PLACE)
        mem = store.create_memory(Memory(user_id="u1", content="Camping trip"))
        assert store.link_entity("u1", mem.id, ent.id)
        assert store.link_entity("u1", mem.id, ent.id)
        assert not store.link_entity("u1", "mem_missing", ent.id)

        linked = store.get_memories_for_entity("u1", ent.id)
        assert [m.id for m in linked] == [mem.id]
        assert linked[0].entity_ids.to_list() == [ent.id]

        store.record_access("u1", mem.id)
        store.record_access("u1", mem.id)
        refreshed = store.get_memory("u1", mem.id)
        assert refreshed.access_count == 2
        assert refreshed.last_accessed is not None
    finally:
        store.close()


def test_mark_memory_compressed_clears_embedding(tmp_path):
    store = _store(tmp_path)
    try:
        mem = store.create_memory(Memory(user_id="u1", content="original text"))
        assert store.set_embedding("u1", mem.id, b"\x00\x00\x80\x3f", "local:x")
        assert len(store.get_memories_with_embeddings("u1")) == 1

        assert store.mark_memory_compressed("u1", mem.id, "summary text")
        after = store.get_memory("u1", mem.id)
        assert after.is_compressed
        assert after.content == "summary text"
        assert after.summary == "summary text"
        assert store.get_memories_with_embeddings("u1") == []
    finally:
        store.close()


def test_stats_and_user_listing(tmp_path):
    store = _store(tmp_path)
    try:
        store.find_or_create_entity("u1", "Sarah", EntityType.PERSON)
        store.find_or_create_entity("u1", "Google", EntityType.ORGANIZATION)
        store.create_memory(Memory(user_id="u1", content="a", type=MemoryType.FACT))
        store.create_memory(Memory(user_id="u2", content="b", type=MemoryType.EVENT))

        stats = store.get_stats("u1")
        assert stats.total_entities == 2
        assert stats.total_memories == 1
        assert stats.entity_types == {"person": 1, "organization": 1}
        assert stats.memory_types == {"fact": 1}
        assert stats.recent_mentions == 2
        assert store.list_user_ids() == ["u1", "u2"]
    finally:
        store.close()
