from __future__ import annotations

from mneme.graph.extractor import ExtractionOptions, Extractor, calculate_importance
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.types import EntityType, MemoryType, RelationshipType


def _extractor(tmp_path) -> Extractor:
    return Extractor(KnowledgeStore(tmp_path / "db" / "mneme.db"))


def test_sarah_at_blue_bottle_scenario(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.extract_from_text("u1", "I met Sarah at Blue Bottle Cafe yesterday. She works at Google.")

    people = [e.name for e in result.entities if e.type == EntityType.PERSON]
    places = [e.name for e in result.entities if e.type in (EntityType.PLACE, EntityType.ORGANIZATION)]
    assert any("Sarah" in p for p in people)
    assert "Blue Bottle Cafe" in places
    assert "She" not in people

    events = [m for m in result.memories if m.type == MemoryType.EVENT]
    assert events and "met" in events[0].content
    assert events[0].timestamp is not None
    assert events[0].date_text.lower() == "yesterday"
    assert "Sarah" in events[0].entity_names

    assert any(
        r.type == RelationshipType.MET_AT and r.source_name == "Sarah" and r.target_name == "Blue Bottle Cafe"
        for r in result.relationships
    )
    assert 0.0 < result.overall_confidence <= 1.0


def test_works_at_relationship(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.extract_from_text("u1", "Alice works at TechCorp.")
    names = {e.name for e in result.entities}
    assert {"Alice", "TechCorp"} <= names
    assert [(r.source_name, r.type, r.target_name) for r in result.relationships] == [
        ("Alice", RelationshipType.WORKS_AT, "TechCorp")
    ]


def test_role_becomes_description(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.extract_from_text("u1", "My friend Priya said the demo went well.")
    priya = [e for e in result.entities if e.name == "Priya"]
    assert priya and priya[0].type == EntityType.PERSON
    assert priya[0].description == "friend"


def test_time_entities_suppress_overlaps(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.extract_from_text("u1", "Let's catch up next Friday at 3pm.")
    times = [e.name for e in result.entities if e.type == EntityType.TIME]
    assert "next Friday" in times
    assert "3pm" in times
    assert "Friday" not in times


def test_min_confidence_filters_everything(tmp_path):
    ex = _extractor(tmp_path)
    opts = ExtractionOptions(min_confidence=0.95)
    result = ex.extract_from_text("u1", "I met Sarah at Blue Bottle Cafe yesterday.", opts)
    assert result.empty
    assert result.overall_confidence == 0.0


def test_conversation_uses_user_turns_only(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.extract_from_conversation("u1", [
        {"role": "assistant", "content": "Did you talk to Marcus?"},
        {"role": "user", "content": "I love hiking in Yosemite."},
    ])
    names = {e.name for e in result.entities}
    assert "Marcus" not in names
    assert "Yosemite" in names
    assert [m.type for m in result.memories] == [MemoryType.PREFERENCE]


def test_calculate_importance():
    assert calculate_importance(MemoryType.FACT, 0.5) == 5
    assert calculate_importance(MemoryType.PREFERENCE, 0.85) == 7
    assert calculate_importance(MemoryType.GOAL, 0.95) == 9
    assert calculate_importance(MemoryType.RELATIONSHIP, 0.95) == 10


def test_process_and_store_resolves_repeat_mentions(tmp_path):
    ex = _extractor(tmp_path)
    text = "Alice works at TechCorp."
    first = ex.process_and_store("u1", text, conversation_id="c1")
    second = ex.process_and_store("u1", text, conversation_id="c2")

    assert first.entity_ids == second.entity_ids
    assert first.relationship_ids == second.relationship_ids
    assert not first.errors and not second.errors

    alice = ex.store.get_entity_by_name("u1", "alice")
    assert alice.mention_count == 2
    assert alice.source_conversation == "c2"
    rel = ex.store.get_relationship("u1", second.relationship_ids[0])
    assert rel.mention_count == 2


def test_process_and_store_links_memories_to_entities(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.process_and_store("u1", "I love hiking in Yosemite.")
    assert len(result.memory_ids) == 1
    memory = ex.store.get_memory("u1", result.memory_ids[0])
    yosemite = ex.store.get_entity_by_name("u1", "Yosemite")
    assert yosemite.id in memory.entity_ids
    assert memory.type == MemoryType.PREFERENCE
    assert memory.importance == 7


def test_store_memories_false_skips_memory_rows(tmp_path):
    ex = _extractor(tmp_path)
    result = ex.process_and_store("u1", "I love hiking in Yosemite.", store_memories=False)
    assert result.entity_ids
    assert result.memory_ids == []
    assert ex.store.get_stats("u1").total_memories == 0
