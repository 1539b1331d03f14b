from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import pytest

from mneme.config import ChatConfig, Config, VectorConfig
from mneme.engine import KnowledgeEngine, summarize_extraction
from mneme.exceptions import NoPathError, NotFoundError, ValidationError
from mneme.graph.extractor import Extractor
from mneme.storage.sqlite_store import KnowledgeStore
from mneme.types import ExtractionResult, Memory, MemoryType, ProcessResult
from mneme.utils import utcnow
from mneme.workers import BackgroundExtractor


def _config(tmp_path, vectors: bool = False) -> Config:
    return Config(
        data_dir=tmp_path,
        vector=VectorConfig(enabled=vectors, provider="local", dimension=64),
        chat=ChatConfig(provider=""),
    )


def _engine(tmp_path, vectors: bool = False) -> KnowledgeEngine:
    return KnowledgeEngine(_config(tmp_path, vectors))


def test_remember_then_recall_hiking(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, vectors=True)
        try:
            out = await engine.remember("u1", "I love hiking in Yosemite. The mountains are beautiful.")
            assert out["extracted"]["memories"] >= 1
            assert out["stored"] >= 1
            assert out["errors"] == []
            assert out["summary"] != "No knowledge extracted"
            assert engine.store.get_memories_without_embeddings("u1") == []

            recalled = await engine.recall("u1", "hiking")
            contents = [m["content"] for m in recalled["memories"]]
            assert any("hiking" in c for c in contents)
            assert recalled["confidence"] == 0.8

            memory_id = recalled["memories"][0]["id"]
            assert engine.store.get_memory("u1", memory_id).access_count == 1
        finally:
            await engine.close()

    asyncio.run(_run())


def test_who_did_i_meet_yesterday(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            await engine.remember("u1", "I met Sarah at Blue Bottle Cafe yesterday.")
            out = await engine.recall("u1", "Who did I meet yesterday?")
            assert "Sarah" in out["answer"]
            assert out["memories"]

            other_user = await engine.recall("u2", "Who did I meet yesterday?")
            assert other_user["memories"] == []
        finally:
            await engine.close()

    asyncio.run(_run())


def test_recall_validates_filters(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            with pytest.raises(ValidationError):
                await engine.recall("u1", "hiking", entity_type="dragon")
            with pytest.raises(ValidationError):
                await engine.recall("u1", "hiking", time_range="fortnight")
            with pytest.raises(ValidationError):
                await engine.recall("", "hiking")
            with pytest.raises(ValidationError):
                await engine.recall("u1", "   ")
            out = await engine.recall("u1", "hiking", entity_type="all", time_range="all")
            assert out["memories"] == []
        finally:
            await engine.close()

    asyncio.run(_run())


def test_forget_requires_confirmation(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            added = await engine.add_memory("u1", "Dentist appointment on Tuesday")
            memory_id = added["memory_id"]

            pending = engine.forget("u1", "memory", memory_id)
            assert pending["confirm_required"] is True
            assert pending["message"] == "Set confirm=true to delete this memory"
            assert engine.store.get_memory("u1", memory_id) is not None

            done = engine.forget("u1", "memory", memory_id, confirm=True)
            assert done == {"deleted": True, "type": "memory", "id": memory_id}
            assert engine.store.get_memory("u1", memory_id) is None

            again = engine.forget("u1", "memory", memory_id, confirm=True)
            assert again["deleted"] is False
            assert again["found"] is False

            with pytest.raises(ValidationError):
                engine.forget("u1", "entity", "ent_x", confirm=True)
            with pytest.raises(ValidationError):
                engine.forget("u1", "memory", "")
        finally:
            await engine.close()

    asyncio.run(_run())


def test_get_entity_unknown_and_known(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            missing = engine.get_entity("u1", "Zed")
            assert missing == {"found": False, "message": "I don't know anything about 'Zed'"}

            await engine.remember("u1", "Alice works at TechCorp.")
            known = engine.get_entity("u1", "alice")
            assert known["found"] is True
            assert known["entity"]["name"] == "Alice"
            rels = known["relationships"]
            assert [(r["source_name"], r["type"], r["target_name"]) for r in rels] == [
                ("Alice", "works_at", "TechCorp")
            ]
        finally:
            await engine.close()

    asyncio.run(_run())


def test_add_memory_links_entities_and_clamps(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            out = await engine.add_memory("u1", "Alice works at TechCorp.", type="fact",
                                          category="work", importance=42)
            memory = engine.store.get_memory("u1", out["memory_id"])
            assert memory.importance == 10
            assert memory.category == "work"
            assert memory.type == MemoryType.FACT
            alice = engine.store.get_entity_by_name("u1", "Alice")
            assert alice.id in memory.entity_ids
            assert engine.get_stats("u1")["total_memories"] == 1

            with pytest.raises(ValidationError):
                await engine.add_memory("u1", "x", type="rumour")
            with pytest.raises(ValidationError):
                await engine.add_memory("u1", "   ")
        finally:
            await engine.close()

    asyncio.run(_run())


def test_create_and_list_entities(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            first = engine.create_entity("u1", "Rust", type="concept", description="a language")
            assert first["created"] is True
            second = engine.create_entity("u1", "rust")
            assert second["created"] is False
            assert second["entity_id"] == first["entity_id"]
            engine.create_entity("u1", "Lisbon", type="place")

            everything = engine.list_entities("u1")
            assert everything["count"] == 2
            places = engine.list_entities("u1", entity_type="place")
            assert [e["name"] for e in places["entities"]] == ["Lisbon"]
            with pytest.raises(ValidationError):
                engine.list_entities("u1", entity_type="planet")
        finally:
            await engine.close()

    asyncio.run(_run())


def test_find_path_by_name(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        try:
            await engine.remember("u1", "Alice works at TechCorp.")
            out = engine.find_path("u1", "Alice", "TechCorp")
            assert out["hops"] == 1
            assert out["source"] == "Alice"
            assert out["path"][0]["type"] == "works_at"

            engine.create_entity("u1", "Lisbon", type="place")
            with pytest.raises(NoPathError):
                engine.find_path("u1", "Alice", "Lisbon")
            with pytest.raises(NotFoundError):
                engine.find_path("u1", "Alice", "Atlantis")
        finally:
            await engine.close()

    asyncio.run(_run())


def test_compact_and_reindex_report(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, vectors=True)
        try:
            await engine.add_memory("u1", "Bought oat milk", category="shopping", importance=2)
            compact = await engine.compact("u1")
            assert compact["compressed_count"] == 0
            reindex = await engine.reindex("u1")
            assert reindex == {"indexed": 1, "errors": []}
            missing_only = await engine.reindex("u1", only_missing=True)
            assert missing_only["indexed"] == 0
        finally:
            await engine.close()

    asyncio.run(_run())


def test_summarize_extraction_wording():
    assert summarize_extraction(ExtractionResult()) == "No knowledge extracted"


class _SleepyExtractor(Extractor):
    """Blocks its calling thread the way a very long text would."""

    def process_and_store(self, user_id, text, conversation_id="", store_memories=True, options=None):  # noqa: ANN001
        time.sleep(0.5)
        return ProcessResult(extraction=ExtractionResult())


class _BrokenExtractor(Extractor):
    def process_and_store(self, user_id, text, conversation_id="", store_memories=True, options=None):  # noqa: ANN001
        raise ValidationError("bad input")


def test_background_extraction_completes_and_indexes(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, vectors=True)
        try:
            task = engine.submit_extraction("u1", "I love hiking in Yosemite.")
            result = await task
            assert result is not None and result.memory_ids
            await engine.workers.drain()
            assert engine.workers.pending == 0
            assert engine.workers.stats.as_dict() == {
                "submitted": 1, "completed": 1, "failed": 0, "timed_out": 0,
            }
            embedded = {m.id for m, _ in engine.store.get_memories_with_embeddings("u1")}
            assert embedded == set(result.memory_ids)
            assert engine.store.get_memories_without_embeddings("u1") == []
        finally:
            await engine.close()

    asyncio.run(_run())


def test_background_timeout_fires_while_loop_stays_responsive(tmp_path):
    async def _run() -> None:
        store = KnowledgeStore(tmp_path / "db" / "mneme.db")
        try:
            workers = BackgroundExtractor(_SleepyExtractor(store), timeout=0.1)
            task = workers.submit("u1", "text")
            ticks = 0
            while not task.done():
                ticks += 1
                await asyncio.sleep(0.01)
            assert await task is None
            assert ticks >= 3
            assert workers.stats.timed_out == 1
            assert workers.stats.completed == 0
            # let the worker thread finish before the store closes
            await asyncio.sleep(0.6)
        finally:
            store.close()

    asyncio.run(_run())


def test_background_failure_is_counted(tmp_path):
    async def _run() -> None:
        store = KnowledgeStore(tmp_path / "db" / "mneme.db")
        try:
            broken = BackgroundExtractor(_BrokenExtractor(store))
            assert await broken.submit("u1", "text") is None
            assert broken.stats.failed == 1
            assert broken.stats.completed == 0
        finally:
            store.close()

    asyncio.run(_run())


def test_scheduled_compaction_indexes_summaries(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, vectors=True)
        try:
            for i in range(3):
                mem = engine.store.create_memory(Memory(user_id="u1", content=f"Old errand {i}",
                                                        category="chores", importance=2))
                engine.store.record_access("u1", mem.id, at=utcnow() - timedelta(days=120))
            results = await engine.compressor.run_all()
            created = results["u1"].created_ids
            assert len(created) == 1
            embedded = {m.id for m, _ in engine.store.get_memories_with_embeddings("u1")}
            assert created[0] in embedded
        finally:
            await engine.close()

    asyncio.run(_run())
