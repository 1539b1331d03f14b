from __future__ import annotations

from click.testing import CliRunner

from mneme.cli import main


def _invoke(tmp_path, *args: str):
    runner = CliRunner()
    return runner.invoke(main, ["--data-dir", str(tmp_path), "--user", "u1", *args])


def test_remember_entity_and_stats(tmp_path):
    stored = _invoke(tmp_path, "remember", "Alice works at TechCorp.")
    assert stored.exit_code == 0, stored.output
    assert "Found" in stored.output

    shown = _invoke(tmp_path, "entity", "alice")
    assert shown.exit_code == 0
    assert "Alice (" in shown.output
    assert "-[works_at]->" in shown.output

    unknown = _invoke(tmp_path, "entity", "Zed")
    assert "I don't know anything about 'Zed'" in unknown.output

    stats = _invoke(tmp_path, "stats")
    assert stats.exit_code == 0
    assert "Relationships:       1" in stats.output


def test_recall_and_forget(tmp_path):
    _invoke(tmp_path, "remember", "I love hiking in Yosemite.")
    recalled = _invoke(tmp_path, "recall", "hiking")
    assert recalled.exit_code == 0
    assert "hiking" in recalled.output

    bad = _invoke(tmp_path, "entities", "--type", "planet")
    assert bad.exit_code != 0
    assert "unknown entity type" in bad.output

    pending = _invoke(tmp_path, "forget", "mem_missing")
    assert "Pass --yes" in pending.output
    missing = _invoke(tmp_path, "forget", "mem_missing", "--yes")
    assert "No memory with id 'mem_missing'" in missing.output
