from __future__ import annotations

from pathlib import Path

import pytest

from marco_engine.config import MarcoConfig
from marco_engine.engine import MarcoEngine
from marco_engine.errors import RegistrationClosed
from marco_engine.modules.fs import FS_DESCRIPTOR
from marco_engine.runs.events import read_events


class ApproveAll:
    def ask_user(self, question, options):
        return None

    def confirm_destructive(self, description):
        return True


def test_engine_registers_default_modules_and_closes(tmp_path: Path) -> None:
    engine = MarcoEngine(MarcoConfig(fs_root=tmp_path))
    assert engine.registry.closed
    assert engine.registry.list() == ["canvas", "fs"]
    assert engine.backend.name == "dryrun"
    with pytest.raises(RegistrationClosed):
        engine.registry.register(FS_DESCRIPTOR)


def test_engine_run_and_finish_summary(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("a", encoding="utf-8")
    events = tmp_path / "events.jsonl"
    engine = MarcoEngine(MarcoConfig(fs_root=tmp_path), events_path=events)
    snapshot = engine.run("delete a.txt", ApproveAll())
    assert snapshot["status"] == "done"
    assert not (tmp_path / "a.txt").exists()
    summary = engine.finish()
    assert summary["commands"] == 1
    assert summary["outcomes"] == {"done": 1}
    logged = read_events(events)
    assert logged[0]["type"] == "session_started"
    assert logged[0]["modules"] == ["canvas", "fs"]
    assert logged[-1]["type"] == "session_finished"


def test_engine_rejects_openai_without_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = MarcoConfig()
    config.intentparser.backend = "openai"
    with pytest.raises(RuntimeError, match="API key"):
        MarcoEngine(config)
