from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from marco_engine.chat.loop import ChatLoop, TerminalFrontEnd, format_result
from marco_engine.cli import main
from marco_engine.config import MarcoConfig
from marco_engine.engine import MarcoEngine
from marco_engine.runs.events import read_events


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "work"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    (root / "notes.txt").write_text("hello\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MARCO_CONFIG", str(tmp_path / "absent.toml"))
    for key in ("MARCO_BACKEND", "MARCO_FS_ROOT", "MARCO_EVENTS", "MARCO_STRICT", "OPENAI_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    return root


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


def test_run_lists_files(workspace: Path, capsys) -> None:
    events = workspace.parent / "events.jsonl"
    code = _run(["--root", str(workspace), "--events", str(events), "run", "list", "files", "in", "src"])
    out = capsys.readouterr().out
    assert code == 0
    assert "main.py" in out
    types = [event["type"] for event in read_events(events)]
    assert types[0] == "session_started"
    assert "command_finished" in types
    assert types[-1] == "session_finished"


def test_run_delete_with_yes(workspace: Path, capsys) -> None:
    code = _run(["--root", str(workspace), "run", "--yes", "delete notes.txt"])
    assert code == 0
    assert not (workspace / "notes.txt").exists()


def test_run_delete_declined_exits_cancelled(workspace: Path, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("n\n"))
    code = _run(["--root", str(workspace), "run", "delete notes.txt"])
    assert code == 2
    assert (workspace / "notes.txt").exists()
    assert "Cancelled" in capsys.readouterr().out


def test_run_failure_exits_one(workspace: Path, capsys) -> None:
    code = _run(["--root", str(workspace), "run", "read missing.txt"])
    assert code == 1
    assert "module_execution_error" in capsys.readouterr().out


def test_capabilities_json(workspace: Path, capsys) -> None:
    code = _run(["--root", str(workspace), "capabilities", "--json"])
    catalog = json.loads(capsys.readouterr().out)
    assert code == 0
    assert [entry["module"] for entry in catalog] == ["canvas", "fs"]


def test_openai_backend_without_key_is_reported(workspace: Path, capsys) -> None:
    code = _run(["--backend", "openai", "capabilities"])
    assert code == 1
    assert "API key" in capsys.readouterr().err


def test_no_command_prints_help(workspace: Path, capsys) -> None:
    assert _run([]) == 1


def test_chat_loop_carries_context_between_commands(workspace: Path) -> None:
    lines = iter(["list files in src", "/context", "/exit"])
    out = io.StringIO()
    frontend = TerminalFrontEnd(input_fn=lambda prompt: next(lines), stream=out)
    engine = MarcoEngine(MarcoConfig(fs_root=workspace))
    loop = ChatLoop(engine, frontend)
    loop.run()
    assert loop.session_context == {"last_path": "src"}
    assert loop.last_status == "done"
    assert '"last_path": "src"' in out.getvalue()
    assert out.getvalue().rstrip().endswith("Bye.")


def test_terminal_frontend_numbered_options() -> None:
    frontend = TerminalFrontEnd(input_fn=lambda prompt: "2", stream=io.StringIO())
    assert frontend.ask_user("Which?", ["name", "size"]) == "size"


def test_format_result_uncertain() -> None:
    text = format_result({"status": "uncertain", "error": None, "reason": "cancelled_during_destructive_dispatch"})
    assert text.startswith("Outcome unknown")
