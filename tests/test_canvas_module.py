from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

from marco_engine.errors import ModuleExecutionError
from marco_engine.modules.canvas import CanvasModule

COURSES = [
    {"id": 11, "name": "Biology 101", "course_code": "BIO101"},
    {"id": 12, "name": "Biology 202", "course_code": "BIO202"},
    {"id": 20, "name": "Chemistry", "course_code": "CHEM1"},
]


class DummyResponse:
    def __init__(self, payload, link: str | None = None) -> None:
        self._payload = payload
        self.headers = {"Link": link} if link else {}

    def read(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")

    def __enter__(self) -> "DummyResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def _module() -> CanvasModule:
    return CanvasModule("https://canvas.example.edu/", "secret-token")


def test_list_courses_sends_bearer_token(monkeypatch) -> None:
    seen = {}

    def fake_urlopen(req, timeout=0):
        seen["url"] = req.full_url
        seen["auth"] = req.get_header("Authorization")
        return DummyResponse(COURSES)

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    result = _module().execute("list_courses", {})
    assert seen["url"].startswith("https://canvas.example.edu/api/v1/courses?")
    assert seen["auth"] == "Bearer secret-token"
    assert "11: Biology 101" in result.output
    assert len(result.data["courses"]) == 3
    assert result.data["truncated"] is False


def test_find_course_sets_course_id(monkeypatch) -> None:
    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", lambda req, timeout=0: DummyResponse(COURSES))
    result = _module().execute("find_course", {"name": "chemistry"})
    assert result.context_updates == {"course_id": 20, "course_name": "Chemistry"}


def test_find_course_prefers_exact_code_match(monkeypatch) -> None:
    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", lambda req, timeout=0: DummyResponse(COURSES))
    result = _module().execute("find_course", {"name": "bio202"})
    assert result.context_updates["course_id"] == 12


def test_find_course_ambiguous_match_fails(monkeypatch) -> None:
    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", lambda req, timeout=0: DummyResponse(COURSES))
    with pytest.raises(ModuleExecutionError, match="2 courses match") as excinfo:
        _module().execute("find_course", {"name": "Biology"})
    assert excinfo.value.transient is False


def test_list_assignments(monkeypatch) -> None:
    items = [{"id": 1, "name": "Lab report", "due_at": "2026-10-20T23:59:00Z"}, {"id": 2, "name": "Quiz"}]
    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", lambda req, timeout=0: DummyResponse(items))
    result = _module().execute("list_assignments", {"course_id": 20})
    assert result.output.splitlines() == ["1: Lab report (due 2026-10-20T23:59:00Z)", "2: Quiz (due n/a)"]
    assert result.context_updates == {"course_id": 20}


def test_rate_limit_is_transient(monkeypatch) -> None:
    def fake_urlopen(req, timeout=0):
        raise HTTPError(req.full_url, 429, "Too Many Requests", {}, io.BytesIO(b"slow down"))

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    with pytest.raises(ModuleExecutionError) as excinfo:
        _module().execute("list_courses", {})
    assert excinfo.value.transient is True
    assert excinfo.value.detail == {"status": 429}


def test_not_found_is_not_transient(monkeypatch) -> None:
    def fake_urlopen(req, timeout=0):
        raise HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(b"{}"))

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    with pytest.raises(ModuleExecutionError) as excinfo:
        _module().execute("get_assignment", {"course_id": 1, "assignment_id": 2})
    assert excinfo.value.transient is False


def test_network_error_is_transient(monkeypatch) -> None:
    def fake_urlopen(req, timeout=0):
        raise URLError("connection refused")

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    with pytest.raises(ModuleExecutionError) as excinfo:
        _module().execute("list_courses", {})
    assert excinfo.value.transient is True


def test_unconfigured_module_fails() -> None:
    with pytest.raises(ModuleExecutionError, match="not configured"):
        CanvasModule(None, None).execute("list_courses", {})


def test_list_courses_follows_next_link(monkeypatch) -> None:
    next_url = "https://canvas.example.edu/api/v1/courses?page=2&per_page=100"
    pages = {
        "first": DummyResponse(COURSES[:2], link=f'<{next_url}>; rel="next", <https://canvas.example.edu/x>; rel="last"'),
        next_url: DummyResponse(COURSES[2:], link='<https://canvas.example.edu/x>; rel="last"'),
    }
    seen = []

    def fake_urlopen(req, timeout=0):
        seen.append(req.full_url)
        return pages.get(req.full_url, pages["first"])

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    result = _module().execute("find_course", {"name": "chem1"})
    assert result.context_updates["course_id"] == 20
    assert seen[1] == next_url
    assert len(seen) == 2


def test_pagination_stops_at_page_cap(monkeypatch) -> None:
    link = '<https://canvas.example.edu/api/v1/courses/20/assignments?page=n>; rel="next"'
    calls = []

    def fake_urlopen(req, timeout=0):
        calls.append(req.full_url)
        return DummyResponse([{"id": len(calls), "name": f"A{len(calls)}"}], link=link)

    monkeypatch.setattr("marco_engine.modules.canvas.urlopen", fake_urlopen)
    result = _module().execute("list_assignments", {"course_id": 20})
    assert len(calls) == 20
    assert len(result.data["assignments"]) == 20
    assert result.data["truncated"] is True
