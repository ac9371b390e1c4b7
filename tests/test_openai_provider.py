from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

from marco_engine.providers.base import BackendError, TransientBackendError
from marco_engine.providers.openai import OpenAIClassifierBackend, build_chat_payload


class DummyResponse:
    def __init__(self, payload: dict, status: int = 200) -> None:
        self._payload = payload
        self.status = status

    def read(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")

    def __enter__(self) -> "DummyResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def test_openai_backend_returns_message_content(monkeypatch) -> None:
    seen = {}
    content = '{"candidates": [{"module": "fs", "action": "list_dir", "parameters": {"path": "src"}}]}'

    def fake_urlopen(req, timeout=0):
        seen["url"] = req.full_url
        seen["auth"] = req.get_header("Authorization")
        seen["body"] = json.loads(req.data.decode("utf-8"))
        return DummyResponse({"choices": [{"message": {"role": "assistant", "content": content}}]})

    monkeypatch.setattr("marco_engine.providers.openai.urlopen", fake_urlopen)
    backend = OpenAIClassifierBackend(api_key="test-key", model="gpt-4o-mini")
    raw = backend.classify("list files in src", {"catalog": [{"module": "fs"}]})

    assert raw == content
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "gpt-4o-mini"
    assert seen["body"]["response_format"] == {"type": "json_object"}


def test_openai_backend_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY_BACKUP", raising=False)
    with pytest.raises(BackendError, match="OpenAI API key missing"):
        OpenAIClassifierBackend().classify("ls", {})


def test_openai_backend_without_content_returns_raw_response(monkeypatch) -> None:
    monkeypatch.setattr(
        "marco_engine.providers.openai.urlopen", lambda req, timeout=0: DummyResponse({"choices": []})
    )
    raw = OpenAIClassifierBackend(api_key="k").classify("ls", {})
    assert json.loads(raw) == {"choices": []}


@pytest.mark.parametrize("code, expected", [(429, TransientBackendError), (503, TransientBackendError)])
def test_openai_backend_retryable_status(monkeypatch, code, expected) -> None:
    def fake_urlopen(req, timeout=0):
        raise HTTPError(req.full_url, code, "error", {}, io.BytesIO(b"busy"))

    monkeypatch.setattr("marco_engine.providers.openai.urlopen", fake_urlopen)
    with pytest.raises(expected):
        OpenAIClassifierBackend(api_key="k").classify("ls", {})


def test_openai_backend_auth_error_is_not_transient(monkeypatch) -> None:
    def fake_urlopen(req, timeout=0):
        raise HTTPError(req.full_url, 401, "unauthorized", {}, io.BytesIO(b"bad key"))

    monkeypatch.setattr("marco_engine.providers.openai.urlopen", fake_urlopen)
    with pytest.raises(BackendError) as excinfo:
        OpenAIClassifierBackend(api_key="k").classify("ls", {})
    assert not isinstance(excinfo.value, TransientBackendError)


def test_openai_backend_network_error_is_transient(monkeypatch) -> None:
    def fake_urlopen(req, timeout=0):
        raise URLError("no route")

    monkeypatch.setattr("marco_engine.providers.openai.urlopen", fake_urlopen)
    with pytest.raises(TransientBackendError):
        OpenAIClassifierBackend(api_key="k").classify("ls", {})


def test_chat_payload_includes_catalog_facts_and_clarification() -> None:
    context = {
        "catalog": [{"module": "fs", "actions": {"delete_file": {}}}],
        "facts": {"last_path": "notes.txt"},
        "clarification": {
            "intent": {"module": "fs", "action": "delete_file", "parameters": {}},
            "question": "Please provide path for fs.delete_file.",
            "fields": ["path"],
        },
    }
    payload = build_chat_payload("old.log", context, model="gpt-4o-mini")
    prompt = payload["messages"][1]["content"]
    assert payload["temperature"] == 0
    assert '"delete_file"' in prompt
    assert "notes.txt" in prompt
    assert "Fields asked about: path" in prompt
    assert prompt.rstrip().endswith("old.log\n---")


def test_openai_backend_list_body_is_returned_as_raw_text(monkeypatch) -> None:
    monkeypatch.setattr(
        "marco_engine.providers.openai.urlopen", lambda req, timeout=0: DummyResponse([{"module": "fs"}])
    )
    raw = OpenAIClassifierBackend(api_key="k").classify("ls", {})
    assert json.loads(raw) == [{"module": "fs"}]
