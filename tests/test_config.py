from __future__ import annotations

from pathlib import Path

import pytest

from marco_engine.config import load_config

_ENV_KEYS = (
    "MARCO_CONFIG",
    "MARCO_BACKEND",
    "OPENAI_API_KEY",
    "MARCO_MODEL",
    "MARCO_STRICT",
    "MARCO_FS_ROOT",
    "CANVAS_API_URL",
    "CANVAS_API_TOKEN",
    "MARCO_EVENTS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    assert config.source is None
    assert config.intentparser.backend == "dryrun"
    policy = config.orchestrator_policy()
    assert policy.disambiguation.accept_threshold == 0.8
    assert policy.disambiguation.complete_threshold == 0.4
    assert policy.disambiguation.max_clarification_rounds == 3
    assert policy.max_steps == 5


def test_file_sections_are_applied(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text(
        """
[intentparser]
backend = "openai"
llm_api_key = "sk-file"
model = "gpt-4.1-mini"

[policy]
accept_threshold = 0.9
max_clarification_rounds = 2
strict_parameters = false

[fs]
root = "/srv/work"

[canvas]
base_url = "https://canvas.example.edu"
token = "tok"
""",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.source == path
    assert config.intentparser.backend == "openai"
    assert config.intentparser.llm_api_key == "sk-file"
    assert config.intentparser.model == "gpt-4.1-mini"
    assert config.policy.accept_threshold == 0.9
    assert config.policy.max_clarification_rounds == 2
    assert config.policy.strict_parameters is False
    assert config.fs_root == Path("/srv/work")
    assert config.canvas_base_url == "https://canvas.example.edu"
    assert config.canvas_token == "tok"


def test_environment_overrides_file(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "config.toml"
    path.write_text('[intentparser]\nllm_api_key = "sk-file"\n', encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("MARCO_BACKEND", "OpenAI")
    monkeypatch.setenv("MARCO_STRICT", "0")
    monkeypatch.setenv("MARCO_EVENTS", str(tmp_path / "events.jsonl"))
    config = load_config(path)
    assert config.intentparser.llm_api_key == "sk-env"
    assert config.intentparser.backend == "openai"
    assert config.policy.strict_parameters is False
    assert config.events_path == tmp_path / "events.jsonl"


def test_marco_config_env_selects_file(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "alt.toml"
    path.write_text('[canvas]\ntoken = "alt"\n', encoding="utf-8")
    monkeypatch.setenv("MARCO_CONFIG", str(path))
    assert load_config().canvas_token == "alt"


def test_malformed_file_names_path(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[intentparser\nbackend = ", encoding="utf-8")
    with pytest.raises(ValueError, match="config.toml"):
        load_config(path)


@pytest.mark.parametrize(
    "policy",
    [
        "accept_threshold = 0.3\ncomplete_threshold = 0.5",
        "dispatch_timeout_s = 200.0",
        "max_steps = 0",
        'max_steps = "five"',
        'strict_parameters = "yes"',
    ],
)
def test_invalid_policy_values(tmp_path: Path, policy: str) -> None:
    path = tmp_path / "config.toml"
    path.write_text(f"[policy]\n{policy}\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_unknown_backend_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MARCO_BACKEND", "llama")
    with pytest.raises(ValueError, match="Unknown intent parser backend"):
        load_config(tmp_path / "absent.toml")
