"""Configuration: ~/.marco/config.toml plus environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import Any, Mapping

from .chat.disambiguation import DisambiguationPolicy
from .mcp.orchestrator import OrchestratorPolicy
from .utils import getenv_flag

DEFAULT_CONFIG_PATH = Path("~/.marco/config.toml")
BACKENDS = ("dryrun", "openai")


@dataclass
class IntentParserConfig:
    backend: str = "dryrun"
    llm_api_key: str | None = None
    model: str = "gpt-4o-mini"
    api_base: str | None = None
    timeout_s: float = 20.0


@dataclass
class PolicyConfig:
    accept_threshold: float = 0.8
    complete_threshold: float = 0.4
    max_clarification_rounds: int = 3
    strict_parameters: bool = True
    confirm_timeout_s: float = 120.0
    dispatch_timeout_s: float = 30.0
    command_timeout_s: float = 120.0
    max_steps: int = 5


@dataclass
class MarcoConfig:
    intentparser: IntentParserConfig = field(default_factory=IntentParserConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    fs_root: Path | None = None
    canvas_base_url: str | None = None
    canvas_token: str | None = None
    events_path: Path | None = None
    source: Path | None = None

    def orchestrator_policy(self) -> OrchestratorPolicy:
        p = self.policy
        return OrchestratorPolicy(
            disambiguation=DisambiguationPolicy(
                accept_threshold=p.accept_threshold,
                complete_threshold=p.complete_threshold,
                max_clarification_rounds=p.max_clarification_rounds,
            ),
            strict_parameters=p.strict_parameters,
            confirm_timeout_s=p.confirm_timeout_s,
            dispatch_timeout_s=p.dispatch_timeout_s,
            command_timeout_s=p.command_timeout_s,
            max_steps=p.max_steps,
        )


def default_config_path() -> Path:
    override = os.getenv("MARCO_CONFIG")
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Path | None = None) -> MarcoConfig:
    """Load the config file (if present), apply environment overrides, validate.

    Raises ``ValueError`` for a malformed file or invalid values.
    """
    config_path = path or default_config_path()
    data: dict[str, Any] = {}
    source: Path | None = None
    if config_path.exists():
        try:
            data = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"Malformed config file {config_path}: {exc}") from exc
        source = config_path

    config = MarcoConfig(source=source)
    try:
        _apply_intentparser(config.intentparser, _section(data, "intentparser"))
        _apply_policy(config.policy, _section(data, "policy"))
        fs = _section(data, "fs")
        if fs.get("root"):
            config.fs_root = Path(str(fs["root"])).expanduser()
        canvas = _section(data, "canvas")
        config.canvas_base_url = _optional_str(canvas.get("base_url"))
        config.canvas_token = _optional_str(canvas.get("token"))
        events = _section(data, "events")
        if events.get("path"):
            config.events_path = Path(str(events["path"])).expanduser()
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid config {config_path}: {exc}") from exc

    _apply_env(config)
    config.intentparser.backend = config.intentparser.backend.strip().lower()
    if config.intentparser.backend not in BACKENDS:
        raise ValueError(
            f"Unknown intent parser backend {config.intentparser.backend!r}; expected one of {', '.join(BACKENDS)}"
        )
    # Raises ValueError for out-of-range policy values.
    config.orchestrator_policy()
    return config


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, Mapping):
        raise ValueError(f"[{name}] must be a table")
    return dict(value)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _apply_intentparser(target: IntentParserConfig, section: Mapping[str, Any]) -> None:
    if "backend" in section:
        target.backend = str(section["backend"])
    if "llm_api_key" in section:
        target.llm_api_key = _optional_str(section["llm_api_key"])
    if "model" in section:
        target.model = str(section["model"])
    if "api_base" in section:
        target.api_base = _optional_str(section["api_base"])
    if "timeout_s" in section:
        target.timeout_s = float(section["timeout_s"])


def _apply_policy(target: PolicyConfig, section: Mapping[str, Any]) -> None:
    for name in ("accept_threshold", "complete_threshold", "confirm_timeout_s", "dispatch_timeout_s", "command_timeout_s"):
        if name in section:
            setattr(target, name, float(section[name]))
    for name in ("max_clarification_rounds", "max_steps"):
        if name in section:
            value = section[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"policy.{name} must be an integer")
            setattr(target, name, value)
    if "strict_parameters" in section:
        value = section["strict_parameters"]
        if not isinstance(value, bool):
            raise ValueError("policy.strict_parameters must be a boolean")
        target.strict_parameters = value


def _apply_env(config: MarcoConfig) -> None:
    config.intentparser.backend = os.getenv("MARCO_BACKEND") or config.intentparser.backend
    config.intentparser.llm_api_key = os.getenv("OPENAI_API_KEY") or config.intentparser.llm_api_key
    config.intentparser.model = os.getenv("MARCO_MODEL") or config.intentparser.model
    config.policy.strict_parameters = getenv_flag("MARCO_STRICT", config.policy.strict_parameters)
    if os.getenv("MARCO_FS_ROOT"):
        config.fs_root = Path(os.environ["MARCO_FS_ROOT"]).expanduser()
    config.canvas_base_url = os.getenv("CANVAS_API_URL") or config.canvas_base_url
    config.canvas_token = os.getenv("CANVAS_API_TOKEN") or config.canvas_token
    if os.getenv("MARCO_EVENTS"):
        config.events_path = Path(os.environ["MARCO_EVENTS"]).expanduser()
