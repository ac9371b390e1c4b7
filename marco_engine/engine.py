"""Core Marco engine wiring: config, classifier backend, modules, orchestrator."""

from __future__ import annotations

import uuid
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Mapping

from .chat.classifier import ClassifierAdapter
from .chat.command_registry import CapabilityRegistry
from .config import MarcoConfig
from .mcp.orchestrator import FrontEnd, WorkflowOrchestrator
from .modules.base import Module
from .modules.canvas import CanvasModule
from .modules.fs import FileSystemModule
from .providers import default_registry
from .providers.base import BackendRegistry, ClassifierBackend
from .runs.events import EventWriter, NullEventWriter
from .utils import now_utc_iso


class MarcoEngine:
    def __init__(
        self,
        config: MarcoConfig | None = None,
        *,
        backend_registry: BackendRegistry | None = None,
        modules: Iterable[Module] | None = None,
        events_path: Path | None = None,
    ) -> None:
        self.config = config or MarcoConfig()
        self.session_id = str(uuid.uuid4())
        path = events_path or self.config.events_path
        self.events = EventWriter(path, self.session_id) if path else NullEventWriter()
        parser_config = self.config.intentparser
        self.backends = backend_registry or default_registry(
            api_key=parser_config.llm_api_key,
            model=parser_config.model,
            api_base=parser_config.api_base,
            timeout_s=parser_config.timeout_s,
        )
        self.backend = self._select_backend(parser_config.backend)
        self.classifier = ClassifierAdapter(self.backend, timeout_s=parser_config.timeout_s)
        self.registry = CapabilityRegistry(modules if modules is not None else self._default_modules())
        self.registry.close()
        self.orchestrator = WorkflowOrchestrator(
            self.registry,
            self.classifier,
            policy=self.config.orchestrator_policy(),
            events=self.events,
        )
        self.outcomes: Counter[str] = Counter()
        self.started_at = now_utc_iso()
        self.events.emit(
            "session_started",
            backend=self.backend.name,
            modules=self.registry.list(),
            config_path=self.config.source,
        )

    def _select_backend(self, name: str) -> ClassifierBackend:
        backend = self.backends.get(name)
        if backend is None:
            raise RuntimeError(f"Unknown classifier backend {name!r}; available: {', '.join(self.backends.list())}")
        if name == "openai" and not (self.config.intentparser.llm_api_key or getattr(backend, "api_key", None)):
            raise RuntimeError("OpenAI backend selected but no API key is configured (OPENAI_API_KEY).")
        return backend

    def _default_modules(self) -> list[Module]:
        return [
            FileSystemModule(self.config.fs_root),
            CanvasModule(self.config.canvas_base_url, self.config.canvas_token),
        ]

    def capabilities(self) -> list[dict[str, Any]]:
        return self.registry.catalog()

    def run(
        self,
        text: str,
        frontend: FrontEnd,
        session_context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        snapshot = self.orchestrator.run_command(text, frontend, session_context)
        self.outcomes[snapshot["status"]] += 1
        return snapshot

    def finish(self) -> dict[str, Any]:
        summary = {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "finished_at": now_utc_iso(),
            "commands": sum(self.outcomes.values()),
            "outcomes": dict(self.outcomes),
        }
        self.events.emit("session_finished", **summary)
        return summary
