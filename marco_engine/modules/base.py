"""Module execution contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from ..chat.command_registry import CapabilityDescriptor


@dataclass
class ExecutionResult:
    output: str
    data: Any = None
    context_updates: dict[str, Any] = field(default_factory=dict)
    follow_up: str | None = None


class Module(Protocol):
    name: str

    def capabilities(self) -> CapabilityDescriptor:
        ...

    def execute(self, action: str, parameters: Mapping[str, Any]) -> ExecutionResult:
        ...
