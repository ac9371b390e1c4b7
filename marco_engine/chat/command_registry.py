"""Capability registry shared by the classifier prompt, validator and dispatcher."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from ..errors import CapabilityNotFound, RegistrationClosed
from .intent_schema import ActionSchema

if TYPE_CHECKING:
    from ..modules.base import Module


@dataclass(frozen=True)
class CapabilityDescriptor:
    name: str
    actions: Mapping[str, ActionSchema] = field(default_factory=dict)
    destructive_actions: frozenset[str] = frozenset()
    idempotent_actions: frozenset[str] = frozenset()
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Capability name must be non-empty")
        object.__setattr__(self, "actions", MappingProxyType(dict(self.actions)))
        object.__setattr__(self, "destructive_actions", frozenset(self.destructive_actions))
        object.__setattr__(self, "idempotent_actions", frozenset(self.idempotent_actions))
        unknown = (self.destructive_actions | self.idempotent_actions) - set(self.actions)
        if unknown:
            raise ValueError(f"{self.name}: flags reference undeclared actions {sorted(unknown)}")
        overlap = self.destructive_actions & self.idempotent_actions
        if overlap:
            raise ValueError(f"{self.name}: actions cannot be both destructive and idempotent {sorted(overlap)}")

    def supports(self, action: str) -> bool:
        return action in self.actions

    def catalog_entry(self) -> dict[str, Any]:
        actions: dict[str, Any] = {}
        for action, schema in sorted(self.actions.items()):
            actions[action] = {
                "description": schema.description,
                "destructive": action in self.destructive_actions,
                "params": {
                    spec.name: {
                        "type": spec.type,
                        "required": spec.required,
                        **({"choices": list(spec.choices)} if spec.choices else {}),
                        **({"description": spec.description} if spec.description else {}),
                    }
                    for spec in schema.params
                },
            }
        return {"module": self.name, "description": self.description, "actions": actions}


class CapabilityRegistry:
    """Two-phase registry: open for registration at startup, then read-only.

    Reads after ``close()`` touch only immutable state and need no locking.
    """

    def __init__(self, modules: Iterable["Module"] = ()) -> None:
        self._lock = threading.Lock()
        self._closed = False
        self._descriptors: dict[str, CapabilityDescriptor] = {}
        self._modules: dict[str, "Module"] = {}
        for module in modules:
            self.register_module(module)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, descriptor: CapabilityDescriptor) -> None:
        with self._lock:
            if self._closed:
                raise RegistrationClosed(f"Registration is closed; cannot add module {descriptor.name!r}")
            if descriptor.name in self._descriptors:
                raise ValueError(f"Module {descriptor.name!r} is already registered")
            self._descriptors[descriptor.name] = descriptor

    def register_module(self, module: "Module") -> CapabilityDescriptor:
        descriptor = module.capabilities()
        self.register(descriptor)
        self._modules[descriptor.name] = module
        return descriptor

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._descriptors = dict(self._descriptors)

    def _require_closed(self) -> None:
        if not self._closed:
            raise RuntimeError("Capability registry is still open; call close() after startup registration")

    def lookup(self, module: str) -> CapabilityDescriptor:
        self._require_closed()
        descriptor = self._descriptors.get(module)
        if descriptor is None:
            raise CapabilityNotFound(f"Unknown module: {module or '<empty>'}", detail={"module": module})
        return descriptor

    def get(self, module: str) -> CapabilityDescriptor | None:
        self._require_closed()
        return self._descriptors.get(module)

    def module(self, name: str) -> "Module":
        self._require_closed()
        executor = self._modules.get(name)
        if executor is None:
            raise CapabilityNotFound(f"No executor registered for module {name!r}", detail={"module": name})
        return executor

    def is_destructive(self, module: str, action: str) -> bool:
        return action in self.lookup(module).destructive_actions

    def is_idempotent(self, module: str, action: str) -> bool:
        return action in self.lookup(module).idempotent_actions

    def list(self) -> list[str]:
        return sorted(self._descriptors.keys())

    def catalog(self) -> list[dict[str, Any]]:
        return [self._descriptors[name].catalog_entry() for name in self.list()]
