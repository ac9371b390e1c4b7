"""Classifier backend base classes."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol


class BackendError(RuntimeError):
    """Non-transient backend failure (bad credentials, rejected request)."""


class TransientBackendError(BackendError):
    """Network-level failure worth one retry (connection reset, 429, 5xx)."""


class ClassifierBackend(Protocol):
    name: str

    def classify(self, text: str, context: Mapping[str, Any]) -> str | Mapping[str, Any]:
        ...


class BackendRegistry:
    def __init__(self, backends: Iterable[ClassifierBackend]) -> None:
        self._backends = {backend.name: backend for backend in backends}

    def get(self, name: str) -> ClassifierBackend | None:
        return self._backends.get(name)

    def list(self) -> list[str]:
        return sorted(self._backends.keys())
