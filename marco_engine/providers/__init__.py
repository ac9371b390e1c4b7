"""Classifier backend registry."""

from __future__ import annotations

from .base import BackendRegistry
from .dryrun import DryRunClassifierBackend
from .openai import OpenAIClassifierBackend


def default_registry(
    *,
    api_key: str | None = None,
    model: str = "gpt-4o-mini",
    api_base: str | None = None,
    timeout_s: float = 20.0,
) -> BackendRegistry:
    return BackendRegistry(
        [
            DryRunClassifierBackend(),
            OpenAIClassifierBackend(api_key=api_key, model=model, api_base=api_base, timeout_s=timeout_s),
        ]
    )
