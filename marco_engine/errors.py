"""Error taxonomy for the intent pipeline and orchestrator.

Cancellation and uncertain outcomes are workflow statuses, not errors; see
``marco_engine.mcp.workflow.WorkflowStatus``.
"""

from __future__ import annotations

from typing import Any, Mapping

from .utils import serialize


class MarcoError(Exception):
    kind = "error"

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ClassifierUnavailable(MarcoError):
    """Backend unreachable, timed out, or rejected the request."""

    kind = "classifier_unavailable"


class IntentUnresolved(MarcoError):
    kind = "intent_unresolved"

    def __init__(self, message: str, *, best: Any = None, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, detail=detail)
        self.best = best

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["best"] = serialize(self.best)
        return payload


class InvalidIntentError(MarcoError):
    """Unknown module or action. Never retried."""

    kind = "invalid_intent"


class ValidationError(MarcoError):
    kind = "validation_error"

    def __init__(self, message: str, *, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = serialize(self.errors)
        return payload


class ModuleExecutionError(MarcoError):
    kind = "module_execution_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        module: str | None = None,
        action: str | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.transient = transient
        self.module = module
        self.action = action

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"transient": self.transient, "module": self.module, "action": self.action})
        return payload


class RegistrationClosed(MarcoError):
    kind = "registration_closed"


class CapabilityNotFound(MarcoError, KeyError):
    kind = "capability_not_found"

    def __str__(self) -> str:
        return self.message


class CommandTimeout(MarcoError):
    kind = "command_timeout"


class WorkflowLimitExceeded(MarcoError):
    kind = "workflow_limit_exceeded"
