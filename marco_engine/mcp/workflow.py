"""Per-command workflow state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..chat.intent_schema import ClarificationRequest, Intent
from ..errors import MarcoError
from ..modules.base import ExecutionResult
from ..utils import serialize


class WorkflowStatus(str, Enum):
    CLASSIFYING = "classifying"
    DISAMBIGUATING = "disambiguating"
    VALIDATING = "validating"
    CONFIRM_PENDING = "confirm_pending"
    DISPATCHING = "dispatching"
    STEP_COMPLETE = "step_complete"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNCERTAIN = "uncertain"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {WorkflowStatus.DONE, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED, WorkflowStatus.UNCERTAIN}
)


@dataclass
class StepRecord:
    intent: Intent
    result: ExecutionResult
    attempts: int = 1


@dataclass
class WorkflowState:
    command_id: str
    raw_input: str
    status: WorkflowStatus = WorkflowStatus.CLASSIFYING
    steps: list[StepRecord] = field(default_factory=list)
    pending_step: Intent | ClarificationRequest | None = None
    cumulative_context: dict[str, Any] = field(default_factory=dict)
    clarification_rounds: int = 0
    error: MarcoError | None = None
    reason: str | None = None
    history: list[str] = field(default_factory=list)

    @property
    def output(self) -> str | None:
        if not self.steps:
            return None
        return self.steps[-1].result.output

    def pending_kind(self) -> str | None:
        if isinstance(self.pending_step, ClarificationRequest):
            return "clarification"
        if isinstance(self.pending_step, Intent):
            return "confirmation"
        return None

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable copy; safe to hand to other threads."""
        return {
            "command_id": self.command_id,
            "raw_input": self.raw_input,
            "status": self.status.value,
            "terminal": self.status.terminal,
            "steps": serialize(self.steps),
            "pending_kind": self.pending_kind(),
            "pending_step": serialize(self.pending_step),
            "cumulative_context": serialize(self.cumulative_context),
            "clarification_rounds": self.clarification_rounds,
            "error": serialize(self.error),
            "reason": self.reason,
            "output": self.output,
            "history": list(self.history),
        }
