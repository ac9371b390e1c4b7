"""Workflow orchestrator: classify, disambiguate, validate, confirm, dispatch.

Each submitted command owns a ``WorkflowState`` and advances on a worker
thread until it either terminates or suspends for the user (a clarification
answer or a destructive-action confirmation). A suspended command holds no
thread; ``answer()`` and ``confirm()`` start a new worker from the recorded
state.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ..chat.classifier import ClassifierAdapter, rank_candidates
from ..chat.command_registry import CapabilityRegistry
from ..chat.disambiguation import DisambiguationPolicy, ResolvedIntent, Unresolved, resolve
from ..chat.intent_schema import ClarificationRequest, Intent, IntentCandidate, validate
from ..errors import (
    CapabilityNotFound,
    CommandTimeout,
    IntentUnresolved,
    InvalidIntentError,
    MarcoError,
    ModuleExecutionError,
    ValidationError,
    WorkflowLimitExceeded,
)
from ..modules.base import ExecutionResult
from ..runs.events import NullEventWriter
from ..utils import is_affirmative, serialize
from .guarded import CANCELLED, TIMEOUT, guarded_call
from .workflow import StepRecord, WorkflowState, WorkflowStatus

_UNRESOLVED_MESSAGES = {
    "no_candidates": "Could not interpret the command.",
    "low_confidence": "Could not interpret the command with enough confidence.",
    "clarification_budget_exhausted": "Still ambiguous after the maximum number of clarification rounds.",
}


class FrontEnd(Protocol):
    def ask_user(self, question: str, options: Sequence[str]) -> str | None:
        ...

    def confirm_destructive(self, description: str) -> bool:
        ...


@dataclass(frozen=True)
class CommandHandle:
    command_id: str


@dataclass(frozen=True)
class OrchestratorPolicy:
    disambiguation: DisambiguationPolicy = field(default_factory=DisambiguationPolicy)
    strict_parameters: bool = True
    confirm_timeout_s: float = 120.0
    dispatch_timeout_s: float = 30.0
    command_timeout_s: float = 120.0
    max_steps: int = 5

    def __post_init__(self) -> None:
        if self.dispatch_timeout_s <= 0 or self.command_timeout_s <= 0 or self.confirm_timeout_s <= 0:
            raise ValueError("Timeouts must be positive")
        if self.dispatch_timeout_s >= self.command_timeout_s:
            raise ValueError("dispatch_timeout_s must be smaller than command_timeout_s")
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")


class _Command:
    def __init__(self, command_id: str, text: str, session_context: Mapping[str, Any] | None) -> None:
        self.state = WorkflowState(
            command_id=command_id,
            raw_input=text,
            cumulative_context=dict(session_context or {}),
            history=[WorkflowStatus.CLASSIFYING.value],
        )
        self.lock = threading.RLock()
        self.cancel = threading.Event()
        self.settled = threading.Event()
        self.generation = 0
        self.next_text = text
        self.clarification_context: dict[str, Any] | None = None
        self.candidates: tuple[IntentCandidate, ...] = ()
        self.resolved: ResolvedIntent | None = None
        self.current: Intent | None = None
        self.confirmed: Intent | None = None
        self.confirm_deadline: float | None = None
        self.follow_ups: deque[str] = deque()
        self.record: StepRecord | None = None
        self.validation_error: ValidationError | None = None
        self.busy_s = 0.0


class WorkflowOrchestrator:
    def __init__(
        self,
        registry: CapabilityRegistry,
        classifier: ClassifierAdapter,
        policy: OrchestratorPolicy | None = None,
        events: Any = None,
    ) -> None:
        self.registry = registry
        self.classifier = classifier
        self.policy = policy or OrchestratorPolicy()
        self.events = events or NullEventWriter()
        self._lock = threading.Lock()
        self._commands: dict[str, _Command] = {}

    # Public surface

    def submit_command(self, text: str, session_context: Mapping[str, Any] | None = None) -> CommandHandle:
        if not self.registry.closed:
            raise RuntimeError("Capability registry must be closed before commands are submitted")
        command_id = uuid.uuid4().hex
        cmd = _Command(command_id, text, session_context)
        with self._lock:
            self._commands[command_id] = cmd
        self.events.emit("command_submitted", command_id=command_id, text=text)
        with cmd.lock:
            self._start_worker(cmd)
        return CommandHandle(command_id)

    def get_status(self, handle: CommandHandle) -> dict[str, Any]:
        cmd = self._get(handle)
        with cmd.lock:
            self._expire_confirmation(cmd)
            return cmd.state.snapshot()

    def wait(self, handle: CommandHandle, timeout: float | None = None) -> dict[str, Any]:
        """Block until the command is suspended for the user or has terminated."""
        cmd = self._get(handle)
        cmd.settled.wait(timeout)
        return self.get_status(handle)

    def cancel(self, handle: CommandHandle) -> None:
        cmd = self._get(handle)
        with cmd.lock:
            if cmd.state.status.terminal:
                return
            cmd.cancel.set()
            if cmd.state.pending_step is not None:
                # Suspended: no worker will observe the signal, so settle here.
                self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")

    def answer(self, handle: CommandHandle, text: str) -> None:
        cmd = self._get(handle)
        with cmd.lock:
            pending = cmd.state.pending_step
            if cmd.state.status.terminal or not isinstance(pending, ClarificationRequest):
                raise ValueError(f"Command {handle.command_id} is not waiting for a clarification")
            cmd.state.pending_step = None
            self.events.emit("clarification_answered", command_id=handle.command_id, kind=pending.kind, answer=text)
            if pending.kind == "confirm_interpretation" and pending.context is not None and is_affirmative(text):
                cmd.resolved = ResolvedIntent(intent=pending.context, confidence=1.0, follow_up=pending.follow_up)
                self._transition(cmd, WorkflowStatus.VALIDATING)
            else:
                cmd.next_text = text
                if pending.kind == "complete_fields":
                    cmd.clarification_context = {
                        "kind": pending.kind,
                        "question": pending.question,
                        "fields": list(pending.fields),
                        "intent": serialize(pending.context),
                        "answer": text,
                        "follow_up": pending.follow_up,
                    }
                self._transition(cmd, WorkflowStatus.CLASSIFYING)
            self._start_worker(cmd)

    def confirm(self, handle: CommandHandle, approved: bool) -> None:
        cmd = self._get(handle)
        with cmd.lock:
            pending = cmd.state.pending_step
            if cmd.state.status != WorkflowStatus.CONFIRM_PENDING or not isinstance(pending, Intent):
                raise ValueError(f"Command {handle.command_id} is not waiting for a confirmation")
            if self._expire_confirmation(cmd):
                return
            self.events.emit("confirmation_answered", command_id=handle.command_id, approved=bool(approved))
            if not approved:
                self._finish(cmd, WorkflowStatus.CANCELLED, reason="confirmation_declined")
                return
            cmd.state.pending_step = None
            cmd.confirmed = pending
            cmd.current = pending
            self._transition(cmd, WorkflowStatus.DISPATCHING)
            self._start_worker(cmd)

    def forget(self, handle: CommandHandle) -> None:
        cmd = self._get(handle)
        with cmd.lock:
            if not cmd.state.status.terminal:
                raise ValueError(f"Command {handle.command_id} is still active")
        with self._lock:
            self._commands.pop(handle.command_id, None)

    def run_command(
        self,
        text: str,
        frontend: FrontEnd,
        session_context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Drive a command to completion, answering prompts through ``frontend``."""
        handle = self.submit_command(text, session_context)
        while True:
            snapshot = self.wait(handle)
            if snapshot["terminal"]:
                return snapshot
            cmd = self._get(handle)
            with cmd.lock:
                pending = cmd.state.pending_step
            if isinstance(pending, ClarificationRequest):
                reply = frontend.ask_user(pending.question, list(pending.options))
                if reply is None:
                    self.cancel(handle)
                else:
                    self.answer(handle, reply)
            elif isinstance(pending, Intent):
                approved = frontend.confirm_destructive(self.describe_action(pending))
                self.confirm(handle, bool(approved))

    def describe_action(self, intent: Intent) -> str:
        descriptor = self.registry.get(intent.module)
        schema = descriptor.actions.get(intent.action) if descriptor else None
        if schema is not None and schema.description:
            return f"{intent.describe()}: {schema.description}"
        return intent.describe()

    # Worker

    def _get(self, handle: CommandHandle) -> _Command:
        with self._lock:
            cmd = self._commands.get(handle.command_id)
        if cmd is None:
            raise KeyError(f"Unknown command {handle.command_id}")
        return cmd

    def _start_worker(self, cmd: _Command) -> None:
        cmd.generation += 1
        cmd.settled.clear()
        thread = threading.Thread(
            target=self._drive,
            args=(cmd, cmd.generation),
            name=f"marco-command-{cmd.state.command_id[:8]}",
            daemon=True,
        )
        thread.start()

    def _drive(self, cmd: _Command, generation: int) -> None:
        started = time.monotonic()
        handlers = {
            WorkflowStatus.CLASSIFYING: self._classify,
            WorkflowStatus.DISAMBIGUATING: self._disambiguate,
            WorkflowStatus.VALIDATING: self._validate,
            WorkflowStatus.DISPATCHING: self._dispatch,
            WorkflowStatus.STEP_COMPLETE: self._complete_step,
        }
        try:
            while True:
                with cmd.lock:
                    if cmd.generation != generation:
                        # A newer worker owns the command after a suspension was answered.
                        return
                    status = cmd.state.status
                    if status.terminal or cmd.state.pending_step is not None:
                        return
                    if cmd.cancel.is_set():
                        self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
                        return
                if self._remaining(cmd, started) <= 0:
                    self._fail(cmd, CommandTimeout(f"Command exceeded {self.policy.command_timeout_s:.1f}s"))
                    return
                handlers[status](cmd, started)
        except Exception as exc:
            self._fail(cmd, MarcoError(f"Internal error: {exc}", detail={"exception": type(exc).__name__}))
        finally:
            with cmd.lock:
                cmd.busy_s += time.monotonic() - started
                if cmd.generation == generation:
                    cmd.settled.set()

    def _remaining(self, cmd: _Command, started: float) -> float:
        return self.policy.command_timeout_s - (cmd.busy_s + time.monotonic() - started)

    def _classify(self, cmd: _Command, started: float) -> None:
        context: dict[str, Any] = {
            "facts": dict(cmd.state.cumulative_context),
            "catalog": self.registry.catalog(),
        }
        if cmd.clarification_context is not None:
            context["clarification"] = cmd.clarification_context
        result = self.classifier.classify(
            cmd.next_text, context, cancel=cmd.cancel, timeout_s=self._remaining(cmd, started)
        )
        cmd.clarification_context = None
        if result.cancelled:
            self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
            return
        if result.error is not None:
            self._fail(cmd, result.error)
            return
        if result.attempts > 1:
            self.events.emit("classifier_retry", command_id=cmd.state.command_id, attempts=result.attempts)
        if not result.candidates and result.questions:
            if cmd.state.clarification_rounds >= self.policy.disambiguation.max_clarification_rounds:
                self._fail(cmd, IntentUnresolved(_UNRESOLVED_MESSAGES["clarification_budget_exhausted"]))
                return
            self._request_clarification(
                cmd, ClarificationRequest(question=result.questions[0], context=None, kind="rephrase")
            )
            return
        cmd.candidates = result.candidates
        self._transition(cmd, WorkflowStatus.DISAMBIGUATING)

    def _disambiguate(self, cmd: _Command, started: float) -> None:
        resolution = resolve(
            cmd.candidates,
            self.policy.disambiguation,
            cmd.state.clarification_rounds,
            choices=self._choices(cmd.candidates),
        )
        if isinstance(resolution, ResolvedIntent):
            cmd.resolved = resolution
            self._transition(cmd, WorkflowStatus.VALIDATING)
        elif isinstance(resolution, ClarificationRequest):
            self._request_clarification(cmd, resolution)
        else:
            self._fail(cmd, self._unresolved_error(cmd, resolution))

    def _unresolved_error(self, cmd: _Command, unresolved: Unresolved) -> IntentUnresolved:
        detail: dict[str, Any] = {"reason": unresolved.reason}
        if cmd.validation_error is not None:
            detail["validation"] = cmd.validation_error.to_dict()
        message = _UNRESOLVED_MESSAGES.get(unresolved.reason, "Could not resolve the command.")
        return IntentUnresolved(message, best=unresolved.best, detail=detail)

    def _choices(self, candidates: Sequence[IntentCandidate]) -> dict[str, Sequence[Any]]:
        if not candidates:
            return {}
        top = rank_candidates(candidates)[0].intent
        descriptor = self.registry.get(top.module) if top.module else None
        schema = descriptor.actions.get(top.action) if descriptor else None
        if schema is None:
            return {}
        return {spec.name: spec.choices for spec in schema.params if spec.choices}

    def _validate(self, cmd: _Command, started: float) -> None:
        resolved = cmd.resolved
        assert resolved is not None
        intent = resolved.intent
        result = validate(intent, self.registry.get(intent.module), strict=self.policy.strict_parameters)
        if result.ok and result.intent is not None:
            try:
                self.registry.module(intent.module)
            except CapabilityNotFound as exc:
                self._fail(cmd, InvalidIntentError(str(exc), detail={"intent": serialize(intent)}))
                return
            cmd.validation_error = None
            cmd.current = result.intent
            if self.registry.is_destructive(intent.module, intent.action):
                self._request_confirmation(cmd, result.intent)
            else:
                self._transition(cmd, WorkflowStatus.DISPATCHING)
            return

        error = ValidationError(
            f"{intent.key} has invalid parameters",
            errors=list(result.errors),
        )
        self.events.emit("validation_failed", command_id=cmd.state.command_id, **error.to_dict())
        if not result.recoverable:
            first = result.errors[0]
            self._fail(
                cmd,
                InvalidIntentError(first.message, detail={"intent": serialize(intent), "errors": serialize(result.errors)}),
            )
            return
        cmd.validation_error = error
        cmd.candidates = (
            IntentCandidate(
                intent=intent,
                confidence=resolved.confidence,
                missing_fields=result.fields_with("missing"),
                ambiguous_fields=result.fields_with("type", "choice"),
                follow_up=resolved.follow_up,
            ),
        )
        cmd.resolved = None
        self._transition(cmd, WorkflowStatus.DISAMBIGUATING)

    def _request_clarification(self, cmd: _Command, request: ClarificationRequest) -> None:
        with cmd.lock:
            if cmd.cancel.is_set():
                self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
                return
            cmd.state.clarification_rounds += 1
            cmd.state.pending_step = request
            if cmd.state.status != WorkflowStatus.DISAMBIGUATING:
                self._transition(cmd, WorkflowStatus.DISAMBIGUATING)
            self.events.emit(
                "clarification_requested",
                command_id=cmd.state.command_id,
                question=request.question,
                fields=list(request.fields),
                kind=request.kind,
                round=cmd.state.clarification_rounds,
            )
            cmd.settled.set()

    def _request_confirmation(self, cmd: _Command, intent: Intent) -> None:
        with cmd.lock:
            if cmd.cancel.is_set():
                self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
                return
            cmd.state.pending_step = intent
            cmd.confirm_deadline = time.monotonic() + self.policy.confirm_timeout_s
            self._transition(cmd, WorkflowStatus.CONFIRM_PENDING)
            self.events.emit(
                "confirmation_requested",
                command_id=cmd.state.command_id,
                description=self.describe_action(intent),
            )
            cmd.settled.set()

    def _expire_confirmation(self, cmd: _Command) -> bool:
        if cmd.state.status != WorkflowStatus.CONFIRM_PENDING or cmd.confirm_deadline is None:
            return False
        if time.monotonic() <= cmd.confirm_deadline:
            return False
        self._finish(cmd, WorkflowStatus.CANCELLED, reason="confirmation_timed_out")
        return True

    def _dispatch(self, cmd: _Command, started: float) -> None:
        intent = cmd.current
        assert intent is not None
        destructive = self.registry.is_destructive(intent.module, intent.action)
        if destructive and cmd.confirmed is not intent:
            self._request_confirmation(cmd, intent)
            return
        retryable = not destructive and self.registry.is_idempotent(intent.module, intent.action)
        module = self.registry.module(intent.module)
        parameters = dict(intent.parameters)
        attempts = 0
        while True:
            attempts += 1
            timeout_s = min(self.policy.dispatch_timeout_s, self._remaining(cmd, started))
            if timeout_s <= 0:
                self._fail(cmd, CommandTimeout(f"Command exceeded {self.policy.command_timeout_s:.1f}s"))
                return
            if cmd.cancel.is_set():
                # Nothing has been sent to the module yet.
                self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
                return
            outcome = guarded_call(
                lambda: module.execute(intent.action, parameters),
                timeout_s=timeout_s,
                cancel=cmd.cancel,
                name=f"marco-dispatch-{intent.key}",
            )
            if outcome.ok:
                if not isinstance(outcome.value, ExecutionResult):
                    self._fail(
                        cmd,
                        ModuleExecutionError(
                            f"{intent.key} returned {type(outcome.value).__name__}, expected ExecutionResult",
                            module=intent.module,
                            action=intent.action,
                        ),
                    )
                    return
                cmd.record = StepRecord(intent=intent, result=outcome.value, attempts=attempts)
                self._transition(cmd, WorkflowStatus.STEP_COMPLETE)
                return
            if outcome.status == CANCELLED:
                if destructive:
                    self._finish(cmd, WorkflowStatus.UNCERTAIN, reason="cancelled_during_destructive_dispatch")
                else:
                    self._finish(cmd, WorkflowStatus.CANCELLED, reason="cancelled")
                return
            if outcome.status == TIMEOUT:
                error = ModuleExecutionError(
                    f"{intent.key} timed out after {timeout_s:.1f}s",
                    transient=True,
                    module=intent.module,
                    action=intent.action,
                    detail={"reason": "timeout"},
                )
                if destructive:
                    self._finish(
                        cmd, WorkflowStatus.UNCERTAIN, error=error, reason="destructive_dispatch_timed_out"
                    )
                    return
            elif isinstance(outcome.error, ModuleExecutionError):
                error = outcome.error
                error.module = error.module or intent.module
                error.action = error.action or intent.action
            else:
                error = ModuleExecutionError(
                    f"{intent.key} failed: {outcome.error}",
                    module=intent.module,
                    action=intent.action,
                    detail={"exception": type(outcome.error).__name__},
                )
            if retryable and error.transient and attempts == 1:
                self.events.emit(
                    "dispatch_retry", command_id=cmd.state.command_id, intent=intent.key, error=error.to_dict()
                )
                continue
            self._fail(cmd, error)
            return

    def _complete_step(self, cmd: _Command, started: float) -> None:
        record = cmd.record
        resolved = cmd.resolved
        assert record is not None
        with cmd.lock:
            cmd.state.steps.append(record)
            cmd.state.cumulative_context.update(record.result.context_updates)
            if record.result.follow_up:
                cmd.follow_ups.appendleft(record.result.follow_up)
            if resolved is not None and resolved.follow_up:
                cmd.follow_ups.append(resolved.follow_up)
            cmd.record = None
            cmd.resolved = None
            cmd.current = None
            cmd.confirmed = None
            cmd.candidates = ()
        self.events.emit(
            "step_completed",
            command_id=cmd.state.command_id,
            step=len(cmd.state.steps),
            intent=record.intent,
            attempts=record.attempts,
            context_updates=record.result.context_updates,
        )
        if not cmd.follow_ups:
            self._finish(cmd, WorkflowStatus.DONE)
            return
        if len(cmd.state.steps) >= self.policy.max_steps:
            self._fail(
                cmd,
                WorkflowLimitExceeded(
                    f"Command stopped after {self.policy.max_steps} steps",
                    detail={"pending_follow_ups": list(cmd.follow_ups)},
                ),
            )
            return
        cmd.next_text = cmd.follow_ups.popleft()
        self._transition(cmd, WorkflowStatus.CLASSIFYING)

    # Transitions

    def _transition(self, cmd: _Command, status: WorkflowStatus) -> None:
        with cmd.lock:
            if cmd.state.status.terminal:
                return
            cmd.state.status = status
            cmd.state.history.append(status.value)
        self.events.emit("state_changed", command_id=cmd.state.command_id, status=status.value)

    def _fail(self, cmd: _Command, error: MarcoError) -> None:
        self._finish(cmd, WorkflowStatus.FAILED, error=error)

    def _finish(
        self,
        cmd: _Command,
        status: WorkflowStatus,
        *,
        error: MarcoError | None = None,
        reason: str | None = None,
    ) -> None:
        with cmd.lock:
            if cmd.state.status.terminal:
                return
            cmd.state.status = status
            cmd.state.error = error
            cmd.state.reason = reason
            cmd.state.pending_step = None
            cmd.state.history.append(status.value)
            self.events.emit(
                "command_finished",
                command_id=cmd.state.command_id,
                status=status.value,
                reason=reason,
                error=error,
                steps=len(cmd.state.steps),
            )
            cmd.settled.set()
