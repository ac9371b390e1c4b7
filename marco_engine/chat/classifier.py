"""Classifier adapter: normalizes a natural-language backend into ranked candidates."""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from ..errors import ClassifierUnavailable
from ..mcp.guarded import CANCELLED, TIMEOUT, guarded_call
from ..providers.base import ClassifierBackend, TransientBackendError
from ..utils import strip_code_fence
from .intent_schema import Intent, IntentCandidate


@dataclass(frozen=True)
class ClassifyResult:
    candidates: tuple[IntentCandidate, ...] = ()
    questions: tuple[str, ...] = ()
    error: ClassifierUnavailable | None = None
    attempts: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class ClassifierAdapter:
    """Wraps a backend with a timeout, one retry for transient failures, and parsing.

    The adapter never raises for backend problems; callers inspect
    ``ClassifyResult.error`` instead.
    """

    def __init__(
        self,
        backend: ClassifierBackend,
        *,
        timeout_s: float = 15.0,
        max_retries: int = 1,
        default_confidence: float = 0.5,
        on_retry: Callable[[int, ClassifierUnavailable], None] | None = None,
    ) -> None:
        self.backend = backend
        self.timeout_s = timeout_s
        self.max_retries = min(max(int(max_retries), 0), 1)
        self.default_confidence = default_confidence
        self.on_retry = on_retry

    def classify(
        self,
        text: str,
        context: Mapping[str, Any] | None = None,
        *,
        cancel: threading.Event | None = None,
        timeout_s: float | None = None,
    ) -> ClassifyResult:
        context = dict(context or {})
        budget = self.timeout_s if timeout_s is None else min(timeout_s, self.timeout_s)
        attempts = 0
        last_error: ClassifierUnavailable | None = None
        for attempt in range(self.max_retries + 1):
            attempts += 1
            outcome = guarded_call(
                lambda: self.backend.classify(text, context),
                timeout_s=budget,
                cancel=cancel,
                name=f"marco-classify-{self.backend.name}",
            )
            if outcome.status == CANCELLED:
                return ClassifyResult(attempts=attempts, cancelled=True)
            if outcome.ok:
                candidates, questions = parse_backend_output(
                    outcome.value, text, default_confidence=self.default_confidence
                )
                facts = context.get("facts")
                if isinstance(facts, Mapping) and facts:
                    candidates = [fill_from_facts(candidate, facts) for candidate in candidates]
                return ClassifyResult(
                    candidates=tuple(rank_candidates(candidates)),
                    questions=tuple(questions),
                    attempts=attempts,
                )
            if outcome.status == TIMEOUT:
                transient = True
                last_error = ClassifierUnavailable(
                    f"Classifier {self.backend.name} timed out after {budget:.1f}s",
                    detail={"backend": self.backend.name, "reason": "timeout", "attempts": attempts},
                )
            else:
                transient = isinstance(outcome.error, TransientBackendError)
                last_error = ClassifierUnavailable(
                    f"Classifier {self.backend.name} failed: {outcome.error}",
                    detail={
                        "backend": self.backend.name,
                        "reason": "transient" if transient else "backend_error",
                        "attempts": attempts,
                    },
                )
            if not transient or attempt >= self.max_retries:
                break
            if self.on_retry is not None:
                self.on_retry(attempts, last_error)
        return ClassifyResult(error=last_error, attempts=attempts)


def rank_candidates(candidates: Iterable[IntentCandidate]) -> list[IntentCandidate]:
    return sorted(candidates, key=lambda c: (-c.confidence, len(c.missing_fields)))


def parse_backend_output(
    raw: Any, text: str, *, default_confidence: float = 0.5
) -> tuple[list[IntentCandidate], list[str]]:
    """Parse raw backend output into candidates and clarification questions.

    Output that does not have the expected structure becomes a single
    zero-confidence candidate with every field marked ambiguous.
    """
    payload: Any = raw
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(strip_code_fence(payload))
        except json.JSONDecodeError:
            return [unparseable_candidate(text)], []

    questions: list[str] = []
    if isinstance(payload, Mapping):
        raw_questions = payload.get("questions")
        if isinstance(raw_questions, list):
            questions = [str(q).strip() for q in raw_questions if str(q).strip()]
        if "candidates" in payload:
            items = payload.get("candidates")
        elif "module" in payload or "action" in payload or "intent" in payload:
            items = [payload]
        elif questions:
            items = []
        else:
            return [unparseable_candidate(text, payload.keys())], []
    elif isinstance(payload, list):
        items = payload
    else:
        return [unparseable_candidate(text)], []

    if not isinstance(items, list):
        return [unparseable_candidate(text)], questions
    return [_parse_candidate(item, text, default_confidence) for item in items], questions


def unparseable_candidate(text: str, keys: Iterable[Any] = ()) -> IntentCandidate:
    fields = {"module", "action"} | {str(key) for key in keys}
    return IntentCandidate(
        intent=Intent(module="", action="", parameters={}, raw_input=text),
        confidence=0.0,
        ambiguous_fields=frozenset(fields),
    )


def _parse_candidate(item: Any, text: str, default_confidence: float) -> IntentCandidate:
    if not isinstance(item, Mapping):
        return unparseable_candidate(text)
    module = item.get("module", "")
    action = item.get("action", item.get("intent", ""))
    params = item.get("parameters", item.get("params", {}))
    if params is None:
        params = {}
    if not isinstance(module, str) or not isinstance(action, str) or not isinstance(params, Mapping):
        return unparseable_candidate(text, params.keys() if isinstance(params, Mapping) else ())

    present = {str(key): value for key, value in params.items() if value is not None}
    missing = set(_names(item.get("missing_fields"))) | {str(key) for key, value in params.items() if value is None}
    missing -= set(present)
    ambiguous = set(_names(item.get("ambiguous_fields")))
    module = module.strip().lower()
    action = action.strip().lower()
    if not module:
        ambiguous.add("module")
    if not action:
        ambiguous.add("action")
    follow_up = item.get("follow_up")
    return IntentCandidate(
        intent=Intent(module=module, action=action, parameters=present, raw_input=text),
        confidence=_confidence(item.get("confidence"), default_confidence),
        missing_fields=frozenset(missing),
        ambiguous_fields=frozenset(ambiguous),
        follow_up=follow_up.strip() if isinstance(follow_up, str) and follow_up.strip() else None,
    )


def _names(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple, set)):
        return [str(name) for name in value if str(name)]
    return []


def _confidence(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(score):
        return 0.0
    return min(max(score, 0.0), 1.0)


def fill_from_facts(candidate: IntentCandidate, facts: Mapping[str, Any]) -> IntentCandidate:
    """Complete missing parameters from facts gathered in earlier workflow steps."""
    fillable = {
        name: facts[name]
        for name in candidate.missing_fields
        if name in facts and isinstance(facts[name], (str, int, float, bool))
    }
    if not fillable:
        return candidate
    return IntentCandidate(
        intent=candidate.intent.with_parameters(fillable),
        confidence=candidate.confidence,
        missing_fields=candidate.missing_fields - set(fillable),
        ambiguous_fields=candidate.ambiguous_fields,
        follow_up=candidate.follow_up,
    )
