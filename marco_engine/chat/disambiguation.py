"""Decide whether a set of candidates resolves, needs clarification, or fails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

from .intent_schema import ClarificationRequest, Intent, IntentCandidate


@dataclass(frozen=True)
class DisambiguationPolicy:
    accept_threshold: float = 0.8
    complete_threshold: float = 0.4
    max_clarification_rounds: int = 3

    def __post_init__(self) -> None:
        if not 0.0 <= self.complete_threshold <= self.accept_threshold <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 <= complete_threshold <= accept_threshold <= 1 "
                f"(got {self.complete_threshold}, {self.accept_threshold})"
            )
        if self.max_clarification_rounds < 0:
            raise ValueError("max_clarification_rounds must be >= 0")


@dataclass(frozen=True)
class ResolvedIntent:
    intent: Intent
    confidence: float
    follow_up: str | None = None


@dataclass(frozen=True)
class Unresolved:
    reason: str
    best: IntentCandidate | None = None


Resolution = Union[ResolvedIntent, ClarificationRequest, Unresolved]


def resolve(
    candidates: Iterable[IntentCandidate],
    policy: DisambiguationPolicy,
    rounds_used: int = 0,
    *,
    choices: Mapping[str, Sequence[Any]] | None = None,
) -> Resolution:
    """Pick the top candidate and decide what to do with it.

    ``choices`` maps field names to allowed values; when a field being asked
    about has choices they become the clarification's options.
    """
    ranked = sorted(candidates, key=lambda c: (-c.confidence, len(c.missing_fields)))
    if not ranked:
        return Unresolved(reason="no_candidates")
    top = ranked[0]
    if top.confidence < policy.complete_threshold:
        return Unresolved(reason="low_confidence", best=top)

    if top.is_complete and top.confidence >= policy.accept_threshold:
        return ResolvedIntent(intent=top.intent, confidence=top.confidence, follow_up=top.follow_up)

    if rounds_used >= policy.max_clarification_rounds:
        return Unresolved(reason="clarification_budget_exhausted", best=top)

    if not top.is_complete:
        fields = tuple(sorted(top.unresolved_fields))
        return ClarificationRequest(
            question=_field_question(top, fields),
            context=top.intent,
            fields=fields,
            options=_options_for(fields, choices),
            kind="complete_fields",
            follow_up=top.follow_up,
        )

    return ClarificationRequest(
        question=f"Did you mean {top.intent.describe()}?",
        context=top.intent,
        fields=(),
        options=("yes", "no"),
        kind="confirm_interpretation",
        follow_up=top.follow_up,
    )


def _field_question(candidate: IntentCandidate, fields: tuple[str, ...]) -> str:
    target = candidate.intent.key if candidate.intent.module and candidate.intent.action else "this command"
    missing = [name for name in fields if name in candidate.missing_fields]
    unclear = [name for name in fields if name not in candidate.missing_fields]
    parts: list[str] = []
    if missing:
        parts.append(f"Please provide {_join(missing)} for {target}.")
    if unclear:
        parts.append(f"Please clarify {_join(unclear)} for {target}.")
    return " ".join(parts)


def _join(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _options_for(fields: tuple[str, ...], choices: Mapping[str, Sequence[Any]] | None) -> tuple[str, ...]:
    if not choices or len(fields) != 1:
        return ()
    allowed = choices.get(fields[0])
    if not allowed:
        return ()
    return tuple(str(choice) for choice in allowed)
