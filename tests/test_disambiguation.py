from __future__ import annotations

import pytest

from marco_engine.chat.disambiguation import DisambiguationPolicy, ResolvedIntent, Unresolved, resolve
from marco_engine.chat.intent_schema import ClarificationRequest, Intent, IntentCandidate

POLICY = DisambiguationPolicy()


def _candidate(action: str, confidence: float, missing=(), ambiguous=(), **params) -> IntentCandidate:
    return IntentCandidate(
        Intent("fs", action, params),
        confidence,
        missing_fields=frozenset(missing),
        ambiguous_fields=frozenset(ambiguous),
    )


def test_confident_complete_candidate_resolves() -> None:
    result = resolve([_candidate("list_dir", 0.95, path="src")], POLICY)
    assert isinstance(result, ResolvedIntent)
    assert result.intent.parameters["path"] == "src"


def test_missing_fields_yield_scoped_clarification() -> None:
    candidate = _candidate("delete_file", 0.75, missing=("path",))
    result = resolve([candidate], POLICY)
    assert isinstance(result, ClarificationRequest)
    assert result.kind == "complete_fields"
    assert result.fields == ("path",)
    assert "path" in result.question
    assert result.context is candidate.intent


def test_confident_fields_are_not_reasked() -> None:
    candidate = _candidate("move_path", 0.9, missing=("destination",), source="a.txt")
    result = resolve([candidate], POLICY)
    assert result.fields == ("destination",)


def test_choices_become_options_for_single_field() -> None:
    candidate = _candidate("list_dir", 0.9, ambiguous=("sort",))
    result = resolve([candidate], POLICY, choices={"sort": ("name", "size")})
    assert result.options == ("name", "size")


def test_middle_confidence_complete_candidate_asks_for_confirmation() -> None:
    result = resolve([_candidate("list_dir", 0.6, path="src")], POLICY)
    assert isinstance(result, ClarificationRequest)
    assert result.kind == "confirm_interpretation"
    assert result.options == ("yes", "no")
    assert "fs.list_dir" in result.question


def test_low_confidence_is_unresolved_with_best_candidate() -> None:
    low = _candidate("list_dir", 0.2)
    lower = _candidate("read_file", 0.1)
    result = resolve([lower, low], POLICY)
    assert isinstance(result, Unresolved)
    assert result.reason == "low_confidence"
    assert result.best is low


def test_no_candidates_is_unresolved() -> None:
    result = resolve([], POLICY)
    assert isinstance(result, Unresolved)
    assert result.reason == "no_candidates"
    assert result.best is None


def test_round_budget_exhausted() -> None:
    candidate = _candidate("delete_file", 0.75, missing=("path",))
    result = resolve([candidate], POLICY, rounds_used=3)
    assert isinstance(result, Unresolved)
    assert result.reason == "clarification_budget_exhausted"
    assert result.best is candidate


def test_ties_prefer_fewer_missing_fields() -> None:
    incomplete = _candidate("read_file", 0.9, missing=("path",))
    complete = _candidate("list_dir", 0.9, path=".")
    result = resolve([incomplete, complete], POLICY)
    assert isinstance(result, ResolvedIntent)
    assert result.intent.action == "list_dir"


def test_resolve_is_idempotent() -> None:
    candidates = [_candidate("delete_file", 0.75, missing=("path",)), _candidate("read_file", 0.5)]
    assert resolve(candidates, POLICY, 1) == resolve(candidates, POLICY, 1)


def test_policy_validates_thresholds() -> None:
    with pytest.raises(ValueError):
        DisambiguationPolicy(accept_threshold=0.3, complete_threshold=0.5)
    with pytest.raises(ValueError):
        DisambiguationPolicy(max_clarification_rounds=-1)
