"""Rule-based parsing of user input into raw intent candidates.

This is the offline grammar behind the ``dryrun`` classifier backend. It emits
the same JSON shape the LLM backend is prompted for, so the classifier adapter
normalizes both identically.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Any, Callable, Mapping

_SLASH_PATTERN = re.compile(r"^/(\w+)(?:\s+(\w+))?(?:\s+(.*))?$")
_COMPOUND_PATTERN = re.compile(r"\s*,?\s+(?:and\s+)?then\s+", re.IGNORECASE)
_PRONOUNS = {"it", "that", "this", "them", "there"}

REPHRASE_QUESTION = "I could not map that to a command. Could you rephrase it?"

Builder = Callable[[re.Match[str], Mapping[str, Any]], "RuleMatch"]


@dataclass(frozen=True)
class RuleMatch:
    module: str
    action: str
    parameters: dict[str, Any]
    confidence: float
    follow_up: str | None = None

    def to_candidate(self, follow_up: str | None = None) -> dict[str, Any]:
        params = {key: value for key, value in self.parameters.items() if value is not None}
        missing = sorted(key for key, value in self.parameters.items() if value is None)
        if self.follow_up and follow_up:
            follow_up = f"{self.follow_up} then {follow_up}"
        else:
            follow_up = self.follow_up or follow_up
        return {
            "module": self.module,
            "action": self.action,
            "parameters": params,
            "confidence": self.confidence if not missing else min(self.confidence, 0.75),
            "missing_fields": missing,
            "ambiguous_fields": [],
            "follow_up": follow_up,
        }


def _path_or_pronoun(raw: str | None, facts: Mapping[str, Any]) -> str | None:
    if raw is None:
        return None
    value = raw.strip().strip("\"'")
    if value.lower() in _PRONOUNS:
        last = facts.get("last_path")
        return str(last) if last else None
    return value or None


def _list_dir(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    path = _path_or_pronoun(match.group("path"), facts)
    return RuleMatch("fs", "list_dir", {"path": path or "."}, 0.95 if path else 0.85)


def _find_pattern(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    pattern = match.group("pattern").strip().strip("\"'")
    path = _path_or_pronoun(match.group("path"), facts)
    return RuleMatch("fs", "find_pattern", {"pattern": pattern, "path": path or "."}, 0.93 if path else 0.86)


def _read_file(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch("fs", "read_file", {"path": _path_or_pronoun(match.group("path"), facts)}, 0.9)


def _file_info(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch("fs", "file_info", {"path": _path_or_pronoun(match.group("path"), facts)}, 0.9)


def _delete_file(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch("fs", "delete_file", {"path": _path_or_pronoun(match.group("path"), facts)}, 0.92)


def _write_file(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    content = match.group("content")
    return RuleMatch(
        "fs",
        "write_file",
        {"path": _path_or_pronoun(match.group("path"), facts), "content": content.strip("\"'") if content else None},
        0.9,
    )


def _move_path(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch(
        "fs",
        "move_path",
        {
            "source": _path_or_pronoun(match.group("source"), facts),
            "destination": _path_or_pronoun(match.group("destination"), facts),
        },
        0.9,
    )


def _list_courses(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch("canvas", "list_courses", {}, 0.95)


def _find_course(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    return RuleMatch("canvas", "find_course", {"name": match.group("name").strip().strip("\"'")}, 0.93)


def _list_assignments(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    course = (match.group("course") or "").strip().strip("\"'")
    if not course or course.lower() in _PRONOUNS:
        known = facts.get("course_id")
        return RuleMatch("canvas", "list_assignments", {"course_id": known}, 0.9)
    if course.isdigit():
        return RuleMatch("canvas", "list_assignments", {"course_id": int(course)}, 0.94)
    return RuleMatch("canvas", "find_course", {"name": course}, 0.9, follow_up="list its assignments")


def _get_assignment(match: re.Match[str], facts: Mapping[str, Any]) -> RuleMatch:
    course_id = match.group("course_id")
    return RuleMatch(
        "canvas",
        "get_assignment",
        {
            "assignment_id": int(match.group("assignment_id")),
            "course_id": int(course_id) if course_id else facts.get("course_id"),
        },
        0.92,
    )


_RULES: tuple[tuple[re.Pattern[str], Builder], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), builder)
    for pattern, builder in (
        (r"^(?:list|show)\s+(?:all\s+)?(?:my\s+)?courses$", _list_courses),
        (r"^(?:find|open|select|use)\s+(?:the\s+)?course\s+(?P<name>.+)$", _find_course),
        (
            r"^(?:list|show)\s+(?:all\s+)?(?:the\s+|its\s+|my\s+)?assignments"
            r"(?:\s+(?:for|in|of)\s+(?:the\s+)?(?:course\s+)?(?P<course>.+))?$",
            _list_assignments,
        ),
        (
            r"^(?:show|get|open)\s+assignment\s+(?P<assignment_id>\d+)"
            r"(?:\s+(?:for|in|of)\s+course\s+(?P<course_id>\d+))?$",
            _get_assignment,
        ),
        (r"^(?:list|show)\s+(?:all\s+)?(?:the\s+)?files(?:\s+(?:in|under|inside)\s+(?P<path>\S+))?$", _list_dir),
        (r"^ls(?:\s+(?P<path>\S+))?$", _list_dir),
        (
            r"^(?:find|search\s+for|grep(?:\s+for)?)\s+(?P<pattern>.+?)(?:\s+comments)?"
            r"(?:\s+(?:in|under)\s+(?P<path>\S+))?$",
            _find_pattern,
        ),
        (r"^(?:info|stat)(?:\s+(?:on|for|about))?\s+(?P<path>\S+)$", _file_info),
        (r"^(?:read|cat|open|show)(?:\s+(?:the\s+)?file)?\s+(?P<path>\S+)$", _read_file),
        (r"^(?:delete|remove|rm)(?:\s+(?:the\s+)?file)?(?:\s+(?P<path>\S+))?$", _delete_file),
        (
            r"^(?:create|write)(?:\s+(?:a\s+)?(?:new\s+)?file)?\s+(?P<path>\S+)"
            r"(?:\s+(?:with|containing)\s+(?P<content>.+))?$",
            _write_file,
        ),
        (r"^(?:move|rename|mv)\s+(?P<source>\S+)\s+(?:to|as)\s+(?P<destination>\S+)$", _move_path),
    )
)


def _split_compound(text: str) -> tuple[str, str | None]:
    parts = _COMPOUND_PATTERN.split(text, maxsplit=1)
    if len(parts) == 2 and parts[0].strip() and parts[1].strip():
        return parts[0].strip(), parts[1].strip()
    return text, None


def _parse_key_values(arg: str) -> tuple[dict[str, Any], list[str]]:
    try:
        parts = shlex.split(arg)
    except ValueError:
        parts = arg.split()
    params: dict[str, Any] = {}
    loose: list[str] = []
    for part in parts:
        if "=" in part:
            key, value = part.split("=", 1)
            if key:
                params[key] = value
                continue
        loose.append(part)
    return params, loose


def _parse_slash(raw: str) -> dict[str, Any] | None:
    match = _SLASH_PATTERN.match(raw)
    if not match:
        return None
    module = match.group(1).lower()
    action = (match.group(2) or "").lower()
    params, _ = _parse_key_values(match.group(3) or "")
    return {
        "module": module,
        "action": action,
        "parameters": params,
        "confidence": 1.0 if action else 0.5,
        "missing_fields": [],
        "ambiguous_fields": [] if action else ["action"],
        "follow_up": None,
    }


def match_rule(text: str, facts: Mapping[str, Any] | None = None) -> RuleMatch | None:
    cleaned = text.strip().rstrip(".!?").strip()
    for pattern, builder in _RULES:
        match = pattern.match(cleaned)
        if match:
            return builder(match, facts or {})
    return None


def _fold_answer(answer: str, clarification: Mapping[str, Any], facts: Mapping[str, Any]) -> dict[str, Any] | None:
    intent = clarification.get("intent")
    if not isinstance(intent, Mapping) or not intent.get("module"):
        return None
    fields = [str(name) for name in clarification.get("fields") or []]
    params = dict(intent.get("parameters") or {})
    rule = match_rule(answer, facts)
    if rule and rule.module == intent.get("module") and rule.action == intent.get("action"):
        params.update({key: value for key, value in rule.parameters.items() if value is not None})
    else:
        supplied, loose = _parse_key_values(answer)
        params.update(supplied)
        remaining = [name for name in fields if name not in supplied]
        if remaining and loose:
            params[remaining[0]] = " ".join(loose)
    missing = sorted(name for name in fields if params.get(name) in (None, ""))
    return {
        "module": intent.get("module"),
        "action": intent.get("action"),
        "parameters": {key: value for key, value in params.items() if value not in (None, "")},
        "confidence": 0.95 if not missing else 0.75,
        "missing_fields": missing,
        "ambiguous_fields": [],
        "follow_up": clarification.get("follow_up"),
    }


def parse_command(text: str, context: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Map ``text`` to ``{"candidates": [...]}`` or ``{"questions": [...]}``."""
    context = context or {}
    facts = context.get("facts") if isinstance(context.get("facts"), Mapping) else {}
    raw = text.strip()
    if not raw:
        return {"candidates": []}

    clarification = context.get("clarification")
    if isinstance(clarification, Mapping) and clarification.get("kind") == "complete_fields":
        folded = _fold_answer(raw, clarification, facts)
        if folded is not None:
            return {"candidates": [folded]}

    slash = _parse_slash(raw)
    if slash is not None:
        return {"candidates": [slash]}

    head, follow_up = _split_compound(raw)
    rule = match_rule(head, facts)
    if rule is None:
        return {"questions": [REPHRASE_QUESTION]}
    return {"candidates": [rule.to_candidate(follow_up)]}
