"""Canvas LMS module (read-only REST client)."""

from __future__ import annotations

import json
import re
import socket
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..chat.command_registry import CapabilityDescriptor
from ..chat.intent_schema import ActionSchema, ParamSpec
from ..errors import ModuleExecutionError
from .base import ExecutionResult

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}
_MAX_PAGES = 20
_NEXT_LINK_RE = re.compile(r'<([^>]+)>\s*;[^,]*\brel="?next"?')

CANVAS_DESCRIPTOR = CapabilityDescriptor(
    name="canvas",
    description="Canvas learning platform: courses and assignments.",
    actions={
        "list_courses": ActionSchema(description="List the user's active courses."),
        "find_course": ActionSchema(
            params=(ParamSpec("name", required=True, description="Course name or code to search for"),),
            description="Find a course by name and remember its id.",
        ),
        "list_assignments": ActionSchema(
            params=(ParamSpec("course_id", "integer", required=True),),
            description="List assignments of a course.",
        ),
        "get_assignment": ActionSchema(
            params=(
                ParamSpec("course_id", "integer", required=True),
                ParamSpec("assignment_id", "integer", required=True),
            ),
            description="Show one assignment.",
        ),
    },
    idempotent_actions=frozenset({"list_courses", "find_course", "list_assignments", "get_assignment"}),
)


class CanvasModule:
    name = "canvas"

    def __init__(self, base_url: str | None, token: str | None, timeout_s: float = 15.0) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    def capabilities(self) -> CapabilityDescriptor:
        return CANVAS_DESCRIPTOR

    def execute(self, action: str, parameters: Mapping[str, Any]) -> ExecutionResult:
        if not self.base_url or not self.token:
            raise ModuleExecutionError(
                "Canvas is not configured. Set CANVAS_API_URL and CANVAS_API_TOKEN.",
                module=self.name,
                action=action,
            )
        if action == "list_courses":
            return self._list_courses()
        if action == "find_course":
            return self._find_course(str(parameters["name"]))
        if action == "list_assignments":
            return self._list_assignments(int(parameters["course_id"]))
        if action == "get_assignment":
            return self._get_assignment(int(parameters["course_id"]), int(parameters["assignment_id"]))
        raise ModuleExecutionError(f"Unsupported canvas action: {action}", module=self.name, action=action)

    def _list_courses(self) -> ExecutionResult:
        courses, truncated = self._get_pages(
            "/api/v1/courses", {"enrollment_state": "active", "per_page": 100}, "list_courses"
        )
        rows = [_course_row(course) for course in courses if isinstance(course, Mapping)]
        return ExecutionResult(
            output="\n".join(f"{row['id']}: {row['name']}" for row in rows) or "No active courses.",
            data={"courses": rows, "truncated": truncated},
        )

    def _find_course(self, name: str) -> ExecutionResult:
        courses, _ = self._get_pages(
            "/api/v1/courses", {"enrollment_state": "active", "per_page": 100}, "find_course"
        )
        needle = name.strip().lower()
        rows = [_course_row(course) for course in courses if isinstance(course, Mapping)]
        exact = [row for row in rows if needle in {row["name"].lower(), str(row.get("code") or "").lower()}]
        matches = exact or [
            row for row in rows if needle in row["name"].lower() or needle in str(row.get("code") or "").lower()
        ]
        if not matches:
            raise ModuleExecutionError(f"No course matches {name!r}", module=self.name, action="find_course")
        if len(matches) > 1:
            listing = "; ".join(f"{row['id']}: {row['name']}" for row in matches)
            raise ModuleExecutionError(
                f"{len(matches)} courses match {name!r}: {listing}",
                module=self.name,
                action="find_course",
                detail={"matches": matches},
            )
        course = matches[0]
        return ExecutionResult(
            output=f"Course {course['id']}: {course['name']}",
            data={"course": course},
            context_updates={"course_id": course["id"], "course_name": course["name"]},
        )

    def _list_assignments(self, course_id: int) -> ExecutionResult:
        items, truncated = self._get_pages(
            f"/api/v1/courses/{course_id}/assignments", {"order_by": "due_at", "per_page": 100}, "list_assignments"
        )
        rows = [
            {"id": item.get("id"), "name": item.get("name"), "due_at": item.get("due_at")}
            for item in items
            if isinstance(item, Mapping)
        ]
        lines = [f"{row['id']}: {row['name']} (due {row['due_at'] or 'n/a'})" for row in rows]
        return ExecutionResult(
            output="\n".join(lines) or "No assignments.",
            data={"course_id": course_id, "assignments": rows, "truncated": truncated},
            context_updates={"course_id": course_id},
        )

    def _get_assignment(self, course_id: int, assignment_id: int) -> ExecutionResult:
        item = self._get(f"/api/v1/courses/{course_id}/assignments/{assignment_id}", {}, "get_assignment")
        if not isinstance(item, Mapping):
            raise ModuleExecutionError("Unexpected Canvas response", module=self.name, action="get_assignment")
        points = item.get("points_possible")
        return ExecutionResult(
            output=f"{item.get('name')} (due {item.get('due_at') or 'n/a'}, {points} points)",
            data=dict(item),
            context_updates={"course_id": course_id, "assignment_id": assignment_id},
        )

    def _get(self, path: str, query: Mapping[str, Any], action: str) -> Any:
        payload, _ = self._request(self._url(path, query), action)
        return payload

    def _get_pages(self, path: str, query: Mapping[str, Any], action: str) -> tuple[list[Any], bool]:
        """Collect a paginated list by following ``Link: rel="next"`` headers.

        Returns the items and whether the page cap cut the listing short.
        """
        url: str | None = self._url(path, query)
        items: list[Any] = []
        pages = 0
        while url:
            if pages >= _MAX_PAGES:
                return items, True
            payload, link = self._request(url, action)
            pages += 1
            if not isinstance(payload, list):
                raise ModuleExecutionError("Unexpected Canvas response", module=self.name, action=action)
            items.extend(payload)
            url = _next_link(link)
        return items, False

    def _url(self, path: str, query: Mapping[str, Any]) -> str:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _request(self, url: str, action: str) -> tuple[Any, str | None]:
        req = Request(
            url,
            headers={"Authorization": f"Bearer {self.token}", "Accept": "application/json"},
            method="GET",
        )
        try:
            with urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
                headers = getattr(response, "headers", None)
                link = headers.get("Link") if headers is not None else None
        except HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
            raise ModuleExecutionError(
                f"Canvas API error ({exc.code}): {body[:200]}",
                transient=exc.code in _TRANSIENT_STATUS,
                module=self.name,
                action=action,
                detail={"status": exc.code},
            ) from exc
        except (URLError, socket.timeout, ConnectionError) as exc:
            raise ModuleExecutionError(
                f"Canvas request failed: {exc}", transient=True, module=self.name, action=action
            ) from exc
        try:
            return json.loads(raw), link
        except json.JSONDecodeError as exc:
            raise ModuleExecutionError(
                "Canvas returned invalid JSON", module=self.name, action=action
            ) from exc


def _course_row(course: Mapping[str, Any]) -> dict[str, Any]:
    return {"id": course.get("id"), "name": str(course.get("name") or ""), "code": course.get("course_code")}


def _next_link(header: str | None) -> str | None:
    if not header:
        return None
    match = _NEXT_LINK_RE.search(header)
    return match.group(1) if match else None
