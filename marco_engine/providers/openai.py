"""OpenAI chat-completions classifier backend."""

from __future__ import annotations

import json
import os
import socket
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .base import BackendError, TransientBackendError

SYSTEM_PROMPT = "You parse user commands into JSON intents. Output *only* JSON."

PROMPT_TEMPLATE = """
You are an intent parser. You must output *only* JSON matching this schema:

{{
  "candidates": [
    {{
      "module": "<module name>",
      "action": "<action name>",
      "parameters": {{ ... }},
      "confidence": <number between 0 and 1>,
      "missing_fields": ["<required parameter you could not determine>"],
      "ambiguous_fields": ["<parameter you had to guess>"],
      "follow_up": "<remaining part of a compound command, or null>"
    }}
  ]
}}

List at most three candidates, best first. If the command cannot be mapped to any
action, output {{"questions": ["<one short question for the user>"]}} instead.

Available modules and actions:
{catalog}

Examples:
User: "List all files in src"
{{"candidates":[{{"module":"fs","action":"list_dir","parameters":{{"path":"src"}},"confidence":0.97,"missing_fields":[],"ambiguous_fields":[]}}]}}

User: "Find TODO comments in pkg/"
{{"candidates":[{{"module":"fs","action":"find_pattern","parameters":{{"pattern":"TODO","path":"pkg"}},"confidence":0.93,"missing_fields":[],"ambiguous_fields":[]}}]}}

User: "delete it"
{{"candidates":[{{"module":"fs","action":"delete_file","parameters":{{}},"confidence":0.7,"missing_fields":["path"],"ambiguous_fields":[]}}]}}
{context_block}
Now parse this command into JSON:
---
{text}
---
"""

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class OpenAIClassifierBackend:
    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        api_base: str | None = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_base = (api_base or "https://api.openai.com/v1").rstrip("/")
        self.timeout_s = timeout_s

    def classify(self, text: str, context: Mapping[str, Any]) -> str:
        api_key = self.api_key or _get_api_key()
        if not api_key:
            raise BackendError("OpenAI API key missing. Set OPENAI_API_KEY or intentparser.llm_api_key.")
        payload = build_chat_payload(text, context, model=self.model)
        endpoint = f"{self.api_base}/chat/completions"
        _, response = _post_json(endpoint, payload, api_key, self.timeout_s)
        content = _extract_message_content(response)
        if content is None:
            # Let the adapter treat it as unparseable output rather than a transport failure.
            return json.dumps(response)
        return content


def build_chat_payload(text: str, context: Mapping[str, Any], *, model: str) -> dict[str, Any]:
    catalog = context.get("catalog") or []
    prompt = PROMPT_TEMPLATE.format(
        catalog=json.dumps(catalog, indent=1, sort_keys=True),
        context_block=_context_block(context),
        text=text,
    )
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "temperature": 0,
        "response_format": {"type": "json_object"},
    }


def _context_block(context: Mapping[str, Any]) -> str:
    lines: list[str] = []
    facts = context.get("facts")
    if isinstance(facts, Mapping) and facts:
        lines.append("Known facts from earlier steps (reuse them for missing parameters):")
        lines.append(json.dumps(dict(facts), sort_keys=True, default=str))
    clarification = context.get("clarification")
    if isinstance(clarification, Mapping):
        lines.append("The user is answering a clarification question about a partially parsed command.")
        lines.append(f"Partial intent: {json.dumps(clarification.get('intent'), sort_keys=True, default=str)}")
        lines.append(f"Question: {clarification.get('question')}")
        lines.append(f"Fields asked about: {', '.join(clarification.get('fields') or []) or '(none)'}")
        lines.append("Merge the answer into the partial intent and keep everything else unchanged.")
    if not lines:
        return ""
    return "\n" + "\n".join(lines) + "\n"


def _get_api_key() -> str | None:
    return os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY_BACKUP")


def _extract_message_content(response: Any) -> str | None:
    if not isinstance(response, Mapping):
        return None
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, Mapping):
        return None
    message = first.get("message")
    if not isinstance(message, Mapping):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def _post_json(url: str, payload: Mapping[str, Any], api_key: str, timeout_s: float) -> tuple[int, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = Request(
        url,
        data=body,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout_s) as response:
            status_code = int(getattr(response, "status", 200))
            raw = response.read().decode("utf-8")
    except HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
        if exc.code in _TRANSIENT_STATUS:
            raise TransientBackendError(f"OpenAI API error ({exc.code}): {raw}") from exc
        raise BackendError(f"OpenAI API error ({exc.code}): {raw}") from exc
    except (URLError, socket.timeout, ConnectionError) as exc:
        raise TransientBackendError(f"OpenAI API request failed: {exc}") from exc

    try:
        payload_json: Any = json.loads(raw)
    except json.JSONDecodeError:
        payload_json = {"raw": raw}
    return status_code, payload_json
