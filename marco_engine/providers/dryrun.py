"""Dry-run classifier backend (offline, rule-based)."""

from __future__ import annotations

import json
from typing import Any, Mapping

from ..chat.intent_parser import parse_command


class DryRunClassifierBackend:
    name = "dryrun"

    def classify(self, text: str, context: Mapping[str, Any]) -> str:
        return json.dumps(parse_command(text, context))
