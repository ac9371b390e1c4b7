"""CLI progress and status lines."""

from __future__ import annotations

import os
import shutil
import sys
import time
from typing import TextIO

_BOLD = "\x1b[1m"
_GREY = "\x1b[38;2;150;157;165m"
_RED = "\x1b[31m"
_YELLOW = "\x1b[33m"
_RESET = "\x1b[0m"

_STATUS_COLORS = {
    "done": _GREY,
    "failed": _RED,
    "uncertain": _YELLOW,
    "cancelled": _YELLOW,
}


def progress_once(label: str, stream: TextIO | None = None) -> float:
    """Print a one-shot progress line and return its monotonic start time."""
    out = stream or sys.stdout
    out.write(f"{_style(_BOLD, out)}• {label}{_style(_RESET, out)}\n")
    out.flush()
    return time.monotonic()


def status_line(status: str, started: float, stream: TextIO | None = None, width: int | None = None) -> str:
    out = stream or sys.stdout
    elapsed = _format_duration(int(max(0.0, time.monotonic() - started)))
    resolved_width = width if width is not None else _resolve_terminal_width(out, 100)
    line = _separator_line(f"{status} in {elapsed}", resolved_width)
    color = _STATUS_COLORS.get(status, _GREY)
    return f"{_style(color, out)}{line}{_style(_RESET, out)}"


def _style(code: str, stream: TextIO) -> str:
    return code if getattr(stream, "isatty", lambda: False)() else ""


def _format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _separator_line(label: str, width: int) -> str:
    content = f" {label} "
    if width <= len(content) + 2:
        return content.strip()
    left = (width - len(content)) // 2
    return f"{'─' * left}{content}{'─' * (width - len(content) - left)}"


def _resolve_terminal_width(stream: TextIO | None, fallback: int) -> int:
    if stream is not None and hasattr(stream, "fileno"):
        try:
            return os.get_terminal_size(stream.fileno()).columns
        except (OSError, ValueError):
            pass
    return shutil.get_terminal_size(fallback=(fallback, 20)).columns
