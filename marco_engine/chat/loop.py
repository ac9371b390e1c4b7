"""Interactive chat loop and the terminal front-end."""

from __future__ import annotations

import json
import sys
from typing import Any, Callable, Sequence, TextIO

from ..cli_progress import progress_once, status_line
from ..engine import MarcoEngine
from ..utils import is_affirmative

CHAT_HELP = "Commands: /help /capabilities /context /forget /exit. Anything else is run as a command."


class TerminalFrontEnd:
    """Answers clarification and confirmation prompts on stdin.

    ``assume_yes`` approves destructive actions without asking. EOF or
    Ctrl-C at a prompt cancels the command.
    """

    def __init__(
        self,
        *,
        assume_yes: bool = False,
        input_fn: Callable[[str], str] = input,
        stream: TextIO | None = None,
    ) -> None:
        self.assume_yes = assume_yes
        self.input_fn = input_fn
        self.stream = stream or sys.stdout

    def ask_user(self, question: str, options: Sequence[str]) -> str | None:
        self._print(question)
        for idx, option in enumerate(options, start=1):
            self._print(f"  {idx}) {option}")
        try:
            reply = self.input_fn("? ").strip()
        except (EOFError, KeyboardInterrupt):
            return None
        if options and reply.isdigit() and 1 <= int(reply) <= len(options):
            return options[int(reply) - 1]
        return reply

    def confirm_destructive(self, description: str) -> bool:
        if self.assume_yes:
            self._print(f"Confirmed (--yes): {description}")
            return True
        try:
            reply = self.input_fn(f"About to {description}. Proceed? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            return False
        return is_affirmative(reply)

    def _print(self, message: str) -> None:
        self.stream.write(f"{message}\n")
        self.stream.flush()


def format_result(snapshot: dict[str, Any]) -> str:
    status = snapshot["status"]
    if status == "done":
        return snapshot.get("output") or "(no output)"
    error = snapshot.get("error") or {}
    if status == "failed":
        return f"Error ({error.get('kind', 'error')}): {error.get('message', 'unknown failure')}"
    if status == "uncertain":
        detail = error.get("message") or snapshot.get("reason") or "interrupted"
        return f"Outcome unknown: a destructive action may or may not have completed ({detail})."
    return f"Cancelled ({snapshot.get('reason') or 'cancelled'})."


def run_once(engine: MarcoEngine, text: str, frontend: TerminalFrontEnd, session_context: dict[str, Any] | None = None) -> dict[str, Any]:
    started = progress_once(f"Running: {text}", frontend.stream)
    snapshot = engine.run(text, frontend, session_context)
    frontend.stream.write(f"{format_result(snapshot)}\n")
    frontend.stream.write(f"{status_line(snapshot['status'], started, frontend.stream)}\n")
    frontend.stream.flush()
    return snapshot


class ChatLoop:
    def __init__(self, engine: MarcoEngine, frontend: TerminalFrontEnd | None = None) -> None:
        self.engine = engine
        self.frontend = frontend or TerminalFrontEnd()
        self.session_context: dict[str, Any] = {}
        self.last_status: str | None = None

    def run(self) -> None:
        out = self.frontend.stream
        out.write("Marco chat started. Type /help for commands.\n")
        while True:
            try:
                line = self.frontend.input_fn("> ")
            except (EOFError, KeyboardInterrupt):
                break
            text = line.strip()
            if not text:
                continue
            if text.startswith("/") and self._handle_meta(text):
                if text in {"/exit", "/quit"}:
                    break
                continue
            snapshot = run_once(self.engine, text, self.frontend, self.session_context)
            self.last_status = snapshot["status"]
            # Facts learned by one command (course id, last path) carry into the next.
            self.session_context.update(snapshot.get("cumulative_context") or {})
        out.write("Bye.\n")
        out.flush()

    def _handle_meta(self, text: str) -> bool:
        """Return True when ``text`` was a chat command rather than a module command."""
        out = self.frontend.stream
        command = text.split(maxsplit=1)[0].lower()
        if command == "/help":
            out.write(f"{CHAT_HELP}\n")
        elif command in {"/exit", "/quit"}:
            pass
        elif command == "/capabilities":
            out.write(render_capabilities(self.engine.capabilities()))
        elif command == "/context":
            out.write(f"{json.dumps(self.session_context, indent=2, sort_keys=True)}\n")
        elif command == "/forget":
            self.session_context.clear()
            out.write("Session context cleared.\n")
        else:
            return False
        out.flush()
        return True


def render_capabilities(catalog: list[dict[str, Any]]) -> str:
    lines: list[str] = []
    for entry in catalog:
        lines.append(f"{entry['module']}: {entry['description']}")
        for action, info in entry["actions"].items():
            params = ", ".join(
                f"{name}{'' if spec['required'] else '?'}" for name, spec in info["params"].items()
            )
            flag = " [destructive]" if info["destructive"] else ""
            lines.append(f"  {action}({params}){flag} - {info['description']}")
    return "\n".join(lines) + "\n"
