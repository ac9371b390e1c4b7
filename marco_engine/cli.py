"""Marco CLI entrypoints."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .chat.loop import ChatLoop, TerminalFrontEnd, render_capabilities, run_once
from .config import MarcoConfig, load_config
from .engine import MarcoEngine
from .utils import load_dotenv

EXIT_CODES = {"done": 0, "failed": 1, "uncertain": 1, "cancelled": 2}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="marco", description="Natural-language command agent")
    parser.add_argument("--config", help="Path to config.toml (default: ~/.marco/config.toml)")
    parser.add_argument("--backend", choices=["dryrun", "openai"], help="Intent classifier backend")
    parser.add_argument("--events", help="Append events to this JSONL file")
    parser.add_argument("--root", help="Workspace root for the fs module")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run a single command")
    run.add_argument("text", nargs="+", help="Command text, e.g. 'list files in src'")
    run.add_argument("--yes", action="store_true", help="Approve destructive actions without asking")

    sub.add_parser("chat", help="Interactive chat loop")

    caps = sub.add_parser("capabilities", help="List registered modules and actions")
    caps.add_argument("--json", action="store_true", dest="as_json")
    return parser


def _load(args: argparse.Namespace) -> MarcoConfig:
    config = load_config(Path(args.config).expanduser() if args.config else None)
    if args.backend:
        config.intentparser.backend = args.backend
    if args.root:
        config.fs_root = Path(args.root).expanduser()
    if args.events:
        config.events_path = Path(args.events).expanduser()
    return config


def _handle_run(engine: MarcoEngine, args: argparse.Namespace) -> int:
    frontend = TerminalFrontEnd(assume_yes=args.yes)
    snapshot = run_once(engine, " ".join(args.text), frontend)
    return EXIT_CODES.get(snapshot["status"], 1)


def _handle_chat(engine: MarcoEngine, args: argparse.Namespace) -> int:
    ChatLoop(engine).run()
    return 0


def _handle_capabilities(engine: MarcoEngine, args: argparse.Namespace) -> int:
    catalog = engine.capabilities()
    if args.as_json:
        print(json.dumps(catalog, indent=2))
    else:
        sys.stdout.write(render_capabilities(catalog))
    return 0


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    handlers = {"run": _handle_run, "chat": _handle_chat, "capabilities": _handle_capabilities}
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        raise SystemExit(1)
    try:
        engine = MarcoEngine(_load(args))
    except (ValueError, RuntimeError) as exc:
        print(f"marco: {exc}", file=sys.stderr)
        raise SystemExit(1)
    try:
        code = handler(engine, args)
    finally:
        engine.finish()
    raise SystemExit(code)


if __name__ == "__main__":
    main()
