"""Local file-system module, confined to a workspace root."""

from __future__ import annotations

import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from ..chat.command_registry import CapabilityDescriptor
from ..chat.intent_schema import ActionSchema, ParamSpec
from ..errors import ModuleExecutionError
from .base import ExecutionResult

_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv", ".mypy_cache", ".pytest_cache"}

FS_DESCRIPTOR = CapabilityDescriptor(
    name="fs",
    description="Local file system, confined to the workspace root.",
    actions={
        "list_dir": ActionSchema(
            params=(ParamSpec("path", default=".", description="Directory to list"),),
            description="List the entries of a directory.",
        ),
        "find_pattern": ActionSchema(
            params=(
                ParamSpec("pattern", required=True, description="Regular expression to search for"),
                ParamSpec("path", default=".", description="File or directory to search"),
                ParamSpec("max_results", "integer", default=100),
            ),
            description="Search text files for lines matching a pattern.",
        ),
        "read_file": ActionSchema(
            params=(
                ParamSpec("path", required=True),
                ParamSpec("max_bytes", "integer", default=65536),
            ),
            description="Read a text file.",
        ),
        "file_info": ActionSchema(
            params=(ParamSpec("path", required=True),),
            description="Show size, type and modification time of a path.",
        ),
        "write_file": ActionSchema(
            params=(
                ParamSpec("path", required=True),
                ParamSpec("content", required=True),
                ParamSpec("overwrite", "boolean", default=False),
            ),
            description="Create a text file (refuses to replace an existing file unless overwrite is set).",
        ),
        "delete_file": ActionSchema(
            params=(ParamSpec("path", required=True),),
            description="Delete a file.",
        ),
        "move_path": ActionSchema(
            params=(ParamSpec("source", required=True), ParamSpec("destination", required=True)),
            description="Move or rename a file or directory.",
        ),
    },
    destructive_actions=frozenset({"delete_file", "move_path"}),
    idempotent_actions=frozenset({"list_dir", "find_pattern", "read_file", "file_info"}),
)


class FileSystemModule:
    name = "fs"

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root or Path.cwd()).resolve()

    def capabilities(self) -> CapabilityDescriptor:
        return FS_DESCRIPTOR

    def execute(self, action: str, parameters: Mapping[str, Any]) -> ExecutionResult:
        handler = getattr(self, f"_{action}", None)
        if action not in FS_DESCRIPTOR.actions or handler is None:
            raise ModuleExecutionError(f"Unsupported fs action: {action}", module=self.name, action=action)
        known = {spec.name for spec in FS_DESCRIPTOR.actions[action].params}
        kwargs = {key: value for key, value in parameters.items() if key in known}
        try:
            return handler(**kwargs)
        except ModuleExecutionError:
            raise
        except OSError as exc:
            raise ModuleExecutionError(
                f"{action} failed: {exc.strerror or exc}",
                module=self.name,
                action=action,
                detail={"path": exc.filename} if exc.filename else None,
            ) from exc

    def _resolve(self, raw: str, action: str) -> Path:
        candidate = Path(os.path.expanduser(str(raw)))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise ModuleExecutionError(
                f"Path {raw!r} is outside the workspace root {self.root}",
                module=self.name,
                action=action,
            )
        return resolved

    def _relative(self, path: Path) -> str:
        if path == self.root:
            return "."
        return str(path.relative_to(self.root))

    def _list_dir(self, path: str = ".") -> ExecutionResult:
        target = self._resolve(path, "list_dir")
        if not target.is_dir():
            raise ModuleExecutionError(f"Not a directory: {path}", module=self.name, action="list_dir")
        entries = []
        for entry in sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
            entries.append({"name": entry.name, "type": "dir" if entry.is_dir() else "file"})
        lines = [f"{item['name']}/" if item["type"] == "dir" else item["name"] for item in entries]
        return ExecutionResult(
            output="\n".join(lines) if lines else "(empty directory)",
            data={"path": self._relative(target), "entries": entries},
            context_updates={"last_path": self._relative(target)},
        )

    def _find_pattern(self, pattern: str, path: str = ".", max_results: int = 100) -> ExecutionResult:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ModuleExecutionError(
                f"Invalid pattern {pattern!r}: {exc}", module=self.name, action="find_pattern"
            ) from exc
        target = self._resolve(path, "find_pattern")
        matches: list[dict[str, Any]] = []
        truncated = False
        for file_path in self._iter_files(target):
            try:
                with file_path.open("r", encoding="utf-8") as handle:
                    for lineno, line in enumerate(handle, start=1):
                        if regex.search(line):
                            if len(matches) >= max_results:
                                truncated = True
                                break
                            matches.append(
                                {"path": self._relative(file_path), "line": lineno, "text": line.rstrip("\n")}
                            )
            except (UnicodeDecodeError, PermissionError):
                continue
            if truncated:
                break
        output = "\n".join(f"{m['path']}:{m['line']}: {m['text'].strip()}" for m in matches)
        if truncated:
            output += f"\n... (stopped after {max_results} matches)"
        return ExecutionResult(
            output=output or f"No matches for {pattern!r}",
            data={"pattern": pattern, "matches": matches, "truncated": truncated},
            context_updates={"last_path": self._relative(target)},
        )

    def _iter_files(self, target: Path):
        if target.is_file():
            yield target
            return
        for dirpath, dirnames, filenames in os.walk(target):
            dirnames[:] = sorted(name for name in dirnames if name not in _SKIP_DIRS)
            for filename in sorted(filenames):
                yield Path(dirpath) / filename

    def _read_file(self, path: str, max_bytes: int = 65536) -> ExecutionResult:
        target = self._resolve(path, "read_file")
        with target.open("rb") as handle:
            blob = handle.read(max(int(max_bytes), 0) + 1)
        truncated = len(blob) > max_bytes
        text = blob[:max_bytes].decode("utf-8", errors="replace")
        return ExecutionResult(
            output=text + ("\n... (truncated)" if truncated else ""),
            data={"path": self._relative(target), "truncated": truncated, "bytes": min(len(blob), max_bytes)},
            context_updates={"last_path": self._relative(target)},
        )

    def _file_info(self, path: str) -> ExecutionResult:
        target = self._resolve(path, "file_info")
        stat = target.stat()
        kind = "dir" if target.is_dir() else "file"
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
        info = {"path": self._relative(target), "type": kind, "size": stat.st_size, "modified": modified}
        return ExecutionResult(
            output=f"{info['path']}: {kind}, {stat.st_size} bytes, modified {modified}",
            data=info,
            context_updates={"last_path": info["path"]},
        )

    def _write_file(self, path: str, content: str, overwrite: bool = False) -> ExecutionResult:
        target = self._resolve(path, "write_file")
        if target.exists() and not overwrite:
            raise ModuleExecutionError(
                f"{path} already exists; set overwrite to replace it", module=self.name, action="write_file"
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return ExecutionResult(
            output=f"Wrote {len(content)} characters to {self._relative(target)}",
            data={"path": self._relative(target), "chars": len(content)},
            context_updates={"last_path": self._relative(target)},
        )

    def _delete_file(self, path: str) -> ExecutionResult:
        target = self._resolve(path, "delete_file")
        if target.is_dir():
            raise ModuleExecutionError(f"{path} is a directory", module=self.name, action="delete_file")
        target.unlink()
        return ExecutionResult(
            output=f"Deleted {self._relative(target)}",
            data={"path": self._relative(target)},
        )

    def _move_path(self, source: str, destination: str) -> ExecutionResult:
        src = self._resolve(source, "move_path")
        dst = self._resolve(destination, "move_path")
        if not src.exists():
            raise ModuleExecutionError(f"{source} does not exist", module=self.name, action="move_path")
        if dst.exists() and not dst.is_dir():
            raise ModuleExecutionError(f"{destination} already exists", module=self.name, action="move_path")
        moved = Path(shutil.move(str(src), str(dst)))
        return ExecutionResult(
            output=f"Moved {self._relative(src)} -> {self._relative(moved.resolve())}",
            data={"source": self._relative(src), "destination": self._relative(moved.resolve())},
            context_updates={"last_path": self._relative(moved.resolve())},
        )
