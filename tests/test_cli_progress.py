from __future__ import annotations

import time

from marco_engine.cli_progress import _format_duration, _separator_line, progress_once, status_line


class FakeStream:
    def __init__(self, is_tty: bool) -> None:
        self._isatty = is_tty
        self.buffer: list[str] = []

    def isatty(self) -> bool:
        return self._isatty

    def write(self, data: str) -> None:
        self.buffer.append(data)

    def flush(self) -> None:
        return None

    @property
    def text(self) -> str:
        return "".join(self.buffer)


def test_progress_once_plain_stream() -> None:
    stream = FakeStream(is_tty=False)
    started = progress_once("Running: ls", stream)
    assert stream.text == "• Running: ls\n"
    assert started <= time.monotonic()


def test_progress_once_tty_is_bold() -> None:
    stream = FakeStream(is_tty=True)
    progress_once("Running: ls", stream)
    assert stream.text.startswith("\x1b[1m")


def test_status_line_plain() -> None:
    line = status_line("done", time.monotonic(), FakeStream(is_tty=False), width=30)
    assert "done in 0s" in line
    assert "\x1b[" not in line
    assert len(line) == 30


def test_format_duration_and_separator() -> None:
    assert _format_duration(5) == "5s"
    assert _format_duration(125) == "2m 05s"
    assert _separator_line("x", 3) == "x"
    assert _separator_line("ok", 10) == "─── ok ───"
