"""Run a blocking call on a worker thread under a deadline and a cancel signal."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

OK = "ok"
ERROR = "error"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallOutcome:
    status: str
    value: Any = None
    error: Exception | None = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == OK


def guarded_call(
    fn: Callable[[], Any],
    *,
    timeout_s: float,
    cancel: threading.Event | None = None,
    poll_s: float = 0.05,
    name: str = "marco-call",
) -> CallOutcome:
    """Call ``fn`` and wait at most ``timeout_s`` for it.

    An abandoned call keeps running on its daemon thread; its eventual result is
    discarded. A result that is already available wins over a concurrent
    timeout or cancellation.
    """
    results: queue.Queue[tuple[str, Any]] = queue.Queue(maxsize=1)

    def _target() -> None:
        try:
            results.put((OK, fn()))
        except Exception as exc:
            results.put((ERROR, exc))

    start = time.monotonic()
    deadline = start + max(0.0, float(timeout_s))
    if cancel is not None and cancel.is_set():
        return CallOutcome(CANCELLED)
    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()
    while True:
        remaining = deadline - time.monotonic()
        try:
            status, payload = results.get(timeout=max(0.0, min(poll_s, remaining)))
        except queue.Empty:
            elapsed = time.monotonic() - start
            if cancel is not None and cancel.is_set():
                return CallOutcome(CANCELLED, elapsed_s=elapsed)
            if time.monotonic() >= deadline:
                return CallOutcome(TIMEOUT, elapsed_s=elapsed)
            continue
        elapsed = time.monotonic() - start
        if status == OK:
            return CallOutcome(OK, value=payload, elapsed_s=elapsed)
        return CallOutcome(ERROR, error=payload, elapsed_s=elapsed)
