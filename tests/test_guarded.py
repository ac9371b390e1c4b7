from __future__ import annotations

import threading
import time

from marco_engine.mcp.guarded import CANCELLED, ERROR, OK, TIMEOUT, guarded_call


def test_guarded_call_returns_value() -> None:
    outcome = guarded_call(lambda: 42, timeout_s=1.0)
    assert outcome.status == OK
    assert outcome.ok
    assert outcome.value == 42


def test_guarded_call_captures_exception() -> None:
    def _boom():
        raise RuntimeError("boom")

    outcome = guarded_call(_boom, timeout_s=1.0)
    assert outcome.status == ERROR
    assert str(outcome.error) == "boom"


def test_guarded_call_times_out() -> None:
    release = threading.Event()
    outcome = guarded_call(lambda: release.wait(2.0), timeout_s=0.05)
    release.set()
    assert outcome.status == TIMEOUT
    assert outcome.elapsed_s >= 0.05


def test_guarded_call_observes_cancel() -> None:
    cancel = threading.Event()
    release = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    started = time.monotonic()
    outcome = guarded_call(lambda: release.wait(2.0), timeout_s=5.0, cancel=cancel)
    release.set()
    assert outcome.status == CANCELLED
    assert time.monotonic() - started < 1.0


def test_guarded_call_pre_cancelled_never_runs() -> None:
    cancel = threading.Event()
    cancel.set()
    calls = []
    outcome = guarded_call(lambda: calls.append(1), timeout_s=1.0, cancel=cancel)
    assert outcome.status == CANCELLED
    assert calls == []
