"""Run control for agent loops: the stop token, the time budget, and worker tracking.

A ``LoopControl`` is created by the session for every loop it runs and is
handed to the graph through the run config. Nodes and the router read it;
the session stops it on cancel and waits on it before starting another loop.
"""

import threading
import time
from concurrent.futures import Future, wait
from typing import Optional

from langchain_core.runnables import RunnableConfig

from nas.config import get_config


class LoopControl:
    """Stop token shared by a session and one loop, plus the loop's worker threads.

    ``stop()`` ends the loop at its next step and makes an in-flight prediction
    cancel itself. Workers stay tracked until they actually return, so a
    stopped or timed-out loop still counts as running while it winds down.
    """

    def __init__(self):
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._workers: list[Future] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def submit(self, fn, *args) -> Future:
        """Run ``fn(*args)`` on a daemon thread and track it until it returns."""
        future: Future = Future()

        def _target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as exc:
                future.set_exception(exc)

        with self._lock:
            self._workers = [w for w in self._workers if not w.done()] + [future]
        threading.Thread(target=_target, name="nas-loop", daemon=True).start()
        return future

    @property
    def running(self) -> bool:
        with self._lock:
            return any(not w.done() for w in self._workers)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every tracked worker has returned. False on timeout."""
        with self._lock:
            workers = list(self._workers)
        _, pending = wait(workers, timeout=timeout)
        return not pending


def control_from(config: Optional[RunnableConfig]) -> Optional[LoopControl]:
    """Return the LoopControl carried in a graph run config, if any."""
    return ((config or {}).get("configurable") or {}).get("loop_control")


def stop_requested(config: Optional[RunnableConfig]) -> bool:
    control = control_from(config)
    return control is not None and control.stopped


def time_left(state) -> float:
    """Seconds of the loop's running-time budget still available."""
    elapsed = state.get("elapsed", 0.0)
    started = state.get("run_started_at")
    if started is not None:
        elapsed += time.monotonic() - started
    return get_config().get("loop_timeout_seconds", 300) - elapsed


def request_timeout(state=None) -> float:
    """Per-request timeout for model calls, never longer than the budget left."""
    timeout = float(get_config().get("request_timeout_seconds", 60))
    if state is not None:
        timeout = min(timeout, time_left(state))
    return max(timeout, 1.0)
