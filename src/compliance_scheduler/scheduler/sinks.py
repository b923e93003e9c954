"""
scheduler/sinks.py — Output Streams

Three independent, append-only streams leave the engine:

    results   RunResult      one per completed, non-cancelled run
    events    RunEvent       one per successful run
    errors    ScheduleError  one per task that could not be scheduled

Publishing never blocks: QueueOutputSink uses unbounded queues and the
consumer drains at its own pace.

PendingEmission is the counted-completion object a run's post-processing
goes through: it is created with the event to emit and the number of
steps still outstanding, and emits exactly once when the last step
reports in.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional, Protocol, Union

from compliance_scheduler.scheduler.types import RunEvent, RunResult, ScheduleError

Output = Union[RunResult, RunEvent, ScheduleError]


class OutputSink(Protocol):
    def publish_result(self, result: RunResult) -> None: ...

    def publish_event(self, event: RunEvent) -> None: ...

    def publish_error(self, error: ScheduleError) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# QueueOutputSink
# ─────────────────────────────────────────────────────────────────────────────

class QueueOutputSink:
    """
    In-process sink backed by three unbounded asyncio queues.

    Usage::

        sink = QueueOutputSink()
        ...
        out = await sink.next_output(timeout=5)     # whichever arrives first
        results = sink.drain_results()              # everything queued so far
    """

    def __init__(self) -> None:
        self.results: asyncio.Queue[RunResult] = asyncio.Queue()
        self.events: asyncio.Queue[RunEvent] = asyncio.Queue()
        self.errors: asyncio.Queue[ScheduleError] = asyncio.Queue()
        self._changed = asyncio.Event()

    # ── OutputSink ────────────────────────────────────────────────────────────

    def publish_result(self, result: RunResult) -> None:
        self.results.put_nowait(result)
        self._changed.set()

    def publish_event(self, event: RunEvent) -> None:
        self.events.put_nowait(event)
        self._changed.set()

    def publish_error(self, error: ScheduleError) -> None:
        self.errors.put_nowait(error)
        self._changed.set()

    # ── Consumer side ─────────────────────────────────────────────────────────

    def drain_results(self) -> list[RunResult]:
        return _drain(self.results)

    def drain_events(self) -> list[RunEvent]:
        return _drain(self.events)

    def drain_errors(self) -> list[ScheduleError]:
        return _drain(self.errors)

    def pending(self) -> int:
        return self.results.qsize() + self.events.qsize() + self.errors.qsize()

    async def next_output(self, timeout: Optional[float] = None) -> Output:
        """
        Return the next queued output of any kind.

        Errors are preferred over results over events when several are
        already waiting. Raises asyncio.TimeoutError after `timeout`.
        """
        async def _next() -> Output:
            while True:
                for queue in (self.errors, self.results, self.events):
                    if not queue.empty():
                        return queue.get_nowait()
                self._changed.clear()
                await self._changed.wait()

        return await asyncio.wait_for(_next(), timeout=timeout)


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# ─────────────────────────────────────────────────────────────────────────────
# PendingEmission
# ─────────────────────────────────────────────────────────────────────────────

class PendingEmission:
    """
    Emit a run's event once all of its post-processing steps completed.

    step_done() may be called from the loop thread or from an executor
    thread; the counter is lock-protected and `emit` runs on the loop
    exactly once, when the count reaches zero. wait() resolves after that.
    After cancel(), the count still drains but `emit` is never called.
    """

    def __init__(self, steps: int, emit: Optional[Callable[[], None]],
                 loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if steps < 0:
            raise ValueError("steps must be >= 0")
        self._remaining = steps
        self._emit = emit
        self._cancelled = False
        self._lock = threading.Lock()
        self._loop = loop or asyncio.get_running_loop()
        self._done = asyncio.Event()
        if steps == 0:
            self._complete()

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True

    def step_done(self) -> None:
        with self._lock:
            if self._remaining == 0:
                raise RuntimeError("step_done() called more times than there are steps")
            self._remaining -= 1
            finished = self._remaining == 0
        if not finished:
            return
        if _on_loop_thread(self._loop):
            self._complete()
        else:
            self._loop.call_soon_threadsafe(self._complete)

    async def wait(self) -> None:
        await self._done.wait()

    def _complete(self) -> None:
        try:
            if self._emit is not None and not self.cancelled:
                self._emit()
        finally:
            self._done.set()


def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
