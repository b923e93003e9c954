"""
scheduler/calendar.py — TaskCalendar (scheduler core)

Owns the active generation of scheduled tasks and turns projected fire
instants into runs.

Design
------
* Pure asyncio. One calendar-wide asyncio.Lock serialises activate(),
  deactivate() and dispatch_once(). Fire handling is a synchronous critical
  section on the loop (read `running`, set it, spawn the run, no await in
  between), so timer fires, out-of-band triggers and generation changes never
  race on a task's flag.
* Every IntervalSpec of a task gets its own timer loop (an asyncio.Task) that
  walks the projector's sequence and sleeps until the next instant. A task
  also fires once immediately when it is activated ("run now"); projected
  instants at or before the activation instant are covered by that run and
  are not armed again.
* Single-flight: a fire that finds its task still running is dropped, not
  queued. Two intervals projecting the same instant fire once.
* Generations: activate() allocates a new generation and a fresh CancelToken.
  Replacing or stopping a generation signals its token (the runner kills the
  child process group), cancels its timers and waits up to
  kill_grace_seconds for in-flight runs to unwind. Runs still not finished
  by then are cancelled as asyncio tasks. When activate()/deactivate()
  returns, the previous generation can no longer publish anything.
* A timer that wakes up more than `missed_fire_tolerance` seconds late
  (loop stall, suspended host) skips the instants it missed instead of
  replaying them in a burst.

Usage::

    calendar = TaskCalendar(dispatcher, sink)
    generation = await calendar.activate(tasks, StartOptions(machine_id="m1"))
    await calendar.dispatch_once([1, 2])
    await calendar.deactivate()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from compliance_scheduler.exceptions import (
    CheckModuleNotFoundError,
    DuplicateTaskError,
    SchedulingError,
    UnknownTaskError,
)
from compliance_scheduler.modules.types import CancelToken
from compliance_scheduler.observability.logger import get_logger
from compliance_scheduler.schedule import (
    IntervalSpec,
    ScheduleSpec,
    format_instant,
    iter_interval,
    iter_schedule,
    parse_schedule,
)
from compliance_scheduler.scheduler.dispatcher import ExecutionDispatcher
from compliance_scheduler.scheduler.sinks import OutputSink
from compliance_scheduler.scheduler.types import (
    CalendarStats,
    ScheduleError,
    StartOptions,
    TaskDefinition,
    TaskState,
)

log = get_logger(__name__)

DEFAULT_KILL_GRACE_S = 2.0
DEFAULT_MISSED_FIRE_TOLERANCE_S = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# ScheduledTask — runtime record, owned by the calendar
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ScheduledTask:
    definition: TaskDefinition
    spec: ScheduleSpec
    generation: int
    activated_at: datetime
    state: TaskState = TaskState.SCHEDULED
    running: bool = False
    in_flight: Optional[asyncio.Task] = None
    timers: list[asyncio.Task] = field(default_factory=list)
    last_instant: Optional[datetime] = None
    runs: int = 0
    skipped: int = 0
    last_success: Optional[bool] = None

    @property
    def id(self) -> int:
        return self.definition.id

    @property
    def name(self) -> str:
        return self.definition.name

    def next_fire(self, now: datetime) -> Optional[datetime]:
        """First projected instant after now (and after activation)."""
        after = max(now, self.activated_at)
        for instant in iter_schedule(self.spec, self.activated_at, after):
            if instant > after:
                return instant
        return None


# ─────────────────────────────────────────────────────────────────────────────
# TaskCalendar
# ─────────────────────────────────────────────────────────────────────────────

class TaskCalendar:
    """
    Introspection::

        calendar.generation       # current generation number
        calendar.stats            # CalendarStats counters
        calendar.list_tasks()     # list[dict] for status display
    """

    def __init__(
        self,
        dispatcher: ExecutionDispatcher,
        sink: OutputSink,
        module_exists: Optional[Callable[[str], bool]] = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_S,
        missed_fire_tolerance: float = DEFAULT_MISSED_FIRE_TOLERANCE_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._dispatcher = dispatcher
        self._sink = sink
        self._module_exists = module_exists or dispatcher.runner.exists
        self._kill_grace = kill_grace_seconds
        self._missed_tolerance = missed_fire_tolerance
        self._clock = clock

        self._lock = asyncio.Lock()
        self._generation = 0
        self._token: Optional[CancelToken] = None
        self._options = StartOptions()
        self._tasks: dict[int, ScheduledTask] = {}
        self._stats = CalendarStats()

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> bool:
        return self._token is not None and not self._token.cancelled

    @property
    def stats(self) -> CalendarStats:
        self._stats.generation = self._generation
        self._stats.active_tasks = len(self._tasks)
        return self._stats

    def get_task(self, task_id: int) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[dict[str, Any]]:
        now = self._clock()
        result = []
        for st in self._tasks.values():
            next_run = st.next_fire(now)
            result.append({
                "name": st.name,
                "id": st.id,
                "module": st.definition.module,
                "schedule": st.definition.schedule,
                "generation": st.generation,
                "state": st.state.value,
                "running": st.running,
                "runs": st.runs,
                "skipped": st.skipped,
                "last_success": st.last_success,
                "next_run_utc": format_instant(next_run) if next_run else None,
            })
        return result

    # ── Generation control ────────────────────────────────────────────────────

    async def activate(self, definitions: Iterable[TaskDefinition],
                       options: Optional[StartOptions] = None) -> int:
        """
        Replace the active generation with `definitions`.

        Tasks that fail validation get one ScheduleError each and are left
        out; the rest are activated. Returns the new generation number.
        """
        definitions = list(definitions)
        async with self._lock:
            await self._cancel_generation(reason="superseded")

            self._generation += 1
            generation = self._generation
            self._token = CancelToken()
            self._options = options or StartOptions()
            now = self._clock()

            tasks: dict[int, ScheduledTask] = {}
            for definition in definitions:
                if not definition.enabled:
                    log.info("calendar.task_disabled", task=definition.name, task_id=definition.id)
                    continue
                try:
                    spec = self._validate(definition, tasks)
                except SchedulingError as e:
                    self._report_schedule_error(definition, e, generation)
                    continue
                tasks[definition.id] = ScheduledTask(
                    definition=definition,
                    spec=spec,
                    generation=generation,
                    activated_at=now,
                )
            self._tasks = tasks

            for st in tasks.values():
                self._fire(st, reason="run_now")
                for idx, interval in enumerate(st.spec.intervals):
                    st.timers.append(asyncio.create_task(
                        self._interval_loop(st, interval),
                        name=f"calendar:timer:{generation}:{st.id}:{idx}",
                    ))

            log.info(
                "calendar.activate",
                generation=generation,
                submitted=len(definitions),
                active=len(tasks),
                tasks=[st.name for st in tasks.values()],
            )
            return generation

    async def deactivate(self) -> None:
        """Cancel the active generation. Idempotent."""
        async with self._lock:
            await self._cancel_generation(reason="stopped")
            self._token = None

    async def dispatch_once(self, task_ids: Iterable[int]) -> list[int]:
        """
        Fire the given active tasks now, outside their schedule.

        Raises UnknownTaskError, before firing anything, if any id is not
        active. Returns the ids that were dispatched (a task that is still
        running is skipped, as for any fire).
        """
        ids = list(dict.fromkeys(task_ids))
        async with self._lock:
            unknown = [i for i in ids if i not in self._tasks]
            if unknown:
                raise UnknownTaskError(unknown)
            dispatched = [i for i in ids if self._fire(self._tasks[i], reason="out_of_band")]
        log.info("calendar.dispatch_once", requested=ids, dispatched=dispatched)
        return dispatched

    # ── Validation ────────────────────────────────────────────────────────────

    def _validate(self, definition: TaskDefinition,
                  accepted: dict[int, ScheduledTask]) -> ScheduleSpec:
        if definition.id in accepted:
            raise DuplicateTaskError(definition.id)
        spec = parse_schedule(definition.schedule)
        if not self._module_exists(definition.module):
            raise CheckModuleNotFoundError(definition.module)
        return spec

    def _report_schedule_error(self, definition: TaskDefinition,
                               error: SchedulingError, generation: int) -> None:
        message = f"Could not schedule task {definition.name}: {error}"
        self._stats.schedule_errors += 1
        log.warning(
            "calendar.schedule_error",
            task=definition.name,
            task_id=definition.id,
            error_type=type(error).__name__,
            error=message,
        )
        self._sink.publish_error(
            ScheduleError(task_name=definition.name, message=message, generation=generation)
        )

    # ── Timers ────────────────────────────────────────────────────────────────

    async def _interval_loop(self, st: ScheduledTask, interval: IntervalSpec) -> None:
        """Sleep until each projected instant of one interval, then fire."""
        try:
            for instant in iter_interval(interval, st.activated_at, start=st.activated_at):
                if instant <= st.activated_at:
                    continue

                delay = (instant - self._clock()).total_seconds()
                if delay < -self._missed_tolerance:
                    self._stats.missed_fires += 1
                    log.warning(
                        "calendar.fire_missed",
                        task=st.name,
                        instant=format_instant(instant),
                        late_s=round(-delay, 3),
                    )
                    continue
                if delay > 0:
                    await asyncio.sleep(delay)

                if st.state is TaskState.CANCELED:
                    return
                self._fire(st, reason="interval", instant=instant)

            log.debug("calendar.interval_exhausted", task=st.name, interval=interval.raw)
        except asyncio.CancelledError:
            log.debug("calendar.timer_cancelled", task=st.name, interval=interval.raw)
            raise

    # ── Fire handling ─────────────────────────────────────────────────────────

    def _fire(self, st: ScheduledTask, reason: str,
              instant: Optional[datetime] = None) -> bool:
        """
        Single-flight gate. Must not await: the check and the set of
        `running` happen in one step of the loop.
        """
        token = self._token
        if st.state is TaskState.CANCELED or st.generation != self._generation or token is None:
            return False

        if instant is not None:
            if st.last_instant == instant:
                log.debug("calendar.fire_duplicate", task=st.name, instant=format_instant(instant))
                return False
            st.last_instant = instant

        self._stats.total_fires += 1
        self._stats.last_fire_task = st.name
        self._stats.last_fire_at = self._clock().isoformat()

        if st.running:
            st.skipped += 1
            self._stats.skipped_fires += 1
            log.info("calendar.fire_skipped.still_running", task=st.name, reason=reason)
            return False

        st.running = True
        st.state = TaskState.RUNNING
        self._stats.dispatched_runs += 1
        st.in_flight = asyncio.create_task(
            self._run(st, token),
            name=f"calendar:run:{st.generation}:{st.id}",
        )
        log.debug("calendar.fire", task=st.name, reason=reason, generation=st.generation)
        return True

    async def _run(self, st: ScheduledTask, token: CancelToken) -> None:
        """One dispatched run. Never raises except for cancellation."""
        try:
            result = await self._dispatcher.run(st.definition, token, self._options, st.generation)
            if result is not None:
                st.runs += 1
                st.last_success = result.success
        except asyncio.CancelledError:
            log.info("calendar.run_cancelled", task=st.name, generation=st.generation)
            raise
        except Exception as e:
            log.error(
                "calendar.run_crashed",
                task=st.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            st.running = False
            st.in_flight = None
            if st.state is TaskState.RUNNING:
                st.state = TaskState.SCHEDULED

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def _cancel_generation(self, reason: str) -> None:
        token = self._token
        tasks = list(self._tasks.values())
        self._tasks = {}
        if token is None and not tasks:
            return
        if token is not None:
            token.cancel(reason)

        for st in tasks:
            st.state = TaskState.CANCELED
            for timer in st.timers:
                timer.cancel()

        timers = [t for st in tasks for t in st.timers]
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        in_flight = [st.in_flight for st in tasks if st.in_flight is not None]
        killed = 0
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=self._kill_grace)
            for run in pending:
                run.cancel()
            if pending:
                killed = len(pending)
                await asyncio.gather(*pending, return_exceptions=True)

        log.info(
            "calendar.generation_cancelled",
            generation=self._generation,
            reason=reason,
            tasks=len(tasks),
            in_flight=len(in_flight),
            force_cancelled=killed,
        )
