"""
manager.py — ComplianceModuleManager (control surface)

Thin façade over the calendar, in the shape of the agent's RPC service:

    Load()            -> module statuses
    Start(tasks)      -> replace the active task set, outputs stream after
    Stop()            -> cancel everything (idempotent)
    RunTasks(ids)     -> out-of-band run of active tasks
    GetFutureRuns()   -> pure projection, never touches live state

Usage::

    manager = ComplianceModuleManager.from_settings(settings)
    manager.load()
    await manager.start(tasks, StartOptions(machine_id="m1"))
    result = await manager.sink.next_output(timeout=10)
    await manager.close()
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from dateutil.parser import isoparse

from compliance_scheduler.config.settings import Settings, get_settings
from compliance_scheduler.modules import (
    ModuleRegistry,
    ModuleRunner,
    ModuleStatus,
    ProcessModuleRunner,
)
from compliance_scheduler.observability.logger import get_logger
from compliance_scheduler.schedule import format_instant, parse_schedule, project
from compliance_scheduler.scheduler import (
    CalendarStats,
    ExecutionDispatcher,
    QueueOutputSink,
    StartOptions,
    TaskCalendar,
    TaskDefinition,
)
from compliance_scheduler.telemetry import (
    DEFAULT_PREFIX,
    InMemoryMetricSink,
    MetricSink,
    StatsdMetricSink,
)

log = get_logger(__name__)

DEFAULT_FUTURE_RUNS = 10


class ComplianceModuleManager:

    def __init__(
        self,
        runner: ModuleRunner,
        sink: Optional[QueueOutputSink] = None,
        metric_sink: Optional[MetricSink] = None,
        registry: Optional[ModuleRegistry] = None,
        source_id: str = "compliance-scheduler",
        metric_prefix: str = DEFAULT_PREFIX,
        kill_grace_seconds: float = 2.0,
        default_options: Optional[StartOptions] = None,
        default_future_runs: int = DEFAULT_FUTURE_RUNS,
    ) -> None:
        self._runner = runner
        self._registry = registry
        self.sink = sink or QueueOutputSink()
        self.metric_sink = metric_sink or InMemoryMetricSink()
        self._default_options = default_options or StartOptions()
        self._default_future_runs = default_future_runs

        self.dispatcher = ExecutionDispatcher(
            runner,
            self.sink,
            self.metric_sink,
            source_id=source_id,
            metric_prefix=metric_prefix,
        )
        self.calendar = TaskCalendar(
            self.dispatcher,
            self.sink,
            kill_grace_seconds=kill_grace_seconds,
        )

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      sink: Optional[QueueOutputSink] = None,
                      metric_sink: Optional[MetricSink] = None) -> "ComplianceModuleManager":
        settings = settings or get_settings()
        engine = settings.engine
        telemetry = settings.telemetry

        registry = ModuleRegistry(settings.modules_dir)
        runner = ProcessModuleRunner(registry, max_output_bytes=engine.max_output_bytes)

        if metric_sink is None and telemetry.statsd_enabled:
            metric_sink = StatsdMetricSink(telemetry.statsd_host, telemetry.statsd_port)

        return cls(
            runner=runner,
            sink=sink,
            metric_sink=metric_sink,
            registry=registry,
            source_id=engine.source_id,
            metric_prefix=telemetry.metric_prefix,
            kill_grace_seconds=engine.kill_grace_seconds,
            default_options=StartOptions(
                machine_id=engine.machine_id,
                customer_id=engine.customer_id,
                send_failed_results=engine.send_failed_results,
            ),
            default_future_runs=engine.default_future_runs,
        )

    # ── Control surface ───────────────────────────────────────────────────────

    def load(self) -> list[ModuleStatus]:
        """(Re)discover check modules. Empty when no registry is attached."""
        if self._registry is None:
            return []
        return self._registry.load()

    async def start(self, tasks: Iterable[TaskDefinition],
                    options: Optional[StartOptions] = None) -> int:
        tasks = list(tasks)
        generation = await self.calendar.activate(tasks, options or self._default_options)
        log.info("manager.start", generation=generation, tasks=len(tasks))
        return generation

    async def stop(self) -> None:
        await self.calendar.deactivate()
        log.info("manager.stop", generation=self.calendar.generation)

    async def run_tasks(self, task_ids: Iterable[int]) -> list[int]:
        """Raises UnknownTaskError if any id is not in the active task set."""
        return await self.calendar.dispatch_once(task_ids)

    def get_future_runs(self, task: TaskDefinition, start: datetime | str,
                        num_runs: Optional[int] = None) -> list[str]:
        """
        Next `num_runs` instants of the task's schedule at or after `start`,
        as `YYYY-MM-DDTHH:MM:SSZ` strings. Raises ScheduleParseError.
        """
        if isinstance(start, str):
            start = isoparse(start)
        count = num_runs if num_runs is not None else self._default_future_runs
        spec = parse_schedule(task.schedule)
        return [format_instant(t) for t in project(spec, start, count)]

    # ── Introspection / lifecycle ─────────────────────────────────────────────

    def list_tasks(self) -> list[dict[str, Any]]:
        return self.calendar.list_tasks()

    @property
    def stats(self) -> CalendarStats:
        return self.calendar.stats

    async def close(self) -> None:
        await self.stop()
        self.metric_sink.close()
