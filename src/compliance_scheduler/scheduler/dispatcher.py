"""
scheduler/dispatcher.py — Execution Dispatcher

Runs one fire of one task through the ModuleRunner and turns the outcome
into outputs:

    launch failure   -> failing RunResult (ProcessLaunchError text)
    non-zero exit    -> failing RunResult (ProcessExitError text)
    bad JSON stdout  -> failing RunResult (ModuleOutputError text)
    success          -> RunResult + RunEvent + one Metric

A run whose cancel token fired is invisible: nothing is published for it,
whatever stage it reached. The token is checked after the runner returns
and before the first output is published; from that point the run's
post-processing completes as a unit (PendingEmission), and run() only
returns once the event has gone out.

The dispatcher never raises for a module failure. Single-flight is the
calendar's job; the dispatcher assumes it is the only run of this task.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from compliance_scheduler.exceptions import (
    CheckModuleNotFoundError,
    ModuleOutputError,
    ModuleRunCancelled,
    ProcessExitError,
    ProcessLaunchError,
)
from compliance_scheduler.modules.runner import ModuleRunner
from compliance_scheduler.modules.types import CancelToken, ModuleOutcome
from compliance_scheduler.observability.logger import (
    bind_run_context,
    clear_run_context,
    get_logger,
)
from compliance_scheduler.scheduler.sinks import OutputSink, PendingEmission
from compliance_scheduler.scheduler.types import (
    RunEvent,
    RunResult,
    StartOptions,
    TaskDefinition,
)
from compliance_scheduler.telemetry.statsd import (
    DEFAULT_PREFIX,
    Metric,
    MetricSink,
    metric_name_for,
)

log = get_logger(__name__)

DEFAULT_SOURCE_ID = "compliance-scheduler"


class ExecutionDispatcher:
    """
    Usage::

        dispatcher = ExecutionDispatcher(runner, sink, metric_sink)
        result = await dispatcher.run(task, token, StartOptions(machine_id="m1"))
        # result is None when the run was cancelled
    """

    def __init__(
        self,
        runner: ModuleRunner,
        sink: OutputSink,
        metric_sink: Optional[MetricSink] = None,
        source_id: str = DEFAULT_SOURCE_ID,
        metric_prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self._runner = runner
        self._sink = sink
        self._metrics = metric_sink
        self._source_id = source_id
        self._metric_prefix = metric_prefix

    @property
    def runner(self) -> ModuleRunner:
        return self._runner

    async def run(
        self,
        task: TaskDefinition,
        cancel: CancelToken,
        options: Optional[StartOptions] = None,
        generation: int = 0,
    ) -> Optional[RunResult]:
        """Execute one run. Returns the RunResult built, or None if cancelled."""
        options = options or StartOptions()
        bind_run_context(task.name, generation)
        try:
            log.info("dispatch.run_start", module=task.module, task_id=task.id)
            try:
                outcome = await self._runner.run(task.module, task.params, cancel)
            except ModuleRunCancelled:
                log.info("dispatch.run_cancelled", module=task.module)
                return None
            except (ProcessLaunchError, CheckModuleNotFoundError) as e:
                return self._fail(task, str(e), cancel, options, generation)

            if cancel.cancelled:
                log.info("dispatch.run_cancelled", module=task.module, stage="after_exit")
                return None

            if not outcome.succeeded:
                return self._fail(task, str(ProcessExitError(outcome)), cancel, options, generation)

            try:
                payload = parse_module_output(outcome)
            except ModuleOutputError as e:
                return self._fail(task, str(e), cancel, options, generation)

            return await self._succeed(task, outcome, payload, cancel, options, generation)
        finally:
            clear_run_context()

    # ── Outcomes ──────────────────────────────────────────────────────────────

    def _fail(self, task: TaskDefinition, details: str, cancel: CancelToken,
              options: StartOptions, generation: int) -> Optional[RunResult]:
        if cancel.cancelled:
            log.info("dispatch.run_cancelled", module=task.module, stage="failure")
            return None
        result = RunResult.fail(task, details, options, generation)
        log.warning("dispatch.run_failed", module=task.module, error=details)
        if options.send_failed_results:
            self._sink.publish_result(result)
        else:
            log.info("dispatch.failed_result_suppressed", module=task.module)
        return result

    async def _succeed(self, task: TaskDefinition, outcome: ModuleOutcome,
                       payload: dict[str, Any], cancel: CancelToken,
                       options: StartOptions, generation: int) -> Optional[RunResult]:
        ext_result = dict(payload)
        ext_result["id"] = task.id
        ext_result["taskName"] = task.name
        result = RunResult.ok(task, ext_result, options, generation)
        event = self.build_event(task, payload, generation)
        metric = Metric(
            name=metric_name_for(task.name, self._metric_prefix),
            value=_pass_count(payload),
            task_name=task.name,
        )

        def publish_event() -> None:
            if cancel.cancelled:
                log.info("dispatch.event_dropped", module=task.module, reason="cancelled")
                return
            self._sink.publish_event(event)

        if cancel.cancelled:
            log.info("dispatch.run_cancelled", module=task.module, stage="before_publish")
            return None
        pending = PendingEmission(2, emit=publish_event)
        self._sink.publish_result(result)
        pending.step_done()
        asyncio.get_running_loop().run_in_executor(
            None, self._emit_metric, metric, pending, cancel,
        )
        try:
            await pending.wait()
        except asyncio.CancelledError:
            pending.cancel()
            raise

        log.info(
            "dispatch.run_complete",
            module=task.module,
            duration_s=round(outcome.duration_s, 3),
            metric=metric.name,
            value=metric.value,
        )
        return result

    def build_event(self, task: TaskDefinition, payload: dict[str, Any],
                    generation: int = 0) -> RunEvent:
        """`<module> output (task=<name> k=v ...)`, fields echo the same."""
        summary = " ".join([f"task={task.name}", *(f"{k}={v}" for k, v in task.parameters)])
        fields = {"task": task.name}
        fields.update(task.parameters)
        return RunEvent(
            task_name=task.name,
            container_id=str(payload.get("containerId") or self._source_id),
            output=f"{task.module} output ({summary})",
            output_fields=fields,
            generation=generation,
        )

    def _emit_metric(self, metric: Metric, pending: PendingEmission,
                     cancel: CancelToken) -> None:
        try:
            if self._metrics is not None and not cancel.cancelled:
                self._metrics.emit(metric)
        except Exception as e:
            log.warning("dispatch.metric_failed", metric=metric.name, error=str(e))
        finally:
            pending.step_done()


# ─────────────────────────────────────────────────────────────────────────────
# Module output
# ─────────────────────────────────────────────────────────────────────────────

def parse_module_output(outcome: ModuleOutcome) -> dict[str, Any]:
    """The module's stdout must be one JSON object. Raises ModuleOutputError."""
    text = outcome.stdout.strip()
    if not text:
        raise ModuleOutputError(outcome.invocation, "empty stdout")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ModuleOutputError(outcome.invocation, f"not JSON ({e.msg})") from e
    if not isinstance(payload, dict):
        raise ModuleOutputError(
            outcome.invocation, f"expected a JSON object, got {type(payload).__name__}"
        )
    return payload


def _pass_count(payload: dict[str, Any]) -> int:
    value = payload.get("passCount", 0)
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning("dispatch.bad_pass_count", value=repr(value))
        return 0
