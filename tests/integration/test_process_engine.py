"""
tests/integration/test_process_engine.py — Engine Integration Tests

Full wiring with real child processes: settings -> ModuleRegistry ->
ProcessModuleRunner -> ExecutionDispatcher -> TaskCalendar -> sinks.
The check modules are the shell scripts written by the modules_dir
fixture (see conftest.py).

Coverage:
  - successful run: result payload, event text, metric line
  - non-zero exit and launch failure produce failing results with the
    invocation described
  - a new task set kills the previous generation's child process
  - `compliance-scheduler run` streams JSON lines for a task file

Run:
    pytest tests/integration/test_process_engine.py -v
"""

from __future__ import annotations

import asyncio
import json
import re
import textwrap
import time
from unittest.mock import patch

import pytest
import pytest_asyncio

from compliance_scheduler import ComplianceModuleManager, TaskDefinition
from compliance_scheduler.config.settings import Settings
from compliance_scheduler.main import EXIT_OK, main
from compliance_scheduler.scheduler import RunEvent, RunResult


def _task(task_id: int, module: str = "test-module", schedule: str = "PT1H",
          iter: str = "1", sleep: str = "0", rc: str = "0") -> TaskDefinition:
    return TaskDefinition(
        id=task_id, name=f"task-{task_id}", module=module, schedule=schedule,
        parameters=(("iter", iter), ("sleepTime", sleep), ("rc", rc)),
    )


async def _next_result(manager: ComplianceModuleManager, timeout: float = 5.0) -> RunResult:
    deadline = time.monotonic() + timeout
    while True:
        out = await manager.sink.next_output(timeout=max(0.01, deadline - time.monotonic()))
        if isinstance(out, RunResult):
            return out


@pytest_asyncio.fixture
async def manager(modules_dir):
    settings = Settings(engine={"modules_dir": str(modules_dir), "source_id": "agent-it"})
    m = ComplianceModuleManager.from_settings(settings)
    m.load()
    yield m
    await m.close()


# ── Runs ──────────────────────────────────────────────────────────────────────

class TestRuns:

    @pytest.mark.asyncio
    async def test_success(self, manager):
        await manager.start([_task(1, iter="5")])
        result = await _next_result(manager)
        assert result.success
        assert result.ext_result == {
            "testsRun": 1, "passCount": 5, "risk": "low", "id": 1, "taskName": "task-1",
        }
        await asyncio.sleep(0.1)
        [event] = manager.sink.drain_events()
        assert isinstance(event, RunEvent)
        assert event.container_id == "agent-it"
        assert event.output == "test-module output (task=task-1 iter=5 sleepTime=0 rc=0)"
        assert manager.metric_sink.lines() == ["compliance.task-1:tests_pass:5|g\n"]

    @pytest.mark.asyncio
    async def test_exit_failure(self, manager, modules_dir):
        await manager.start([_task(1, rc="1")])
        result = await _next_result(manager)
        assert not result.success
        path = re.escape(str(modules_dir / "test-module" / "run.sh"))
        assert re.match(
            rf'^module test-module via \{{Path={path} Args=\[{path} 1 0 1\] Env=\[.*\] Dir=.*\}} '
            r'exited with error \(exit status 1\) '
            r'Stdout: "This is to stdout\\n" Stderr: "This is to stderr\\n"$',
            result.failure_details,
        )
        assert manager.metric_sink.lines() == []

    @pytest.mark.asyncio
    async def test_launch_failure(self, manager, modules_dir):
        await manager.start([_task(1, module="fail-module")])
        result = await _next_result(manager)
        path = re.escape(str(modules_dir / "fail-module" / "run.sh"))
        assert re.match(
            rf"^Could not start module fail-module via \{{Path={path} .*\}} "
            rf"\(fork/exec {path}: permission denied\)$",
            result.failure_details,
        )

    @pytest.mark.asyncio
    async def test_unknown_module_is_schedule_error(self, manager):
        await manager.start([_task(1, module="missing-module")])
        error = await manager.sink.next_output(timeout=1)
        assert error.message == "Could not schedule task task-1: Module missing-module does not exist"


# ── Generations ───────────────────────────────────────────────────────────────

class TestGenerations:

    @pytest.mark.asyncio
    async def test_restart_kills_previous_module(self, manager):
        await manager.start([_task(1, sleep="5")])
        await asyncio.sleep(0.3)

        started = time.monotonic()
        await manager.start([_task(2)])
        assert time.monotonic() - started < 2.0

        result = await _next_result(manager)
        assert result.task_name == "task-2"
        await asyncio.sleep(0.5)
        assert all(r.task_name == "task-2" for r in manager.sink.drain_results())
        assert all(e.task_name == "task-2" for e in manager.sink.drain_events())

    @pytest.mark.asyncio
    async def test_stop_kills_running_module(self, manager):
        await manager.start([_task(1, sleep="5")])
        await asyncio.sleep(0.3)
        started = time.monotonic()
        await manager.stop()
        assert time.monotonic() - started < 2.0
        assert manager.sink.pending() == 0


# ── CLI ───────────────────────────────────────────────────────────────────────

class TestRunCommand:

    def test_streams_json_lines(self, tmp_path, modules_dir, capsys):
        config = tmp_path / "config.yaml"
        config.write_text(textwrap.dedent(f"""
            engine:
              modules_dir: "{modules_dir}"
        """))
        tasks = tmp_path / "tasks.yaml"
        tasks.write_text(textwrap.dedent("""
            tasks:
              - id: 1
                name: cli-task
                module: test-module
                schedule: PT1H
                parameters: {iter: 2, sleepTime: 0, rc: 0}
              - id: 2
                name: bad-task
                module: test-module
                schedule: PT-1H
        """))

        with patch("compliance_scheduler.observability.logger.setup_logging"):
            code = main([
                "--config", str(config), "--json", "run", str(tasks), "--duration", "1.5",
            ])
        assert code == EXIT_OK

        lines = [json.loads(l) for l in capsys.readouterr().out.splitlines() if l.strip()]
        kinds = sorted(l["type"] for l in lines)
        assert kinds == ["error", "event", "result"]
        result = next(l for l in lines if l["type"] == "result")
        assert result["successful"] is True
        assert result["ext_result"]["passCount"] == 2
