"""
exceptions.py — Compliance Scheduler Error Hierarchy

All engine-specific exceptions live here. Every layer raises typed
subclasses of ComplianceSchedulerError — never bare Exception.

Import from here, not from individual modules:
    from compliance_scheduler.exceptions import ScheduleParseError, ProcessExitError

Hierarchy:
    ComplianceSchedulerError
    ├── SchedulingError           (validation-time, isolated to one task)
    │   ├── ScheduleParseError
    │   ├── CheckModuleNotFoundError
    │   └── DuplicateTaskError
    ├── ModuleRunError            (run-time, surfaced as a failed RunResult)
    │   ├── ProcessLaunchError
    │   ├── ProcessExitError
    │   ├── ModuleOutputError
    │   └── ModuleRunCancelled
    ├── ModuleManifestError
    └── UnknownTaskError
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from compliance_scheduler.modules.types import ModuleInvocation, ModuleOutcome


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ComplianceSchedulerError(Exception):
    """Base class for all compliance scheduler exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Scheduling (validation) layer
# ─────────────────────────────────────────────────────────────────────────────

class SchedulingError(ComplianceSchedulerError):
    """A task could not be scheduled. Never produces a ScheduledTask."""


class ScheduleParseError(SchedulingError):
    """The schedule string (duration, repeat bound or anchor) is malformed."""

    def __init__(self, schedule: str, reason: str = "did not match expected pattern",
                 *, subject: str = "duration") -> None:
        self.schedule = schedule
        self.reason = reason
        super().__init__(f"Could not parse {subject} from schedule {schedule}: {reason}")


class CheckModuleNotFoundError(SchedulingError):
    """The task references a check module the runner does not know about."""

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__(f"Module {module} does not exist")


class DuplicateTaskError(SchedulingError):
    """Two tasks in one submitted set share an id."""

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id {task_id}")


# ─────────────────────────────────────────────────────────────────────────────
# Module run layer
# ─────────────────────────────────────────────────────────────────────────────

class ModuleRunError(ComplianceSchedulerError):
    """Base for errors raised while running a check module."""


class ProcessLaunchError(ModuleRunError):
    """The module's program could not be started at all."""

    def __init__(self, module: str, invocation: "ModuleInvocation", cause: str) -> None:
        self.module = module
        self.invocation = invocation
        self.cause = cause
        super().__init__(
            f"Could not start module {module} via {invocation.describe()} ({cause})"
        )


class ProcessExitError(ModuleRunError):
    """The module ran but exited non-zero (or was killed by a signal)."""

    def __init__(self, outcome: "ModuleOutcome") -> None:
        self.outcome = outcome
        status = outcome.exit_status
        how = f"signal {-status}" if status < 0 else f"exit status {status}"
        super().__init__(
            f"module {outcome.invocation.module} via {outcome.invocation.describe()} "
            f"exited with error ({how}) "
            f"Stdout: {json.dumps(outcome.stdout)} Stderr: {json.dumps(outcome.stderr)}"
        )


class ModuleOutputError(ModuleRunError):
    """The module exited zero but its stdout is not a JSON object."""

    def __init__(self, invocation: "ModuleInvocation", reason: str) -> None:
        self.invocation = invocation
        self.reason = reason
        super().__init__(
            f"module {invocation.module} via {invocation.describe()} "
            f"produced invalid output: {reason}"
        )


class ModuleRunCancelled(ModuleRunError):
    """The run was cancelled and its child process killed. Never reported."""

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__(f"Run of module {module} was cancelled")


# ─────────────────────────────────────────────────────────────────────────────
# Registry / control surface
# ─────────────────────────────────────────────────────────────────────────────

class ModuleManifestError(ComplianceSchedulerError):
    """A module.yaml could not be read or failed validation."""


class UnknownTaskError(ComplianceSchedulerError):
    """RunTasks named ids that are not part of the active generation."""

    def __init__(self, task_ids: Iterable[int]) -> None:
        self.task_ids = sorted(task_ids)
        ids = ", ".join(str(i) for i in self.task_ids)
        super().__init__(f"No active task with id(s) {ids}")
