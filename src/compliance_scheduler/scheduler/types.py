"""
scheduler/types.py — Calendar & Dispatch Data Contracts

  - TaskDefinition: one submitted task (immutable once accepted)
  - StartOptions:   per-Start request settings stamped on every result
  - RunResult:      outcome of one completed, non-cancelled run
  - RunEvent:       lifecycle event describing a successful run
  - ScheduleError:  a task that could not be scheduled at all
  - TaskState:      Scheduled -> Running -> Scheduled, Canceled is terminal
  - CalendarStats:  counters for introspection
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# TaskDefinition
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TaskDefinition:
    """
    One task as submitted by Start.

    parameters keeps declaration order; it is passed to the module and
    echoed in the run event in that order.
    """
    id: int
    name: str
    module: str
    schedule: str
    enabled: bool = True
    parameters: tuple[tuple[str, str], ...] = ()

    @property
    def params(self) -> dict[str, str]:
        return dict(self.parameters)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskDefinition":
        """
        Build from a plain mapping (YAML task files, RPC payloads).

        `parameters` may be a mapping or a list of {key, value} pairs.
        Values are coerced to strings.
        """
        raw_params = data.get("parameters") or {}
        if isinstance(raw_params, Mapping):
            pairs = [(str(k), _param_str(v)) for k, v in raw_params.items()]
        else:
            pairs = [(str(p["key"]), _param_str(p["value"])) for p in raw_params]
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            module=str(data["module"]),
            schedule=str(data["schedule"]),
            enabled=bool(data.get("enabled", True)),
            parameters=tuple(pairs),
        )


def _param_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class StartOptions:
    machine_id: str = ""
    customer_id: str = ""
    send_failed_results: bool = True


# ─────────────────────────────────────────────────────────────────────────────
# Outputs
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RunResult:
    task_name: str
    success: bool
    task_id: int = 0
    ext_result: Optional[dict[str, Any]] = None
    failure_details: str = ""
    machine_id: str = ""
    customer_id: str = ""
    generation: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def ok(cls, task: TaskDefinition, ext_result: dict[str, Any],
           options: StartOptions, generation: int = 0) -> "RunResult":
        return cls(
            task_name=task.name,
            success=True,
            task_id=task.id,
            ext_result=ext_result,
            machine_id=options.machine_id,
            customer_id=options.customer_id,
            generation=generation,
        )

    @classmethod
    def fail(cls, task: TaskDefinition, details: str,
             options: StartOptions, generation: int = 0) -> "RunResult":
        return cls(
            task_name=task.name,
            success=False,
            task_id=task.id,
            failure_details=details,
            machine_id=options.machine_id,
            customer_id=options.customer_id,
            generation=generation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "task_id": self.task_id,
            "successful": self.success,
            "ext_result": self.ext_result,
            "failure_details": self.failure_details,
            "machine_id": self.machine_id,
            "customer_id": self.customer_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RunEvent:
    task_name: str
    container_id: str
    output: str
    output_fields: dict[str, str] = field(default_factory=dict)
    generation: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "container_id": self.container_id,
            "output": self.output,
            "output_fields": dict(self.output_fields),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ScheduleError:
    task_name: str
    message: str
    generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"task_name": self.task_name, "message": self.message}


# ─────────────────────────────────────────────────────────────────────────────
# Runtime state
# ─────────────────────────────────────────────────────────────────────────────

class TaskState(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING   = "running"
    CANCELED  = "canceled"


@dataclass
class CalendarStats:
    generation: int = 0
    active_tasks: int = 0
    total_fires: int = 0
    dispatched_runs: int = 0
    skipped_fires: int = 0
    missed_fires: int = 0
    schedule_errors: int = 0
    last_fire_at: Optional[str] = None
    last_fire_task: Optional[str] = None
