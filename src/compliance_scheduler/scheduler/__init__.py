"""
scheduler/ — Task Calendar & Execution Dispatcher

    from compliance_scheduler.scheduler import TaskCalendar, ExecutionDispatcher
"""

from compliance_scheduler.scheduler.calendar import ScheduledTask, TaskCalendar
from compliance_scheduler.scheduler.dispatcher import ExecutionDispatcher, parse_module_output
from compliance_scheduler.scheduler.sinks import OutputSink, PendingEmission, QueueOutputSink
from compliance_scheduler.scheduler.types import (
    CalendarStats,
    RunEvent,
    RunResult,
    ScheduleError,
    StartOptions,
    TaskDefinition,
    TaskState,
)

__all__ = [
    "CalendarStats",
    "ExecutionDispatcher",
    "OutputSink",
    "PendingEmission",
    "QueueOutputSink",
    "RunEvent",
    "RunResult",
    "ScheduleError",
    "ScheduledTask",
    "StartOptions",
    "TaskCalendar",
    "TaskDefinition",
    "TaskState",
    "parse_module_output",
]
