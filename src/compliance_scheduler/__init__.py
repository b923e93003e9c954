"""
compliance_scheduler — Task calendar and execution engine for compliance checks.

    from compliance_scheduler import ComplianceModuleManager, TaskDefinition
"""

from compliance_scheduler.manager import ComplianceModuleManager
from compliance_scheduler.scheduler import (
    RunEvent,
    RunResult,
    ScheduleError,
    StartOptions,
    TaskDefinition,
)

__version__ = "1.0.0"

__all__ = [
    "ComplianceModuleManager",
    "RunEvent",
    "RunResult",
    "ScheduleError",
    "StartOptions",
    "TaskDefinition",
    "__version__",
]
