"""
schedule/ — Schedule parsing and future-run projection.

    from compliance_scheduler.schedule import parse_schedule, project
    spec = parse_schedule("06:00:00Z/PT12H")
    project(spec, start, 5)
"""

from compliance_scheduler.schedule.parser import parse_period, parse_schedule
from compliance_scheduler.schedule.projector import (
    format_instant,
    iter_interval,
    iter_schedule,
    project,
    resolve_anchor,
)
from compliance_scheduler.schedule.types import (
    AnchorKind,
    IntervalSpec,
    Period,
    PeriodUnit,
    ScheduleSpec,
)

__all__ = [
    "AnchorKind",
    "IntervalSpec",
    "Period",
    "PeriodUnit",
    "ScheduleSpec",
    "format_instant",
    "iter_interval",
    "iter_schedule",
    "parse_period",
    "parse_schedule",
    "project",
    "resolve_anchor",
]
