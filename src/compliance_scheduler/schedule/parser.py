"""
schedule/parser.py — Schedule String Parser

Grammar (ISO-8601 flavoured):

    schedule  := interval | "[" interval ("," interval)* "]"
    interval  := [anchor "/"] ["R" count "/"] period
    anchor    := <ISO date-time> | <time-of-day, e.g. 06:00:00Z> | ""
    period    := "PT" [h "H"] [m "M"] [s "S"]        fixed wall-clock
               | "P" n ("D" | "W" | "M")            calendar

The parser is strict: every token must match in full. Failures raise
ScheduleParseError whose message names the whole schedule string, e.g.

    Could not parse duration from schedule PT-1H: did not match expected pattern
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from dateutil.parser import isoparse

from compliance_scheduler.exceptions import ScheduleParseError
from compliance_scheduler.schedule.types import (
    AnchorKind, IntervalSpec, Period, PeriodUnit, ScheduleSpec,
)

_FIXED_RE = re.compile(r"^PT(?=\d)(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")
_CALENDAR_RE = re.compile(r"^P(\d+)([DWM])$")
_REPEAT_RE = re.compile(r"^R(\d*)$")
_TIME_OF_DAY_RE = re.compile(
    r"^(\d{2}):(\d{2})(?::(\d{2}))?(Z|[+-]\d{2}:?\d{2})?$"
)

_CALENDAR_UNITS = {"D": PeriodUnit.DAY, "W": PeriodUnit.WEEK, "M": PeriodUnit.MONTH}


def parse_schedule(schedule: str) -> ScheduleSpec:
    """Parse a raw schedule string. Raises ScheduleParseError."""
    if schedule.startswith("[") and schedule.endswith("]"):
        tokens = [t.strip() for t in schedule[1:-1].split(",")]
        if not tokens or any(not t for t in tokens):
            raise ScheduleParseError(schedule)
    else:
        tokens = [schedule]

    intervals = tuple(_parse_interval(schedule, token) for token in tokens)
    return ScheduleSpec(raw=schedule, intervals=intervals)


def parse_period(schedule: str, token: str) -> Period:
    """Parse one duration token; `schedule` is only used in error messages."""
    m = _FIXED_RE.match(token)
    if m:
        hours, minutes, seconds = (int(g) if g else 0 for g in m.groups())
        if hours and not minutes and not seconds:
            period = Period(hours, PeriodUnit.HOURS)
        else:
            period = Period(hours * 3600 + minutes * 60 + seconds, PeriodUnit.SECONDS)
    else:
        m = _CALENDAR_RE.match(token)
        if not m:
            raise ScheduleParseError(schedule)
        period = Period(int(m.group(1)), _CALENDAR_UNITS[m.group(2)])

    if period.amount <= 0:
        raise ScheduleParseError(schedule, "duration must be greater than zero")
    return period


# ─────────────────────────────────────────────────────────────────────────────
# Internals
# ─────────────────────────────────────────────────────────────────────────────

def _parse_interval(schedule: str, token: str) -> IntervalSpec:
    parts = token.split("/")
    if len(parts) > 3:
        raise ScheduleParseError(schedule)

    period = parse_period(schedule, parts[-1])
    anchor_part: Optional[str] = None
    repeat_bound: Optional[int] = None

    if len(parts) == 3:
        anchor_part = parts[0]
        repeat_bound = _parse_repeat(schedule, parts[1])
    elif len(parts) == 2:
        if _REPEAT_RE.match(parts[0]):
            repeat_bound = _parse_repeat(schedule, parts[0])
        else:
            anchor_part = parts[0]

    if not anchor_part:
        return IntervalSpec(period=period, repeat_bound=repeat_bound, raw=token)

    tod = _parse_time_of_day(schedule, anchor_part)
    if tod is not None:
        return IntervalSpec(
            period=period,
            anchor_kind=AnchorKind.TIME_OF_DAY,
            time_of_day=tod,
            repeat_bound=repeat_bound,
            raw=token,
        )

    return IntervalSpec(
        period=period,
        anchor_kind=AnchorKind.ABSOLUTE,
        anchor=_parse_absolute(schedule, anchor_part),
        repeat_bound=repeat_bound,
        raw=token,
    )


def _parse_repeat(schedule: str, token: str) -> Optional[int]:
    m = _REPEAT_RE.match(token)
    if not m:
        raise ScheduleParseError(schedule, subject="repeat count")
    return int(m.group(1)) if m.group(1) else None


def _parse_time_of_day(schedule: str, token: str) -> Optional[time]:
    m = _TIME_OF_DAY_RE.match(token)
    if not m:
        return None
    hour, minute, second, tz = m.groups()
    try:
        return time(int(hour), int(minute), int(second or 0), tzinfo=_parse_offset(tz))
    except ValueError as exc:
        raise ScheduleParseError(schedule, str(exc), subject="start time") from exc


def _parse_offset(tz: Optional[str]) -> timezone:
    if tz is None or tz == "Z":
        return timezone.utc
    sign = -1 if tz[0] == "-" else 1
    digits = tz[1:].replace(":", "")
    delta = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
    return timezone(sign * delta)


def _parse_absolute(schedule: str, token: str) -> datetime:
    try:
        value = isoparse(token)
    except ValueError as exc:
        raise ScheduleParseError(schedule, str(exc), subject="start time") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
