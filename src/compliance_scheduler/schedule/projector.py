"""
schedule/projector.py — Future-Run Projector

Pure functions: no clock reads, no side effects. Used by the live calendar
to arm timers and by the read-only "what will run next" query.

Each IntervalSpec yields a lazy sequence `anchor + k * period` for
k = 0, 1, ... (bounded by repeat_bound). Calendar units go through
relativedelta, so "+1 month" from the 14th lands on the 14th and "+1 month"
from the 31st lands on the last day of shorter months. The occurrence is
always computed from the anchor, never accumulated.

Per-interval sequences are merged in time order (ties broken by interval
declaration order) and de-duplicated by instant value.
"""

from __future__ import annotations

import heapq
import math
from datetime import datetime, timezone
from itertools import count as _count, islice
from typing import Iterator

from compliance_scheduler.schedule.types import (
    AnchorKind, IntervalSpec, PeriodUnit, ScheduleSpec,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def resolve_anchor(interval: IntervalSpec, reference: datetime) -> datetime:
    """
    Absolute anchor for `interval`.

    IMPLICIT anchors are the reference instant itself (the moment of
    registration); TIME_OF_DAY anchors take the reference's calendar date
    in the anchor's own offset.
    """
    if interval.anchor_kind is AnchorKind.ABSOLUTE:
        return interval.anchor
    if interval.anchor_kind is AnchorKind.TIME_OF_DAY:
        tz = interval.time_of_day.tzinfo or timezone.utc
        local_date = reference.astimezone(tz).date()
        return datetime.combine(local_date, interval.time_of_day)
    return reference


def occurrence(interval: IntervalSpec, anchor: datetime, k: int) -> datetime:
    return anchor + interval.period.offset(k)


def iter_interval(interval: IntervalSpec, reference: datetime,
                  start: datetime | None = None) -> Iterator[datetime]:
    """
    Yield the interval's firing instants at or after `start`.

    `reference` resolves implicit / time-of-day anchors; `start` defaults to
    the anchor. Occurrences before `start` still count against the repeat
    bound.
    """
    anchor = resolve_anchor(interval, reference)
    total = interval.total_firings
    k = _first_index_at_or_after(interval, anchor, start) if start else 0

    indices = _count(k) if total is None else range(k, total)
    for i in indices:
        yield occurrence(interval, anchor, i)


def iter_schedule(spec: ScheduleSpec, reference: datetime,
                  start: datetime | None = None) -> Iterator[datetime]:
    """Merged, de-duplicated, time-ordered firings of every interval."""
    streams = [
        ((instant, idx) for instant in iter_interval(interval, reference, start))
        for idx, interval in enumerate(spec.intervals)
    ]
    last: datetime | None = None
    for instant, _idx in heapq.merge(*streams):
        if instant == last:
            continue
        last = instant
        yield instant


def project(spec: ScheduleSpec, start: datetime, count: int,
            reference: datetime | None = None) -> list[datetime]:
    """
    First `count` firing instants at or after `start`.

    May return fewer when every interval is bounded and runs out.
    """
    if count <= 0:
        return []
    start = _ensure_utc(start)
    reference = _ensure_utc(reference) if reference is not None else start
    return list(islice(iter_schedule(spec, reference, start), count))


def format_instant(instant: datetime) -> str:
    """Render an instant as `YYYY-MM-DDTHH:MM:SSZ` (UTC)."""
    return instant.astimezone(timezone.utc).strftime(ISO_FORMAT)


# ─────────────────────────────────────────────────────────────────────────────
# Internals
# ─────────────────────────────────────────────────────────────────────────────

def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _first_index_at_or_after(interval: IntervalSpec, anchor: datetime,
                             start: datetime) -> int:
    """Smallest k with occurrence(k) >= start, without walking from zero."""
    if start <= anchor:
        return 0
    period = interval.period
    elapsed = (start - anchor).total_seconds()

    if period.unit in (PeriodUnit.SECONDS, PeriodUnit.HOURS):
        k = max(0, math.ceil(elapsed / period.approx_seconds()) - 1)
    else:
        # approx_seconds under-estimates a calendar period, so this may
        # overshoot; step back until the previous occurrence is before start
        k = max(0, int(elapsed // period.approx_seconds()))
        while k > 0 and occurrence(interval, anchor, k - 1) >= start:
            k -= 1

    while occurrence(interval, anchor, k) < start:
        k += 1
    return k
