"""
schedule/types.py — Schedule Data Contracts

Immutable values produced by the parser and consumed by the projector.

  - PeriodUnit:    seconds / hours advance by fixed wall-clock duration;
                   day / week / month advance with calendar arithmetic.
  - Period:        amount + unit.
  - AnchorKind:    how the interval's reference point was written.
  - IntervalSpec:  one `[anchor/][R<n>/]period` token.
  - ScheduleSpec:  one or more IntervalSpecs, in declaration order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta


class PeriodUnit(str, Enum):
    SECONDS = "seconds"
    HOURS   = "hours"
    DAY     = "day"
    WEEK    = "week"
    MONTH   = "month"

    @property
    def is_calendar(self) -> bool:
        return self in (PeriodUnit.DAY, PeriodUnit.WEEK, PeriodUnit.MONTH)


@dataclass(frozen=True)
class Period:
    amount: int
    unit: PeriodUnit

    def offset(self, steps: int) -> timedelta | relativedelta:
        """
        Offset of `steps` periods from the anchor.

        Always computed from the anchor rather than accumulated, so a month
        clamped to the 28th never drags later occurrences off their day.
        """
        n = self.amount * steps
        if self.unit is PeriodUnit.SECONDS:
            return timedelta(seconds=n)
        if self.unit is PeriodUnit.HOURS:
            return timedelta(hours=n)
        if self.unit is PeriodUnit.DAY:
            return relativedelta(days=n)
        if self.unit is PeriodUnit.WEEK:
            return relativedelta(weeks=n)
        return relativedelta(months=n)

    def approx_seconds(self) -> float:
        """Lower-bound length in seconds, used to skip ahead cheaply."""
        per_unit = {
            PeriodUnit.SECONDS: 1,
            PeriodUnit.HOURS:   3600,
            PeriodUnit.DAY:     86400,
            PeriodUnit.WEEK:    7 * 86400,
            PeriodUnit.MONTH:   28 * 86400,
        }
        return float(self.amount * per_unit[self.unit])


class AnchorKind(str, Enum):
    IMPLICIT    = "implicit"      # omitted: the registration instant
    TIME_OF_DAY = "time_of_day"   # bare time, combined with the reference date
    ABSOLUTE    = "absolute"      # full date + time, used literally


@dataclass(frozen=True)
class IntervalSpec:
    """
    One recurring interval.

    repeat_bound is the number of additional recurrences after the first
    firing (R0 = fire once); None means unbounded.
    """
    period: Period
    anchor_kind: AnchorKind = AnchorKind.IMPLICIT
    anchor: Optional[datetime] = None          # set for ABSOLUTE
    time_of_day: Optional[time] = None         # set for TIME_OF_DAY (tz-aware)
    repeat_bound: Optional[int] = None
    raw: str = ""

    def __post_init__(self) -> None:
        if self.anchor_kind is AnchorKind.ABSOLUTE and self.anchor is None:
            raise ValueError("an ABSOLUTE interval needs an anchor")
        if self.anchor_kind is AnchorKind.TIME_OF_DAY and self.time_of_day is None:
            raise ValueError("a TIME_OF_DAY interval needs a time_of_day")
        if self.repeat_bound is not None and self.repeat_bound < 0:
            raise ValueError("repeat_bound must be >= 0")

    @property
    def total_firings(self) -> Optional[int]:
        return None if self.repeat_bound is None else self.repeat_bound + 1


@dataclass(frozen=True)
class ScheduleSpec:
    raw: str
    intervals: tuple[IntervalSpec, ...]

    def __len__(self) -> int:
        return len(self.intervals)
