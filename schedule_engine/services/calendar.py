from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, timedelta

from schedule_engine.errors import ConfigurationError

WEEK_START_DAY = 0  # Monday


@dataclass(frozen=True, slots=True)
class DateRange:
    """Closed-open ``[start, end)`` date range; ``end=None`` is unbounded."""

    start: date
    end: date | None = None

    def contains(self, day: date) -> bool:
        if day < self.start:
            return False
        return self.end is None or day < self.end

    def overlaps(self, other: DateRange) -> bool:
        return overlaps(self, other)

    @property
    def length_days(self) -> float:
        if self.end is None:
            return float("inf")
        return float((self.end - self.start).days)


def day_of_week(day: date) -> int:
    return day.weekday()


def start_of_week(day: date) -> date:
    return day - timedelta(days=(day.weekday() - WEEK_START_DAY) % 7)


def end_of_week(day: date) -> date:
    return start_of_week(day) + timedelta(days=6)


def overlaps(range_a: DateRange, range_b: DateRange) -> bool:
    a_before_b_ends = range_b.end is None or range_a.start < range_b.end
    b_before_a_ends = range_a.end is None or range_b.start < range_a.end
    return a_before_b_ends and b_before_a_ends


def days_between(anchor: date, target: date) -> int:
    return target.toordinal() - anchor.toordinal()


def cycle_day_index(anchor: date, target: date, cycle_length: int) -> int:
    if cycle_length <= 0:
        raise ConfigurationError(
            "INVALID_CYCLE_LENGTH",
            "Rotation cycle length must be a positive number of days.",
            cycle_length=cycle_length,
        )
    # Python's modulo is floored, so days before the anchor wrap into range.
    return days_between(anchor, target) % cycle_length


def iter_days(start: date, end: date) -> Iterator[date]:
    cursor = start
    while cursor < end:
        yield cursor
        cursor += timedelta(days=1)


def inclusive_range(start: date, last_day: date | None) -> DateRange:
    """Range whose last day is itself covered; no last day means open-ended."""
    if last_day is None:
        return DateRange(start=start)
    return DateRange(start=start, end=last_day + timedelta(days=1))
