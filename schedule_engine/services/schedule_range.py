from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from schedule_engine.services.calendar import end_of_week, iter_days, start_of_week
from schedule_engine.services.schedule_resolver import EffectiveSchedule, PeriodInfo, ScheduleResolver

DEFAULT_PERIOD_CHANGE_HORIZON_DAYS = 366


@dataclass(frozen=True, slots=True)
class WeekSchedule:
    week_start: date
    week_end: date
    days: tuple[EffectiveSchedule, ...]

    @property
    def total_expected_minutes(self) -> int:
        return sum(day.expected_minutes for day in self.days)

    @property
    def total_expected_hours(self) -> float:
        return round(self.total_expected_minutes / 60, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "days": [day.to_dict() for day in self.days],
            "total_expected_minutes": self.total_expected_minutes,
            "total_expected_hours": self.total_expected_hours,
        }


@dataclass(frozen=True, slots=True)
class PeriodChange:
    day: date
    from_period: PeriodInfo | None
    to_period: PeriodInfo | None


class ScheduleRangeExpander:
    """Resolves consecutive days from a single batched load of configuration rows.

    Each layer is read once for the whole range and templates are fetched
    once per distinct id, then every day goes through the same code path as
    ``ScheduleResolver.resolve``.
    """

    def __init__(self, resolver: ScheduleResolver):
        self.resolver = resolver

    def resolve_range(
        self,
        *,
        org_id: int,
        employee_id: int,
        start_date: date,
        end_date: date,
    ) -> list[EffectiveSchedule]:
        if end_date <= start_date:
            return []
        inputs = self.resolver.load_inputs(
            org_id=org_id,
            employee_id=employee_id,
            start_date=start_date,
            end_date=end_date,
        )
        return [self.resolver.resolve_with_inputs(inputs, day) for day in iter_days(start_date, end_date)]

    def resolve_week(self, *, org_id: int, employee_id: int, day: date) -> WeekSchedule:
        week_start = start_of_week(day)
        week_end = end_of_week(day)
        days = self.resolve_range(
            org_id=org_id,
            employee_id=employee_id,
            start_date=week_start,
            end_date=week_end + timedelta(days=1),
        )
        return WeekSchedule(week_start=week_start, week_end=week_end, days=tuple(days))

    def expected_minutes_between(
        self,
        *,
        org_id: int,
        employee_id: int,
        start_date: date,
        end_date: date,
    ) -> int:
        return sum(
            item.expected_minutes
            for item in self.resolve_range(
                org_id=org_id,
                employee_id=employee_id,
                start_date=start_date,
                end_date=end_date,
            )
        )

    def next_period_change(
        self,
        *,
        org_id: int,
        employee_id: int,
        from_date: date,
        horizon_days: int = DEFAULT_PERIOD_CHANGE_HORIZON_DAYS,
    ) -> PeriodChange | None:
        days = self.resolve_range(
            org_id=org_id,
            employee_id=employee_id,
            start_date=from_date,
            end_date=from_date + timedelta(days=max(1, horizon_days)),
        )
        current: PeriodInfo | None = None
        for item in days:
            # Absence and override days carry no period and never mark a change.
            if item.period is None or item.period == current:
                continue
            if current is None:
                current = item.period
                continue
            return PeriodChange(day=item.day, from_period=current, to_period=item.period)
        return None
