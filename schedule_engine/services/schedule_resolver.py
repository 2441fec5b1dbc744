from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, time, timedelta
from typing import Any

from schedule_engine.errors import ConfigurationError, DataIntegrityWarning
from schedule_engine.models import (
    AbsenceRequest,
    EmployeeScheduleAssignment,
    ExceptionDayOverride,
    HolidayCalendarDay,
    PeriodType,
    SchedulePeriod,
    ScheduleTemplate,
    ScheduleType,
    WorkDayPattern,
)
from schedule_engine.services.calendar import DateRange, cycle_day_index, inclusive_range
from schedule_engine.services.pattern_store import PatternStore
from schedule_engine.services.time_slots import (
    SlotSpan,
    break_window,
    expected_minutes_for_spans,
    minutes_to_time,
    normalize_slots,
    work_bounds,
)

logger = logging.getLogger("schedule_engine.schedule_resolver")

SOURCE_ABSENCE = "ABSENCE"
SOURCE_OVERRIDE = "OVERRIDE"
SOURCE_TEMPLATE = "TEMPLATE"
SOURCE_NONE = "NONE"
PERIOD_SOURCE_PREFIX = "PERIOD:"

FLAG_CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
FLAG_OVERLAPPING_ASSIGNMENTS = "OVERLAPPING_ASSIGNMENTS"
FLAG_OVERLAPPING_PERIODS = "OVERLAPPING_PERIODS"

_PERIOD_PRIORITY: dict[PeriodType, int] = {
    PeriodType.SPECIAL: 5,
    PeriodType.INTENSIVE: 4,
    PeriodType.HOLIDAY: 3,
    PeriodType.SUMMER: 2,
    PeriodType.REGULAR: 1,
}


@dataclass(frozen=True, slots=True)
class PeriodInfo:
    period_type: PeriodType
    weekly_hours: float | None
    period_id: int | None = None


@dataclass(frozen=True, slots=True)
class EffectiveSchedule:
    day: date
    is_working_day: bool
    source_layer: str
    expected_minutes: int = 0
    is_holiday: bool = False
    holiday_name: str | None = None
    expected_entry_time: time | None = None
    expected_exit_time: time | None = None
    break_start: time | None = None
    break_end: time | None = None
    period: PeriodInfo | None = None
    slots: tuple[SlotSpan, ...] = ()
    absence_type: str | None = None
    weekly_target_minutes: int | None = None
    warnings: tuple[str, ...] = ()

    @property
    def hours_expected(self) -> float:
        return round(self.expected_minutes / 60, 2)

    @property
    def entry_minute(self) -> int | None:
        bounds = work_bounds(self.slots)
        return bounds[0] if bounds else None

    @property
    def exit_minute(self) -> int | None:
        bounds = work_bounds(self.slots)
        return bounds[1] if bounds else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "is_working_day": self.is_working_day,
            "is_holiday": self.is_holiday,
            "holiday_name": self.holiday_name,
            "hours_expected": self.hours_expected,
            "expected_minutes": self.expected_minutes,
            "expected_entry_time": self.expected_entry_time.strftime("%H:%M") if self.expected_entry_time else None,
            "expected_exit_time": self.expected_exit_time.strftime("%H:%M") if self.expected_exit_time else None,
            "break_start": self.break_start.strftime("%H:%M") if self.break_start else None,
            "break_end": self.break_end.strftime("%H:%M") if self.break_end else None,
            "period": (
                {"type": self.period.period_type.value, "weekly_hours": self.period.weekly_hours}
                if self.period
                else None
            ),
            "source_layer": self.source_layer,
            "absence_type": self.absence_type,
            "weekly_target_minutes": self.weekly_target_minutes,
            "warnings": list(self.warnings),
        }


@dataclass
class ScheduleInputs:
    """Configuration rows fetched once for an employee over ``[start_date, end_date)``."""

    org_id: int
    employee_id: int
    start_date: date
    end_date: date
    store: PatternStore
    absences: list[AbsenceRequest] = field(default_factory=list)
    overrides: dict[date, ExceptionDayOverride] = field(default_factory=dict)
    assignments: list[EmployeeScheduleAssignment] = field(default_factory=list)
    holidays: dict[date, HolidayCalendarDay] = field(default_factory=dict)
    _templates: dict[int, ScheduleTemplate | None] = field(default_factory=dict)
    _reported_overlaps: set[tuple[int, ...]] = field(default_factory=set)

    def absence_for(self, day: date) -> AbsenceRequest | None:
        for absence in self.absences:
            if inclusive_range(absence.start_date, absence.end_date).contains(day):
                return absence
        return None

    def override_for(self, day: date) -> ExceptionDayOverride | None:
        return self.overrides.get(day)

    def holiday_for(self, day: date) -> HolidayCalendarDay | None:
        return self.holidays.get(day)

    def template_for(self, assignment: EmployeeScheduleAssignment) -> ScheduleTemplate | None:
        template_id = assignment.template_id
        if template_id not in self._templates:
            self._templates[template_id] = self.store.get_template(org_id=self.org_id, template_id=template_id)
        return self._templates[template_id]

    def assignment_for(self, day: date) -> tuple[EmployeeScheduleAssignment | None, bool]:
        covering = [
            assignment
            for assignment in self.assignments
            if assignment.is_active and inclusive_range(assignment.start_date, assignment.end_date).contains(day)
        ]
        if not covering:
            return None, False
        winner = max(covering, key=lambda item: (item.start_date, item.id or 0))
        if len(covering) == 1:
            return winner, False

        overlap_key = tuple(sorted(item.id or 0 for item in covering))
        if overlap_key not in self._reported_overlaps:
            self._reported_overlaps.add(overlap_key)
            warning = DataIntegrityWarning(
                FLAG_OVERLAPPING_ASSIGNMENTS,
                "More than one active assignment covers the same day.",
                assignment_ids=list(overlap_key),
                chosen_assignment_id=winner.id,
            )
            logger.warning(
                "schedule_data_integrity_warning",
                extra={
                    "org_id": self.org_id,
                    "employee_id": self.employee_id,
                    "day": day.isoformat(),
                    **warning.to_log_extra(),
                },
            )
        return winner, True


@dataclass
class LayerContext:
    inputs: ScheduleInputs
    day: date
    warnings: list[str] = field(default_factory=list)

    def flag(self, code: str) -> None:
        if code not in self.warnings:
            self.warnings.append(code)

    def active_template(self) -> ScheduleTemplate | None:
        assignment, overlapped = self.inputs.assignment_for(self.day)
        if assignment is None:
            return None
        if overlapped:
            self.flag(FLAG_OVERLAPPING_ASSIGNMENTS)
        template = self.inputs.template_for(assignment)
        if template is None:
            raise ConfigurationError(
                "TEMPLATE_NOT_FOUND",
                "Assignment references a template that is missing for this organization.",
                assignment_id=assignment.id,
                template_id=assignment.template_id,
            )
        return template


LayerResolver = Callable[[LayerContext], EffectiveSchedule | None]


def _non_working(day: date, source_layer: str, **kwargs: Any) -> EffectiveSchedule:
    return EffectiveSchedule(day=day, is_working_day=False, source_layer=source_layer, **kwargs)


def _from_spans(
    day: date,
    source_layer: str,
    spans: list[SlotSpan],
    *,
    period: PeriodInfo | None = None,
    flexible_minutes: int | None = None,
    weekly_target_minutes: int | None = None,
) -> EffectiveSchedule:
    bounds = work_bounds(spans)
    if bounds is None:
        if flexible_minutes:
            return EffectiveSchedule(
                day=day,
                is_working_day=True,
                source_layer=source_layer,
                expected_minutes=flexible_minutes,
                period=period,
                weekly_target_minutes=weekly_target_minutes,
            )
        return _non_working(day, source_layer, period=period)

    window = break_window(spans)
    return EffectiveSchedule(
        day=day,
        is_working_day=True,
        source_layer=source_layer,
        expected_minutes=expected_minutes_for_spans(spans),
        expected_entry_time=minutes_to_time(bounds[0]),
        expected_exit_time=minutes_to_time(bounds[1]),
        break_start=minutes_to_time(window[0]) if window else None,
        break_end=minutes_to_time(window[1]) if window else None,
        period=period,
        slots=tuple(spans),
        weekly_target_minutes=weekly_target_minutes,
    )


def _pattern_for_day(
    template: ScheduleTemplate,
    patterns: Sequence[WorkDayPattern],
    day: date,
) -> WorkDayPattern | None:
    if template.schedule_type == ScheduleType.ROTATION:
        if template.anchor_date is None or not template.cycle_length_days:
            raise ConfigurationError(
                "ROTATION_NOT_CONFIGURED",
                "Rotation templates need an anchor date and a cycle length.",
                template_id=template.id,
            )
        index = cycle_day_index(template.anchor_date, day, template.cycle_length_days)
        return next((item for item in patterns if item.cycle_day_index == index), None)

    weekday = day.weekday()
    return next((item for item in patterns if item.day_of_week == weekday), None)


def _schedule_from_pattern(
    day: date,
    source_layer: str,
    template: ScheduleTemplate,
    patterns: Sequence[WorkDayPattern],
    period: PeriodInfo,
) -> EffectiveSchedule:
    pattern = _pattern_for_day(template, patterns, day)
    if pattern is None or not pattern.is_working_day:
        return _non_working(day, source_layer, period=period)

    flexible_minutes: int | None = None
    weekly_target_minutes: int | None = None
    if template.schedule_type == ScheduleType.FLEXIBLE:
        weekly_hours = period.weekly_hours if period.weekly_hours is not None else template.weekly_hours
        weekly_target_minutes = int(round((weekly_hours or 0) * 60))
        working_days = sum(1 for item in patterns if item.is_working_day)
        if working_days:
            flexible_minutes = weekly_target_minutes // working_days

    return _from_spans(
        day,
        source_layer,
        normalize_slots(pattern.time_slots),
        period=period,
        flexible_minutes=flexible_minutes,
        weekly_target_minutes=weekly_target_minutes,
    )


def _period_sort_key(period: SchedulePeriod) -> tuple[int, float, float, int]:
    length = DateRange(period.start_date, period.end_date).length_days
    created = period.created_at.timestamp() if period.created_at is not None else float("-inf")
    return (_PERIOD_PRIORITY.get(period.period_type, 0), -length, created, period.id or 0)


def select_period(candidates: Sequence[SchedulePeriod]) -> SchedulePeriod:
    """Highest type priority, then shortest range, then most recently created."""
    return max(candidates, key=_period_sort_key)


def absence_layer(ctx: LayerContext) -> EffectiveSchedule | None:
    absence = ctx.inputs.absence_for(ctx.day)
    if absence is None:
        return None
    return _non_working(ctx.day, SOURCE_ABSENCE, absence_type=absence.absence_type)


def override_layer(ctx: LayerContext) -> EffectiveSchedule | None:
    override = ctx.inputs.override_for(ctx.day)
    if override is None:
        return None
    if not override.is_working_day:
        return _non_working(ctx.day, SOURCE_OVERRIDE)
    return _from_spans(ctx.day, SOURCE_OVERRIDE, normalize_slots(override.time_slots))


def period_layer(ctx: LayerContext) -> EffectiveSchedule | None:
    template = ctx.active_template()
    if template is None:
        return None

    candidates = [
        period for period in template.periods if DateRange(period.start_date, period.end_date).contains(ctx.day)
    ]
    if not candidates:
        return None

    winner = select_period(candidates)
    same_type = [period for period in candidates if period.period_type == winner.period_type]
    if len(same_type) > 1:
        ctx.flag(FLAG_OVERLAPPING_PERIODS)
        logger.warning(
            "schedule_period_overlap",
            extra={
                "org_id": ctx.inputs.org_id,
                "employee_id": ctx.inputs.employee_id,
                "day": ctx.day.isoformat(),
                "template_id": template.id,
                "period_ids": sorted(period.id or 0 for period in same_type),
                "chosen_period_id": winner.id,
            },
        )

    info = PeriodInfo(
        period_type=winner.period_type,
        weekly_hours=winner.weekly_hours if winner.weekly_hours is not None else template.weekly_hours,
        period_id=winner.id,
    )
    return _schedule_from_pattern(
        ctx.day,
        f"{PERIOD_SOURCE_PREFIX}{winner.period_type.value}",
        template,
        winner.patterns,
        info,
    )


def template_layer(ctx: LayerContext) -> EffectiveSchedule | None:
    template = ctx.active_template()
    if template is None:
        return None
    if not template.default_patterns:
        raise ConfigurationError(
            "TEMPLATE_WITHOUT_PATTERNS",
            "No period covers the day and the template has no default pattern.",
            template_id=template.id,
        )
    info = PeriodInfo(period_type=PeriodType.REGULAR, weekly_hours=template.weekly_hours)
    return _schedule_from_pattern(ctx.day, SOURCE_TEMPLATE, template, template.default_patterns, info)


DEFAULT_LAYERS: tuple[LayerResolver, ...] = (absence_layer, override_layer, period_layer, template_layer)


def apply_holiday_overlay(schedule: EffectiveSchedule, holiday: HolidayCalendarDay | None) -> EffectiveSchedule:
    if holiday is None:
        return schedule
    if schedule.source_layer == SOURCE_OVERRIDE:
        return replace(schedule, is_holiday=True, holiday_name=holiday.name)
    return replace(
        schedule,
        is_working_day=False,
        is_holiday=True,
        holiday_name=holiday.name,
        expected_minutes=0,
        expected_entry_time=None,
        expected_exit_time=None,
        break_start=None,
        break_end=None,
        slots=(),
    )


class ScheduleResolver:
    def __init__(self, store: PatternStore, *, layers: Sequence[LayerResolver] = DEFAULT_LAYERS):
        self.store = store
        self.layers = tuple(layers)

    def load_inputs(self, *, org_id: int, employee_id: int, start_date: date, end_date: date) -> ScheduleInputs:
        scope = {"org_id": org_id, "employee_id": employee_id, "start_date": start_date, "end_date": end_date}
        overrides: dict[date, ExceptionDayOverride] = {}
        for override in self.store.list_overrides(**scope):
            current = overrides.get(override.day_date)
            if current is None or (override.id or 0) > (current.id or 0):
                overrides[override.day_date] = override

        return ScheduleInputs(
            org_id=org_id,
            employee_id=employee_id,
            start_date=start_date,
            end_date=end_date,
            store=self.store,
            absences=self.store.list_absences(**scope),
            overrides=overrides,
            assignments=self.store.list_assignments(**scope),
            holidays={
                holiday.day_date: holiday
                for holiday in self.store.list_holidays(org_id=org_id, start_date=start_date, end_date=end_date)
            },
        )

    def resolve_with_inputs(self, inputs: ScheduleInputs, day: date) -> EffectiveSchedule:
        ctx = LayerContext(inputs=inputs, day=day)
        result: EffectiveSchedule | None = None
        try:
            for layer in self.layers:
                result = layer(ctx)
                if result is not None:
                    break
        except ConfigurationError as exc:
            ctx.flag(FLAG_CONFIGURATION_ERROR)
            logger.warning(
                "schedule_configuration_error",
                extra={
                    "org_id": inputs.org_id,
                    "employee_id": inputs.employee_id,
                    "day": day.isoformat(),
                    "error_code": exc.code,
                    **exc.details,
                },
            )
            result = None

        if result is None:
            result = _non_working(day, SOURCE_NONE)
        result = apply_holiday_overlay(result, inputs.holiday_for(day))
        if ctx.warnings:
            result = replace(result, warnings=tuple(ctx.warnings))
        return result

    def resolve(self, *, org_id: int, employee_id: int, day: date) -> EffectiveSchedule:
        inputs = self.load_inputs(
            org_id=org_id,
            employee_id=employee_id,
            start_date=day,
            end_date=day + timedelta(days=1),
        )
        return self.resolve_with_inputs(inputs, day)
