from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from schedule_engine.models import TimeEntryType
from schedule_engine.services.org_config import OrganizationPolicy
from schedule_engine.services.punch_store import PunchStore
from schedule_engine.services.schedule_resolver import EffectiveSchedule
from schedule_engine.services.time_slots import unpaid_break_intervals

STATUS_COMPLETED = "COMPLETED"
STATUS_INCOMPLETE = "INCOMPLETE"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_ABSENT = "ABSENT"
STATUS_NON_WORKDAY = "NON_WORKDAY"
STATUS_HOLIDAY = "HOLIDAY"

FLAG_WORK_ON_NON_WORKDAY = "WORK_ON_NON_WORKDAY"

WARNING_LATE_CLOCK_IN = "LATE_CLOCK_IN"
WARNING_EARLY_CLOCK_IN = "EARLY_CLOCK_IN"
WARNING_EARLY_CLOCK_OUT = "EARLY_CLOCK_OUT"
WARNING_LATE_CLOCK_OUT = "LATE_CLOCK_OUT"
WARNING_NON_WORKDAY_CLOCK_IN = "NON_WORKDAY_CLOCK_IN"

# How far past local midnight a shift started today may still be closing.
CARRY_OVER_HOURS = 18


class PunchLike(Protocol):
    entry_type: TimeEntryType
    ts_utc: datetime
    is_cancelled: bool


@dataclass(frozen=True, slots=True)
class ClockInWindow:
    earliest: datetime
    expected: datetime
    latest: datetime


@dataclass(frozen=True, slots=True)
class ClockOutWindow:
    earliest: datetime
    expected: datetime


@dataclass(frozen=True, slots=True)
class PunchValidation:
    is_outside_window: bool
    is_absent: bool
    difference_minutes: int | None
    is_late: bool = False
    is_early: bool = False


@dataclass(frozen=True, slots=True)
class TimeEntryCheck:
    allowed: bool
    warnings: tuple[str, ...]
    deviation_minutes: int | None


@dataclass(frozen=True, slots=True)
class DayCompliance:
    day: date
    expected_minutes: int
    worked_minutes: int
    compliance_ratio: float
    status: str
    has_clocked_in: bool
    has_clocked_out: bool
    is_absent: bool
    is_open: bool = False
    flags: tuple[str, ...] = ()
    clock_in_validation: PunchValidation | None = None
    clock_out_validation: PunchValidation | None = None

    @property
    def hours_expected(self) -> float:
        return round(self.expected_minutes / 60, 2)

    @property
    def hours_worked(self) -> float:
        return round(self.worked_minutes / 60, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "hours_expected": self.hours_expected,
            "hours_worked": self.hours_worked,
            "expected_minutes": self.expected_minutes,
            "worked_minutes": self.worked_minutes,
            "compliance_ratio": round(self.compliance_ratio, 4),
            "status": self.status,
            "has_clocked_in": self.has_clocked_in,
            "has_clocked_out": self.has_clocked_out,
            "is_absent": self.is_absent,
            "flags": list(self.flags),
            "difference_minutes": (
                self.clock_in_validation.difference_minutes if self.clock_in_validation else None
            ),
        }


def local_datetime(day: date, minute: int, tz: ZoneInfo) -> datetime:
    """Wall-clock ``minute`` (may exceed 1440) after local midnight of ``day``."""
    return datetime.combine(day, time.min, tzinfo=tz) + timedelta(minutes=minute)


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def difference_minutes(actual: datetime, expected: datetime) -> int:
    delta = actual.astimezone(timezone.utc) - expected.astimezone(timezone.utc)
    return int(round(delta.total_seconds() / 60))


def expected_entry_at(schedule: EffectiveSchedule, tz: ZoneInfo) -> datetime | None:
    if not schedule.is_working_day or schedule.entry_minute is None:
        return None
    return local_datetime(schedule.day, schedule.entry_minute, tz)


def expected_exit_at(schedule: EffectiveSchedule, tz: ZoneInfo) -> datetime | None:
    if not schedule.is_working_day or schedule.exit_minute is None:
        return None
    return local_datetime(schedule.day, schedule.exit_minute, tz)


def build_clock_in_window(schedule: EffectiveSchedule, tolerance_minutes: int, tz: ZoneInfo) -> ClockInWindow | None:
    expected = expected_entry_at(schedule, tz)
    if expected is None:
        return None
    tolerance = timedelta(minutes=tolerance_minutes)
    return ClockInWindow(earliest=expected - tolerance, expected=expected, latest=expected + tolerance)


def build_clock_out_window(schedule: EffectiveSchedule, tolerance_minutes: int, tz: ZoneInfo) -> ClockOutWindow | None:
    expected = expected_exit_at(schedule, tz)
    if expected is None:
        return None
    return ClockOutWindow(earliest=expected - timedelta(minutes=tolerance_minutes), expected=expected)


def validate_clock_in(window: ClockInWindow, punch_at: datetime | None, now_utc: datetime) -> PunchValidation:
    if punch_at is None:
        return PunchValidation(
            is_outside_window=False,
            is_absent=now_utc > window.latest,
            difference_minutes=None,
        )
    is_early = punch_at < window.earliest
    is_late = punch_at > window.latest
    return PunchValidation(
        is_outside_window=is_early or is_late,
        is_absent=False,
        difference_minutes=difference_minutes(punch_at, window.expected),
        is_late=is_late,
        is_early=is_early,
    )


def validate_clock_out(window: ClockOutWindow, punch_at: datetime | None) -> PunchValidation:
    if punch_at is None:
        return PunchValidation(is_outside_window=False, is_absent=False, difference_minutes=None)
    is_early = punch_at < window.earliest
    return PunchValidation(
        is_outside_window=is_early,
        is_absent=False,
        difference_minutes=difference_minutes(punch_at, window.expected),
        is_early=is_early,
    )


def validate_time_entry(
    schedule: EffectiveSchedule,
    entry_type: TimeEntryType,
    punch_at: datetime,
    policy: OrganizationPolicy,
) -> TimeEntryCheck:
    """Warnings for a punch about to be recorded, using the early/late tolerances."""
    tz = policy.tz
    if not schedule.is_working_day:
        warnings: tuple[str, ...] = ()
        if entry_type == TimeEntryType.CLOCK_IN:
            warnings = (WARNING_NON_WORKDAY_CLOCK_IN,)
        return TimeEntryCheck(
            allowed=policy.non_workday_clock_in_allowed or entry_type != TimeEntryType.CLOCK_IN,
            warnings=warnings,
            deviation_minutes=None,
        )

    found: list[str] = []
    deviation: int | None = None
    if entry_type == TimeEntryType.CLOCK_IN:
        expected = expected_entry_at(schedule, tz)
        if expected is not None:
            deviation = difference_minutes(punch_at, expected)
            if deviation > policy.tolerance_minutes:
                found.append(WARNING_LATE_CLOCK_IN)
            elif deviation < -policy.early_clock_in_tolerance_minutes:
                found.append(WARNING_EARLY_CLOCK_IN)
    elif entry_type == TimeEntryType.CLOCK_OUT:
        expected = expected_exit_at(schedule, tz)
        if expected is not None:
            deviation = difference_minutes(punch_at, expected)
            if deviation < -policy.tolerance_minutes:
                found.append(WARNING_EARLY_CLOCK_OUT)
            elif deviation > policy.late_clock_out_tolerance_minutes:
                found.append(WARNING_LATE_CLOCK_OUT)
    return TimeEntryCheck(allowed=True, warnings=tuple(found), deviation_minutes=deviation)


def _active_sorted(entries: Iterable[PunchLike]) -> list[PunchLike]:
    return sorted((entry for entry in entries if not entry.is_cancelled), key=lambda entry: entry.ts_utc)


def entries_for_day(entries: Iterable[PunchLike], day: date, tz: ZoneInfo) -> list[PunchLike]:
    """Punches belonging to shifts that started on ``day``.

    Closing punches at the start of the day belong to the previous shift;
    closing punches after midnight are kept while a shift is still open.
    """
    start_utc, end_utc = local_day_bounds(day, tz)
    selected: list[PunchLike] = []
    is_open = False
    for entry in _active_sorted(entries):
        if entry.ts_utc < start_utc:
            continue
        if entry.ts_utc >= end_utc:
            if not is_open or entry.entry_type == TimeEntryType.CLOCK_IN:
                break
            selected.append(entry)
            if entry.entry_type == TimeEntryType.CLOCK_OUT:
                break
            continue
        if entry.entry_type == TimeEntryType.CLOCK_IN:
            is_open = True
        elif not is_open and not any(item.entry_type == TimeEntryType.CLOCK_IN for item in selected):
            continue
        elif entry.entry_type == TimeEntryType.CLOCK_OUT:
            is_open = False
        selected.append(entry)
    return selected


def _paired_intervals(
    entries: Sequence[PunchLike],
    opening: TimeEntryType,
    closing: TimeEntryType,
    open_until: datetime | None,
) -> list[tuple[datetime, datetime]]:
    intervals: list[tuple[datetime, datetime]] = []
    opened_at: datetime | None = None
    for entry in entries:
        if entry.entry_type == opening and opened_at is None:
            opened_at = entry.ts_utc
        elif entry.entry_type == closing and opened_at is not None:
            if entry.ts_utc > opened_at:
                intervals.append((opened_at, entry.ts_utc))
            opened_at = None
    if opened_at is not None and open_until is not None and open_until > opened_at:
        intervals.append((opened_at, open_until))
    return intervals


def _overlap_seconds(a: tuple[datetime, datetime], b: tuple[datetime, datetime]) -> float:
    start = max(a[0], b[0])
    end = min(a[1], b[1])
    return max(0.0, (end - start).total_seconds())


def has_open_clock_in(entries: Iterable[PunchLike]) -> bool:
    is_open = False
    for entry in _active_sorted(entries):
        if entry.entry_type == TimeEntryType.CLOCK_IN:
            is_open = True
        elif entry.entry_type == TimeEntryType.CLOCK_OUT:
            is_open = False
    return is_open


def compute_worked_minutes(
    entries: Iterable[PunchLike],
    schedule: EffectiveSchedule,
    tz: ZoneInfo,
    *,
    now_utc: datetime | None = None,
) -> int:
    """Clocked time minus breaks.

    Recorded break pairs are deducted when present; otherwise the scheduled
    unpaid breaks that fall inside the clocked intervals are deducted.
    """
    ordered = _active_sorted(entries)
    worked = _paired_intervals(ordered, TimeEntryType.CLOCK_IN, TimeEntryType.CLOCK_OUT, now_utc)
    if not worked:
        return 0

    total_seconds = sum((end - start).total_seconds() for start, end in worked)
    breaks = _paired_intervals(ordered, TimeEntryType.BREAK_START, TimeEntryType.BREAK_END, None)
    if not breaks and schedule.slots:
        breaks = [
            (
                local_datetime(schedule.day, start, tz).astimezone(timezone.utc),
                local_datetime(schedule.day, end, tz).astimezone(timezone.utc),
            )
            for start, end in unpaid_break_intervals(schedule.slots)
        ]

    deducted = sum(_overlap_seconds(interval, pause) for interval in worked for pause in breaks)
    return max(0, int((total_seconds - deducted) // 60))


def status_for_ratio(ratio: float, *, policy: OrganizationPolicy, is_open: bool) -> str:
    if ratio >= policy.complete_threshold:
        return STATUS_COMPLETED
    if is_open:
        return STATUS_IN_PROGRESS
    if ratio < policy.incomplete_threshold:
        return STATUS_INCOMPLETE
    return STATUS_IN_PROGRESS


def evaluate_day_compliance(
    schedule: EffectiveSchedule,
    entries: Iterable[PunchLike],
    policy: OrganizationPolicy,
    now_utc: datetime,
) -> DayCompliance:
    tz = policy.tz
    active = _active_sorted(entries)
    clock_ins = [entry for entry in active if entry.entry_type == TimeEntryType.CLOCK_IN]
    clock_outs = [entry for entry in active if entry.entry_type == TimeEntryType.CLOCK_OUT]
    is_open = has_open_clock_in(active)
    open_until: datetime | None = None
    if is_open:
        # An open shift counts until now, but never past the carry-over horizon.
        horizon = local_day_bounds(schedule.day, tz)[1] + timedelta(hours=CARRY_OVER_HOURS)
        open_until = min(now_utc, horizon)
    worked = compute_worked_minutes(active, schedule, tz, now_utc=open_until)

    if not schedule.is_working_day:
        return DayCompliance(
            day=schedule.day,
            expected_minutes=0,
            worked_minutes=worked,
            compliance_ratio=0.0,
            status=STATUS_HOLIDAY if schedule.is_holiday else STATUS_NON_WORKDAY,
            has_clocked_in=bool(clock_ins),
            has_clocked_out=bool(clock_outs),
            is_absent=False,
            is_open=is_open,
            flags=(FLAG_WORK_ON_NON_WORKDAY,) if active else (),
        )

    in_window = build_clock_in_window(schedule, policy.tolerance_minutes, tz)
    out_window = build_clock_out_window(schedule, policy.tolerance_minutes, tz)
    first_in = clock_ins[0].ts_utc if clock_ins else None
    last_out = clock_outs[-1].ts_utc if clock_outs else None
    in_validation = validate_clock_in(in_window, first_in, now_utc) if in_window else None
    out_validation = validate_clock_out(out_window, last_out) if out_window and last_out else None

    expected = schedule.expected_minutes
    ratio = max(0.0, worked / expected) if expected > 0 else 0.0

    is_absent = False
    if not clock_ins:
        if in_window is not None:
            deadline = in_window.latest
        else:
            deadline = local_day_bounds(schedule.day, tz)[1]
        is_absent = now_utc > deadline + timedelta(minutes=policy.absence_margin_minutes)
        status = STATUS_ABSENT if is_absent else STATUS_IN_PROGRESS
    else:
        status = status_for_ratio(ratio, policy=policy, is_open=is_open)

    return DayCompliance(
        day=schedule.day,
        expected_minutes=expected,
        worked_minutes=worked,
        compliance_ratio=ratio,
        status=status,
        has_clocked_in=bool(clock_ins),
        has_clocked_out=bool(clock_outs),
        is_absent=is_absent,
        is_open=is_open,
        clock_in_validation=in_validation,
        clock_out_validation=out_validation,
    )


def evaluate_stored_day(
    punches: PunchStore,
    schedule: EffectiveSchedule,
    *,
    org_id: int,
    employee_id: int,
    policy: OrganizationPolicy,
    now_utc: datetime,
) -> DayCompliance:
    tz = policy.tz
    start_utc, end_utc = local_day_bounds(schedule.day, tz)
    entries = punches.list_entries(
        org_id=org_id,
        employee_id=employee_id,
        start_utc=start_utc,
        end_utc=end_utc + timedelta(hours=CARRY_OVER_HOURS),
    )
    return evaluate_day_compliance(schedule, entries_for_day(entries, schedule.day, tz), policy, now_utc)


def summary_values(schedule: EffectiveSchedule, result: DayCompliance) -> dict[str, Any]:
    return {
        "expected_minutes": result.expected_minutes,
        "worked_minutes": result.worked_minutes,
        "compliance_ratio": round(result.compliance_ratio, 4),
        "status": result.status,
        "source_layer": schedule.source_layer,
        "flags": sorted({*schedule.warnings, *result.flags}),
    }
