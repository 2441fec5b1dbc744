from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import Field

from schedule_engine.models import AlertSeverity, TimeEntryType
from schedule_engine.services.alerts import ALERT_AUTO_CLOSED, ALERT_AUTO_CLOSED_SAFETY, ALERT_INCOMPLETE_ENTRY
from schedule_engine.services.compliance import evaluate_stored_day, expected_exit_at, summary_values
from schedule_engine.services.job_runtime import (
    JobResult,
    JobServices,
    OrgJobPayload,
    SweepJob,
    UnitOfWork,
    clamp,
    default_unit_of_work,
    local_midnight_utc,
)
from schedule_engine.services.org_config import OrganizationPolicy
from schedule_engine.services.punch_store import (
    AUTO_CLOSE_REASON_SAFETY,
    AUTO_CLOSE_REASON_SCHEDULE_END,
    DATA_QUALITY_ESTIMATED,
    DATA_QUALITY_LOW,
    RESOLUTION_AUTO_CLOSED_SAFETY,
    RESOLUTION_AUTO_CLOSED_SCHEDULE_END,
    RESOLUTION_UNRESOLVED_MISSING_CLOCK_OUT,
    OpenPunch,
)
from schedule_engine.services.schedule_resolver import EffectiveSchedule

logger = logging.getLogger("schedule_engine.jobs.open_punch")

JOB_TYPE_OPEN_PUNCH_ROLLOVER = "open_punch_rollover"
JOB_TYPE_OPEN_PUNCH_SAFETY_CLOSE = "open_punch_safety_close"

ROLLOVER_MAX_LOOKBACK_DAYS = 14
SAFETY_CLOSE_MAX_LOOKBACK_DAYS = 7
SAFETY_CLOSE_MAX_OPEN_HOURS_CAP = 72


class RolloverPayload(OrgJobPayload):
    lookback_days: int | None = Field(default=None)


class SafetyClosePayload(OrgJobPayload):
    lookback_days: int | None = Field(default=None)
    max_open_hours: int | None = Field(default=None)


def _close_open_punch(
    services: JobServices,
    punch: OpenPunch,
    *,
    close_at: datetime,
    reason: str,
    note: str,
) -> None:
    open_break = services.punches.find_open_break(punch)
    if open_break is not None:
        services.punches.create_time_entry(
            org_id=punch.org_id,
            employee_id=punch.employee_id,
            entry_type=TimeEntryType.BREAK_END,
            ts_utc=max(close_at, open_break.ts_utc),
            is_automatic=True,
            auto_close_reason=reason,
            note=note,
        )
    services.punches.create_time_entry(
        org_id=punch.org_id,
        employee_id=punch.employee_id,
        entry_type=TimeEntryType.CLOCK_OUT,
        ts_utc=close_at,
        is_automatic=True,
        auto_close_reason=reason,
        note=note,
    )


def _record_summary(
    services: JobServices,
    punch: OpenPunch,
    *,
    schedule: EffectiveSchedule,
    policy: OrganizationPolicy,
    now_utc: datetime,
    resolution_status: str,
    data_quality: str,
) -> dict[str, Any]:
    compliance = evaluate_stored_day(
        services.punches,
        schedule,
        org_id=punch.org_id,
        employee_id=punch.employee_id,
        policy=policy,
        now_utc=now_utc,
    )
    values = summary_values(schedule, compliance)
    values.update(resolution_status=resolution_status, data_quality=data_quality)
    services.punches.upsert_workday_summary(
        org_id=punch.org_id,
        employee_id=punch.employee_id,
        day=schedule.day,
        values=values,
    )
    return values


class OpenPunchRolloverJob(SweepJob[RolloverPayload]):
    """Settles clock-ins left open on previous days.

    A shift whose scheduled exit has passed is closed at that exit; anything
    else is marked unresolved and raised to the employee's manager.
    """

    job_type = JOB_TYPE_OPEN_PUNCH_ROLLOVER
    payload_model = RolloverPayload
    stage = 1

    def execute(self, payload: RolloverPayload, *, now_utc: datetime | None = None) -> JobResult:
        now = self.now(now_utc)
        policy = self.load_policy(payload.org_id)
        lookback_days = clamp(payload.lookback_days or policy.rollover_lookback_days, 1, ROLLOVER_MAX_LOOKBACK_DAYS)
        today_start = local_midnight_utc(now, policy.tz)

        with self.unit_of_work() as services:
            open_punches = services.punches.list_open_clock_ins(
                org_id=payload.org_id,
                since_utc=today_start - timedelta(days=lookback_days),
                before_utc=today_start,
            )

        def _handle(services: JobServices, punch: OpenPunch) -> bool:
            return self._settle(services, punch, policy=policy, now_utc=now)

        return self.run_employee_units(
            org_id=payload.org_id,
            units=open_punches,
            handler=_handle,
            employee_id_of=lambda punch: punch.employee_id,
            details={"lookback_days": lookback_days},
        )

    def _settle(self, services: JobServices, punch: OpenPunch, *, policy: OrganizationPolicy, now_utc: datetime) -> bool:
        if services.punches.find_closing_entry(punch) is not None:
            return False

        tz = policy.tz
        schedule = services.resolver().resolve(
            org_id=punch.org_id,
            employee_id=punch.employee_id,
            day=punch.ts_utc.astimezone(tz).date(),
        )
        exit_at = expected_exit_at(schedule, tz)
        can_close = (
            policy.rollover_auto_close_enabled
            and exit_at is not None
            and exit_at > punch.ts_utc
            and exit_at + timedelta(minutes=policy.auto_close_tolerance_minutes) <= now_utc
        )

        if can_close and exit_at is not None:
            close_at = exit_at.astimezone(timezone.utc)
            _close_open_punch(
                services,
                punch,
                close_at=close_at,
                reason=AUTO_CLOSE_REASON_SCHEDULE_END,
                note="Closed automatically at the scheduled end of the shift",
            )
            values = _record_summary(
                services,
                punch,
                schedule=schedule,
                policy=policy,
                now_utc=now_utc,
                resolution_status=RESOLUTION_AUTO_CLOSED_SCHEDULE_END,
                data_quality=DATA_QUALITY_ESTIMATED,
            )
            services.alerts.create_alert(
                org_id=punch.org_id,
                alert_type=ALERT_AUTO_CLOSED,
                severity=AlertSeverity.INFO,
                employee_id=punch.employee_id,
                day=schedule.day,
                metadata={
                    "time_entry_id": punch.id,
                    "clock_in_at": punch.ts_utc.isoformat(),
                    "closed_at": close_at.isoformat(),
                    "worked_minutes": values["worked_minutes"],
                },
            )
            logger.info(
                "open_punch_auto_closed",
                extra={
                    "org_id": punch.org_id,
                    "employee_id": punch.employee_id,
                    "day": schedule.day.isoformat(),
                    "time_entry_id": punch.id,
                },
            )
            return True

        _record_summary(
            services,
            punch,
            schedule=schedule,
            policy=policy,
            now_utc=now_utc,
            resolution_status=RESOLUTION_UNRESOLVED_MISSING_CLOCK_OUT,
            data_quality=DATA_QUALITY_LOW,
        )
        services.alerts.create_alert(
            org_id=punch.org_id,
            alert_type=ALERT_INCOMPLETE_ENTRY,
            severity=AlertSeverity.WARNING,
            employee_id=punch.employee_id,
            day=schedule.day,
            metadata={
                "time_entry_id": punch.id,
                "clock_in_at": punch.ts_utc.isoformat(),
                "source_layer": schedule.source_layer,
            },
        )
        return False


class OpenPunchSafetyCloseJob(SweepJob[SafetyClosePayload]):
    job_type = JOB_TYPE_OPEN_PUNCH_SAFETY_CLOSE
    payload_model = SafetyClosePayload
    stage = 1

    def execute(self, payload: SafetyClosePayload, *, now_utc: datetime | None = None) -> JobResult:
        now = self.now(now_utc)
        policy = self.load_policy(payload.org_id)
        lookback_days = clamp(
            payload.lookback_days or policy.safety_close_lookback_days,
            1,
            SAFETY_CLOSE_MAX_LOOKBACK_DAYS,
        )
        max_open_hours = clamp(
            payload.max_open_hours or policy.safety_close_max_open_hours,
            1,
            SAFETY_CLOSE_MAX_OPEN_HOURS_CAP,
        )
        max_open = timedelta(hours=max_open_hours)

        with self.unit_of_work() as services:
            open_punches = services.punches.list_open_clock_ins(
                org_id=payload.org_id,
                since_utc=now - timedelta(days=lookback_days),
                before_utc=now - max_open,
            )

        def _handle(services: JobServices, punch: OpenPunch) -> bool:
            if services.punches.find_closing_entry(punch) is not None:
                return False
            close_at = min(punch.ts_utc + max_open, now)
            _close_open_punch(
                services,
                punch,
                close_at=close_at,
                reason=AUTO_CLOSE_REASON_SAFETY,
                note=f"Force-closed after {max_open_hours}h open",
            )
            schedule = services.resolver().resolve(
                org_id=punch.org_id,
                employee_id=punch.employee_id,
                day=punch.ts_utc.astimezone(policy.tz).date(),
            )
            _record_summary(
                services,
                punch,
                schedule=schedule,
                policy=policy,
                now_utc=now,
                resolution_status=RESOLUTION_AUTO_CLOSED_SAFETY,
                data_quality=DATA_QUALITY_ESTIMATED,
            )
            services.alerts.create_alert(
                org_id=punch.org_id,
                alert_type=ALERT_AUTO_CLOSED_SAFETY,
                severity=AlertSeverity.CRITICAL,
                employee_id=punch.employee_id,
                day=schedule.day,
                metadata={
                    "time_entry_id": punch.id,
                    "clock_in_at": punch.ts_utc.isoformat(),
                    "closed_at": close_at.isoformat(),
                    "max_open_hours": max_open_hours,
                },
            )
            logger.warning(
                "open_punch_safety_closed",
                extra={
                    "org_id": punch.org_id,
                    "employee_id": punch.employee_id,
                    "time_entry_id": punch.id,
                    "max_open_hours": max_open_hours,
                },
            )
            return True

        return self.run_employee_units(
            org_id=payload.org_id,
            units=open_punches,
            handler=_handle,
            employee_id_of=lambda punch: punch.employee_id,
            details={"lookback_days": lookback_days, "max_open_hours": max_open_hours},
        )


def process_open_punch_rollover(
    payload: dict[str, Any],
    *,
    unit_of_work: UnitOfWork | None = None,
    now_utc: datetime | None = None,
) -> JobResult:
    job = OpenPunchRolloverJob(unit_of_work or default_unit_of_work())
    return job.run(payload, now_utc=now_utc)


def process_open_punch_safety_close(
    payload: dict[str, Any],
    *,
    unit_of_work: UnitOfWork | None = None,
    now_utc: datetime | None = None,
) -> JobResult:
    job = OpenPunchSafetyCloseJob(unit_of_work or default_unit_of_work())
    return job.run(payload, now_utc=now_utc)
