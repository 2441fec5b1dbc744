from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import Field, field_validator

from schedule_engine.models import AlertSeverity, AuthorizationStatus, TimeBankOrigin
from schedule_engine.services.alerts import ALERT_AUTHORIZATION_EXPIRED, ALERT_OVERTIME, ALERT_WORK_ON_NON_WORKDAY
from schedule_engine.services.calendar import start_of_week
from schedule_engine.services.compliance import FLAG_WORK_ON_NON_WORKDAY, evaluate_stored_day, summary_values
from schedule_engine.services.job_runtime import (
    JobResult,
    JobServices,
    OrgJobPayload,
    SweepJob,
    UnitOfWork,
    clamp,
    default_unit_of_work,
)
from schedule_engine.services.org_config import OrganizationPolicy
from schedule_engine.services.schedule_range import ScheduleRangeExpander
from schedule_engine.services.time_bank import approved_minutes, clamp_movement_minutes, normalize_overtime

logger = logging.getLogger("schedule_engine.jobs.overtime")

JOB_TYPE_WEEKLY_OVERTIME = "weekly_overtime_reconciliation"
JOB_TYPE_OVERWORK_AUTHORIZATION_EXPIRY = "overwork_authorization_expiry"

AUTHORIZATION_EXPIRY_MAX_DAYS = 90


def weekly_overtime_reference_key(org_id: int, employee_id: int, week_start: date) -> str:
    return f"weekly-overtime:{org_id}:{employee_id}:{week_start.isoformat()}"


class WeeklyOvertimePayload(OrgJobPayload):
    week_start: date | None = Field(default=None)

    @field_validator("week_start")
    @classmethod
    def _normalize_week_start(cls, value: date | None) -> date | None:
        return start_of_week(value) if value is not None else None


class AuthorizationExpiryPayload(OrgJobPayload):
    expiry_days: int | None = Field(default=None)


class WeeklyOvertimeJob(SweepJob[WeeklyOvertimePayload]):
    """Compares a week of worked time with the resolved schedule.

    Positive deviation is banked up to the approved overwork minutes for the
    week; the rest is reported as unauthorized overtime.
    """

    job_type = JOB_TYPE_WEEKLY_OVERTIME
    payload_model = WeeklyOvertimePayload
    stage = 2
    singleton_fields = ("week_start",)

    def execute(self, payload: WeeklyOvertimePayload, *, now_utc: datetime | None = None) -> JobResult:
        now = self.now(now_utc)
        policy = self.load_policy(payload.org_id)
        week_start = payload.week_start or start_of_week(now.astimezone(policy.tz).date()) - timedelta(days=7)

        with self.unit_of_work() as services:
            employee_ids = services.organizations.list_active_employee_ids(payload.org_id)

        def _handle(services: JobServices, employee_id: int) -> bool:
            return self._reconcile(
                services,
                org_id=payload.org_id,
                employee_id=employee_id,
                week_start=week_start,
                policy=policy,
                now_utc=now,
            )

        return self.run_employee_units(
            org_id=payload.org_id,
            units=employee_ids,
            handler=_handle,
            employee_id_of=lambda employee_id: employee_id,
            details={"week_start": week_start.isoformat()},
        )

    def _reconcile(
        self,
        services: JobServices,
        *,
        org_id: int,
        employee_id: int,
        week_start: date,
        policy: OrganizationPolicy,
        now_utc: datetime,
    ) -> bool:
        week = ScheduleRangeExpander(services.resolver()).resolve_week(
            org_id=org_id,
            employee_id=employee_id,
            day=week_start,
        )

        worked_total = 0
        for schedule in week.days:
            result = evaluate_stored_day(
                services.punches,
                schedule,
                org_id=org_id,
                employee_id=employee_id,
                policy=policy,
                now_utc=now_utc,
            )
            worked_total += result.worked_minutes
            services.punches.upsert_workday_summary(
                org_id=org_id,
                employee_id=employee_id,
                day=schedule.day,
                values=summary_values(schedule, result),
            )
            if FLAG_WORK_ON_NON_WORKDAY in result.flags:
                services.alerts.create_alert(
                    org_id=org_id,
                    alert_type=ALERT_WORK_ON_NON_WORKDAY,
                    severity=AlertSeverity.WARNING,
                    employee_id=employee_id,
                    day=schedule.day,
                    metadata={"worked_minutes": result.worked_minutes, "status": result.status},
                )

        expected_total = week.total_expected_minutes
        overtime = normalize_overtime(
            worked_total - expected_total,
            tolerance_minutes=policy.overtime_tolerance_minutes,
            increment_minutes=policy.overtime_rounding_increment_minutes,
        )
        authorizations = services.time_bank.list_authorizations(
            org_id=org_id,
            employee_id=employee_id,
            start_date=week.week_start,
            end_date=week.week_end + timedelta(days=1),
        )
        authorized = min(overtime, approved_minutes(authorizations))
        unauthorized = overtime - authorized

        reference_key = weekly_overtime_reference_key(org_id, employee_id, week.week_start)
        existing = services.time_bank.get_movement(reference_key)
        applied = 0
        if authorized > 0 or existing is not None:
            balance = services.time_bank.balance_minutes(
                org_id=org_id,
                employee_id=employee_id,
                exclude_reference_key=reference_key,
            )
            clamped = clamp_movement_minutes(
                authorized,
                balance_minutes=balance,
                max_positive_minutes=policy.time_bank_max_positive_minutes,
            )
            applied = clamped.applied_minutes
            services.time_bank.upsert_movement(
                org_id=org_id,
                employee_id=employee_id,
                day=week.week_end,
                minutes=applied,
                origin=TimeBankOrigin.WEEKLY_OVERTIME,
                reference_key=reference_key,
                description=f"Weekly overtime {week.week_start.isoformat()}",
                details={
                    "expected_minutes": expected_total,
                    "worked_minutes": worked_total,
                    "authorized_minutes": authorized,
                    "clamped": clamped.clamped,
                },
            )
            if clamped.clamped:
                logger.warning(
                    "time_bank_ceiling_reached",
                    extra={
                        "org_id": org_id,
                        "employee_id": employee_id,
                        "requested_minutes": authorized,
                        "applied_minutes": applied,
                    },
                )

        if unauthorized > 0:
            services.alerts.create_alert(
                org_id=org_id,
                alert_type=ALERT_OVERTIME,
                severity=AlertSeverity.WARNING,
                employee_id=employee_id,
                day=week.week_end,
                metadata={
                    "week_start": week.week_start.isoformat(),
                    "expected_minutes": expected_total,
                    "worked_minutes": worked_total,
                    "overtime_minutes": overtime,
                    "authorized_minutes": authorized,
                    "unauthorized_minutes": unauthorized,
                },
            )
        return overtime > 0 or applied != 0


class OverworkAuthorizationExpiryJob(SweepJob[AuthorizationExpiryPayload]):
    job_type = JOB_TYPE_OVERWORK_AUTHORIZATION_EXPIRY
    payload_model = AuthorizationExpiryPayload
    stage = 1

    def execute(self, payload: AuthorizationExpiryPayload, *, now_utc: datetime | None = None) -> JobResult:
        now = self.now(now_utc)
        policy = self.load_policy(payload.org_id)
        expiry_days = clamp(
            payload.expiry_days or policy.overwork_authorization_expiry_days,
            1,
            AUTHORIZATION_EXPIRY_MAX_DAYS,
        )
        requested_before = now - timedelta(days=expiry_days)

        with self.unit_of_work() as services:
            pending = services.time_bank.list_expirable_authorizations(
                org_id=payload.org_id,
                requested_before=requested_before,
                now_utc=now,
            )
            employee_ids = sorted({item.employee_id for item in pending})

        def _handle(services: JobServices, employee_id: int) -> bool:
            authorizations = services.time_bank.list_expirable_authorizations(
                org_id=payload.org_id,
                requested_before=requested_before,
                now_utc=now,
                employee_id=employee_id,
            )
            for authorization in authorizations:
                authorization.status = AuthorizationStatus.EXPIRED
                authorization.resolved_at = now
                services.alerts.create_alert(
                    org_id=payload.org_id,
                    alert_type=ALERT_AUTHORIZATION_EXPIRED,
                    severity=AlertSeverity.INFO,
                    employee_id=employee_id,
                    day=authorization.day_date,
                    metadata={
                        "authorization_id": authorization.id,
                        "minutes_requested": authorization.minutes_requested,
                        "requested_at": authorization.requested_at.isoformat(),
                    },
                )
            return bool(authorizations)

        return self.run_employee_units(
            org_id=payload.org_id,
            units=employee_ids,
            handler=_handle,
            employee_id_of=lambda employee_id: employee_id,
            details={"expiry_days": expiry_days},
        )


def process_weekly_overtime_reconciliation(
    payload: dict[str, Any],
    *,
    unit_of_work: UnitOfWork | None = None,
    now_utc: datetime | None = None,
) -> JobResult:
    job = WeeklyOvertimeJob(unit_of_work or default_unit_of_work())
    return job.run(payload, now_utc=now_utc)


def process_overwork_authorization_expiry(
    payload: dict[str, Any],
    *,
    unit_of_work: UnitOfWork | None = None,
    now_utc: datetime | None = None,
) -> JobResult:
    job = OverworkAuthorizationExpiryJob(unit_of_work or default_unit_of_work())
    return job.run(payload, now_utc=now_utc)
