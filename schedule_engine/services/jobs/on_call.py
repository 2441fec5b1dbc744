from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import Field

from schedule_engine.models import (
    CompensationType,
    InterventionCategory,
    OnCallIntervention,
    OnCallSchedule,
    OnCallStatus,
    TimeBankOrigin,
)
from schedule_engine.services.compliance import local_datetime
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
from schedule_engine.services.schedule_resolver import EffectiveSchedule
from schedule_engine.services.time_bank import clamp_movement_minutes
from schedule_engine.services.time_slots import paid_intervals

logger = logging.getLogger("schedule_engine.jobs.on_call")

JOB_TYPE_ON_CALL_SETTLEMENT = "on_call_settlement"

ON_CALL_MAX_LOOKBACK_DAYS = 30
ALLOWANCE_PENDING = "PENDING"
ALLOWANCE_SETTLED = "SETTLED"


def availability_reference_key(schedule_id: int) -> str:
    return f"on-call-availability:{schedule_id}"


def intervention_reference_key(intervention_id: int) -> str:
    return f"on-call-intervention:{intervention_id}"


class OnCallSettlementPayload(OrgJobPayload):
    lookback_days: int | None = Field(default=None)


def scheduled_work_intervals(days: Sequence[EffectiveSchedule], policy: OrganizationPolicy) -> list[tuple[datetime, datetime]]:
    """Paid work time of the resolved days as UTC intervals."""
    tz = policy.tz
    intervals: list[tuple[datetime, datetime]] = []
    for schedule in days:
        if not schedule.is_working_day:
            continue
        for start, end in paid_intervals(schedule.slots):
            intervals.append(
                (
                    local_datetime(schedule.day, start, tz).astimezone(timezone.utc),
                    local_datetime(schedule.day, end, tz).astimezone(timezone.utc),
                )
            )
    return intervals


def split_intervention_minutes(
    start_at: datetime,
    end_at: datetime,
    work_intervals: Sequence[tuple[datetime, datetime]],
) -> tuple[int, int]:
    """Return (inside, outside) minutes of an intervention against scheduled work time."""
    total = max(0, int((end_at - start_at).total_seconds() // 60))
    inside_seconds = 0.0
    for work_start, work_end in work_intervals:
        overlap = (min(end_at, work_end) - max(start_at, work_start)).total_seconds()
        if overlap > 0:
            inside_seconds += overlap
    inside = min(total, int(inside_seconds // 60))
    return inside, total - inside


class OnCallSettlementJob(SweepJob[OnCallSettlementPayload]):
    """Settles finished on-call duty: availability allowance and intervention time."""

    job_type = JOB_TYPE_ON_CALL_SETTLEMENT
    payload_model = OnCallSettlementPayload
    stage = 1

    def execute(self, payload: OnCallSettlementPayload, *, now_utc: datetime | None = None) -> JobResult:
        now = self.now(now_utc)
        policy = self.load_policy(payload.org_id)
        lookback_days = clamp(payload.lookback_days or policy.on_call_lookback_days, 1, ON_CALL_MAX_LOOKBACK_DAYS)
        ended_after = now - timedelta(days=lookback_days)

        with self.unit_of_work() as services:
            schedules = services.time_bank.list_settleable_on_call(
                org_id=payload.org_id,
                ended_after=ended_after,
                ended_before=now,
            )
            employee_ids = sorted({item.employee_id for item in schedules})

        def _handle(services: JobServices, employee_id: int) -> bool:
            pending = services.time_bank.list_settleable_on_call(
                org_id=payload.org_id,
                ended_after=ended_after,
                ended_before=now,
                employee_id=employee_id,
            )
            for on_call in pending:
                self._settle(services, on_call, policy=policy, now_utc=now)
            return bool(pending)

        return self.run_employee_units(
            org_id=payload.org_id,
            units=employee_ids,
            handler=_handle,
            employee_id_of=lambda employee_id: employee_id,
            details={"lookback_days": lookback_days},
        )

    def _settle(
        self,
        services: JobServices,
        on_call: OnCallSchedule,
        *,
        policy: OrganizationPolicy,
        now_utc: datetime,
    ) -> None:
        self._settle_availability(services, on_call, policy=policy, now_utc=now_utc)

        if on_call.interventions:
            tz = policy.tz
            first_day = min(item.start_at for item in on_call.interventions).astimezone(tz).date()
            last_day = max(item.end_at for item in on_call.interventions).astimezone(tz).date()
            # One extra day before so overnight slots of the previous shift are included.
            days = ScheduleRangeExpander(services.resolver()).resolve_range(
                org_id=on_call.org_id,
                employee_id=on_call.employee_id,
                start_date=first_day - timedelta(days=1),
                end_date=last_day + timedelta(days=1),
            )
            work_intervals = scheduled_work_intervals(days, policy)
            for intervention in on_call.interventions:
                self._settle_intervention(services, intervention, work_intervals=work_intervals, policy=policy)

        on_call.status = OnCallStatus.SETTLED
        logger.info(
            "on_call_settled",
            extra={
                "org_id": on_call.org_id,
                "employee_id": on_call.employee_id,
                "on_call_schedule_id": on_call.id,
                "interventions": len(on_call.interventions),
            },
        )

    def _settle_availability(
        self,
        services: JobServices,
        on_call: OnCallSchedule,
        *,
        policy: OrganizationPolicy,
        now_utc: datetime,
    ) -> None:
        if services.time_bank.get_on_call_allowance(on_call.id) is not None:
            return

        compensation_type = on_call.compensation_type
        minutes = 0
        amount = 0.0
        if compensation_type in {CompensationType.TIME, CompensationType.MIXED}:
            minutes = max(0, int(on_call.compensation_minutes or 0))
        if compensation_type in {CompensationType.PAY, CompensationType.MIXED}:
            amount = max(0.0, float(on_call.compensation_amount or 0))
        is_pending = amount > 0
        services.time_bank.create_on_call_allowance(
            schedule=on_call,
            compensation_type=compensation_type,
            minutes=minutes,
            amount=amount,
            status=ALLOWANCE_PENDING if is_pending else ALLOWANCE_SETTLED,
            settled_at=None if is_pending else now_utc,
        )
        if minutes > 0:
            self._credit(
                services,
                org_id=on_call.org_id,
                employee_id=on_call.employee_id,
                day_at=on_call.end_at,
                minutes=minutes,
                origin=TimeBankOrigin.ON_CALL_AVAILABILITY,
                reference_key=availability_reference_key(on_call.id),
                description="On-call availability",
                details={"on_call_schedule_id": on_call.id},
                policy=policy,
            )

    def _settle_intervention(
        self,
        services: JobServices,
        intervention: OnCallIntervention,
        *,
        work_intervals: Sequence[tuple[datetime, datetime]],
        policy: OrganizationPolicy,
    ) -> None:
        inside, outside = split_intervention_minutes(intervention.start_at, intervention.end_at, work_intervals)
        intervention.inside_minutes = inside
        intervention.outside_minutes = outside
        intervention.category = (
            InterventionCategory.OUTSIDE_SCHEDULE if outside > 0 else InterventionCategory.INSIDE_SCHEDULE
        )
        credited = int(round(outside * policy.on_call_intervention_factor))
        if credited > 0:
            self._credit(
                services,
                org_id=intervention.org_id,
                employee_id=intervention.employee_id,
                day_at=intervention.start_at,
                minutes=credited,
                origin=TimeBankOrigin.ON_CALL_INTERVENTION,
                reference_key=intervention_reference_key(intervention.id),
                description="On-call intervention outside scheduled hours",
                details={
                    "intervention_id": intervention.id,
                    "outside_minutes": outside,
                    "factor": policy.on_call_intervention_factor,
                },
                policy=policy,
            )

    @staticmethod
    def _credit(
        services: JobServices,
        *,
        org_id: int,
        employee_id: int,
        day_at: datetime,
        minutes: int,
        origin: TimeBankOrigin,
        reference_key: str,
        description: str,
        details: dict[str, Any],
        policy: OrganizationPolicy,
    ) -> None:
        balance = services.time_bank.balance_minutes(
            org_id=org_id,
            employee_id=employee_id,
            exclude_reference_key=reference_key,
        )
        clamped = clamp_movement_minutes(
            minutes,
            balance_minutes=balance,
            max_positive_minutes=policy.time_bank_max_positive_minutes,
        )
        services.time_bank.upsert_movement(
            org_id=org_id,
            employee_id=employee_id,
            day=day_at.astimezone(policy.tz).date(),
            minutes=clamped.applied_minutes,
            origin=origin,
            reference_key=reference_key,
            description=description,
            details={**details, "requested_minutes": minutes, "clamped": clamped.clamped},
        )


def process_on_call_settlement(
    payload: dict[str, Any],
    *,
    unit_of_work: UnitOfWork | None = None,
    now_utc: datetime | None = None,
) -> JobResult:
    job = OnCallSettlementJob(unit_of_work or default_unit_of_work())
    return job.run(payload, now_utc=now_utc)
