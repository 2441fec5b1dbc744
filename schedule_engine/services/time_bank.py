from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from schedule_engine.models import (
    AuthorizationStatus,
    CompensationType,
    OnCallAllowance,
    OnCallSchedule,
    OnCallStatus,
    OverworkAuthorization,
    TimeBankMovement,
    TimeBankOrigin,
)
from schedule_engine.services.pattern_store import storage_errors


@dataclass(frozen=True, slots=True)
class ClampedMinutes:
    applied_minutes: int
    clamped: bool


def normalize_overtime(minutes: float, *, tolerance_minutes: int, increment_minutes: int) -> int:
    """Round half-up to the increment; small excesses inside the tolerance are dropped."""
    if not math.isfinite(minutes) or minutes <= 0:
        return 0
    increment = max(1, increment_minutes)
    rounded = int(math.floor(minutes / increment + 0.5)) * increment
    if rounded <= tolerance_minutes:
        return 0
    return rounded


def clamp_movement_minutes(minutes: int, *, balance_minutes: int, max_positive_minutes: int) -> ClampedMinutes:
    if minutes <= 0:
        return ClampedMinutes(applied_minutes=minutes, clamped=False)
    available = max_positive_minutes - balance_minutes
    if available <= 0:
        return ClampedMinutes(applied_minutes=0, clamped=True)
    if minutes > available:
        return ClampedMinutes(applied_minutes=available, clamped=True)
    return ClampedMinutes(applied_minutes=minutes, clamped=False)


def approved_minutes(authorizations: list[OverworkAuthorization]) -> int:
    return sum(
        int(item.minutes_approved if item.minutes_approved is not None else item.minutes_requested)
        for item in authorizations
        if item.status == AuthorizationStatus.APPROVED
    )


class TimeBankStore(Protocol):
    def balance_minutes(self, *, org_id: int, employee_id: int, exclude_reference_key: str | None = None) -> int: ...

    def get_movement(self, reference_key: str) -> TimeBankMovement | None: ...

    def upsert_movement(
        self,
        *,
        org_id: int,
        employee_id: int,
        day: date,
        minutes: int,
        origin: TimeBankOrigin,
        reference_key: str,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> TimeBankMovement: ...

    def list_authorizations(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[OverworkAuthorization]: ...

    def list_expirable_authorizations(
        self, *, org_id: int, requested_before: datetime, now_utc: datetime, employee_id: int | None = None
    ) -> list[OverworkAuthorization]: ...

    def list_settleable_on_call(
        self, *, org_id: int, ended_after: datetime, ended_before: datetime, employee_id: int | None = None
    ) -> list[OnCallSchedule]: ...

    def get_on_call_allowance(self, schedule_id: int) -> OnCallAllowance | None: ...

    def create_on_call_allowance(
        self,
        *,
        schedule: OnCallSchedule,
        compensation_type: CompensationType,
        minutes: int,
        amount: float,
        status: str,
        settled_at: datetime | None,
    ) -> OnCallAllowance: ...


class SqlTimeBankStore:
    def __init__(self, db: Session):
        self.db = db

    def balance_minutes(self, *, org_id: int, employee_id: int, exclude_reference_key: str | None = None) -> int:
        statement = select(func.coalesce(func.sum(TimeBankMovement.minutes), 0)).where(
            TimeBankMovement.org_id == org_id,
            TimeBankMovement.employee_id == employee_id,
        )
        if exclude_reference_key:
            statement = statement.where(TimeBankMovement.reference_key != exclude_reference_key)
        with storage_errors():
            return int(self.db.scalar(statement) or 0)

    def get_movement(self, reference_key: str) -> TimeBankMovement | None:
        with storage_errors():
            return self.db.scalar(select(TimeBankMovement).where(TimeBankMovement.reference_key == reference_key))

    def upsert_movement(
        self,
        *,
        org_id: int,
        employee_id: int,
        day: date,
        minutes: int,
        origin: TimeBankOrigin,
        reference_key: str,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> TimeBankMovement:
        with storage_errors():
            movement = self.db.scalar(select(TimeBankMovement).where(TimeBankMovement.reference_key == reference_key))
            if movement is None:
                movement = TimeBankMovement(
                    org_id=org_id,
                    employee_id=employee_id,
                    reference_key=reference_key,
                    origin=origin,
                )
                self.db.add(movement)
            movement.day_date = day
            movement.minutes = minutes
            movement.description = description
            movement.details = dict(details or {})
            self.db.flush()
        return movement

    def list_authorizations(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[OverworkAuthorization]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(OverworkAuthorization)
                    .where(
                        OverworkAuthorization.org_id == org_id,
                        OverworkAuthorization.employee_id == employee_id,
                        OverworkAuthorization.day_date >= start_date,
                        OverworkAuthorization.day_date < end_date,
                    )
                    .order_by(OverworkAuthorization.day_date.asc(), OverworkAuthorization.id.asc())
                ).all()
            )

    def list_expirable_authorizations(
        self, *, org_id: int, requested_before: datetime, now_utc: datetime, employee_id: int | None = None
    ) -> list[OverworkAuthorization]:
        statement = select(OverworkAuthorization).where(
            OverworkAuthorization.org_id == org_id,
            OverworkAuthorization.status == AuthorizationStatus.PENDING,
            or_(
                OverworkAuthorization.valid_until < now_utc,
                and_(
                    OverworkAuthorization.valid_until.is_(None),
                    OverworkAuthorization.requested_at < requested_before,
                ),
            ),
        )
        if employee_id is not None:
            statement = statement.where(OverworkAuthorization.employee_id == employee_id)
        with storage_errors():
            return list(
                self.db.scalars(
                    statement.order_by(OverworkAuthorization.employee_id.asc(), OverworkAuthorization.id.asc())
                ).all()
            )

    def list_settleable_on_call(
        self, *, org_id: int, ended_after: datetime, ended_before: datetime, employee_id: int | None = None
    ) -> list[OnCallSchedule]:
        statement = (
            select(OnCallSchedule)
            .options(selectinload(OnCallSchedule.interventions))
            .where(
                OnCallSchedule.org_id == org_id,
                OnCallSchedule.status == OnCallStatus.SCHEDULED,
                OnCallSchedule.end_at >= ended_after,
                OnCallSchedule.end_at <= ended_before,
            )
        )
        if employee_id is not None:
            statement = statement.where(OnCallSchedule.employee_id == employee_id)
        with storage_errors():
            return list(
                self.db.scalars(statement.order_by(OnCallSchedule.employee_id.asc(), OnCallSchedule.end_at.asc())).all()
            )

    def get_on_call_allowance(self, schedule_id: int) -> OnCallAllowance | None:
        with storage_errors():
            return self.db.scalar(select(OnCallAllowance).where(OnCallAllowance.schedule_id == schedule_id))

    def create_on_call_allowance(
        self,
        *,
        schedule: OnCallSchedule,
        compensation_type: CompensationType,
        minutes: int,
        amount: float,
        status: str,
        settled_at: datetime | None,
    ) -> OnCallAllowance:
        allowance = OnCallAllowance(
            schedule_id=schedule.id,
            org_id=schedule.org_id,
            employee_id=schedule.employee_id,
            compensation_type=compensation_type,
            minutes=minutes,
            amount=amount,
            currency=schedule.currency,
            status=status,
            settled_at=settled_at,
        )
        with storage_errors():
            self.db.add(allowance)
            self.db.flush()
        return allowance
