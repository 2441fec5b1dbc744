"""Read-only access to the schedule configuration layers.

No business rules live here: callers get raw ORM entities filtered by tenant,
employee and date range, and interpret them elsewhere.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload

from schedule_engine.errors import TransientStorageError
from schedule_engine.models import (
    AbsenceRequest,
    AbsenceStatus,
    EmployeeScheduleAssignment,
    ExceptionDayOverride,
    HolidayCalendarDay,
    SchedulePeriod,
    ScheduleTemplate,
    WorkDayPattern,
)


@contextmanager
def storage_errors() -> Iterator[None]:
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, DBAPIError) as exc:
        raise TransientStorageError(str(exc.orig or exc)) from exc


class PatternStore(Protocol):
    """Ranges are closed-open ``[start_date, end_date)``."""

    def list_absences(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[AbsenceRequest]: ...

    def list_overrides(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[ExceptionDayOverride]: ...

    def list_assignments(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[EmployeeScheduleAssignment]: ...

    def get_template(self, *, org_id: int, template_id: int) -> ScheduleTemplate | None: ...

    def list_holidays(self, *, org_id: int, start_date: date, end_date: date) -> list[HolidayCalendarDay]: ...


class SqlPatternStore:
    def __init__(self, db: Session):
        self.db = db

    def list_absences(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[AbsenceRequest]:
        last_day = end_date - timedelta(days=1)
        with storage_errors():
            return list(
                self.db.scalars(
                    select(AbsenceRequest)
                    .where(
                        AbsenceRequest.org_id == org_id,
                        AbsenceRequest.employee_id == employee_id,
                        AbsenceRequest.status == AbsenceStatus.APPROVED,
                        AbsenceRequest.start_date <= last_day,
                        AbsenceRequest.end_date >= start_date,
                    )
                    .order_by(AbsenceRequest.start_date.asc(), AbsenceRequest.id.asc())
                ).all()
            )

    def list_overrides(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[ExceptionDayOverride]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(ExceptionDayOverride)
                    .options(selectinload(ExceptionDayOverride.time_slots))
                    .where(
                        ExceptionDayOverride.org_id == org_id,
                        ExceptionDayOverride.employee_id == employee_id,
                        ExceptionDayOverride.day_date >= start_date,
                        ExceptionDayOverride.day_date < end_date,
                    )
                    .order_by(ExceptionDayOverride.day_date.asc(), ExceptionDayOverride.id.asc())
                ).all()
            )

    def list_assignments(
        self, *, org_id: int, employee_id: int, start_date: date, end_date: date
    ) -> list[EmployeeScheduleAssignment]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(EmployeeScheduleAssignment)
                    .where(
                        EmployeeScheduleAssignment.org_id == org_id,
                        EmployeeScheduleAssignment.employee_id == employee_id,
                        EmployeeScheduleAssignment.is_active.is_(True),
                        EmployeeScheduleAssignment.start_date < end_date,
                        or_(
                            EmployeeScheduleAssignment.end_date.is_(None),
                            EmployeeScheduleAssignment.end_date >= start_date,
                        ),
                    )
                    .order_by(EmployeeScheduleAssignment.start_date.asc(), EmployeeScheduleAssignment.id.asc())
                ).all()
            )

    def get_template(self, *, org_id: int, template_id: int) -> ScheduleTemplate | None:
        with storage_errors():
            return self.db.scalar(
                select(ScheduleTemplate)
                .options(
                    selectinload(ScheduleTemplate.default_patterns).selectinload(WorkDayPattern.time_slots),
                    selectinload(ScheduleTemplate.periods)
                    .selectinload(SchedulePeriod.patterns)
                    .selectinload(WorkDayPattern.time_slots),
                )
                .where(ScheduleTemplate.id == template_id, ScheduleTemplate.org_id == org_id)
            )

    def list_holidays(self, *, org_id: int, start_date: date, end_date: date) -> list[HolidayCalendarDay]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(HolidayCalendarDay)
                    .where(
                        HolidayCalendarDay.org_id == org_id,
                        HolidayCalendarDay.day_date >= start_date,
                        HolidayCalendarDay.day_date < end_date,
                    )
                    .order_by(HolidayCalendarDay.day_date.asc())
                ).all()
            )
