from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from schedule_engine.models import TimeEntry, TimeEntryType, WorkdaySummary
from schedule_engine.services.pattern_store import storage_errors

RESOLUTION_UNRESOLVED_MISSING_CLOCK_OUT = "UNRESOLVED_MISSING_CLOCK_OUT"
RESOLUTION_AUTO_CLOSED_SCHEDULE_END = "AUTO_CLOSED_SCHEDULE_END"
RESOLUTION_AUTO_CLOSED_SAFETY = "AUTO_CLOSED_SAFETY"

DATA_QUALITY_ESTIMATED = "ESTIMATED"
DATA_QUALITY_LOW = "LOW"

AUTO_CLOSE_REASON_SCHEDULE_END = "SCHEDULE_END"
AUTO_CLOSE_REASON_SAFETY = "SAFETY_MAX_OPEN_HOURS"


@dataclass(frozen=True, slots=True)
class OpenPunch:
    """Detached view of a dangling CLOCK_IN, safe to hand to another session."""

    id: int
    org_id: int
    employee_id: int
    ts_utc: datetime

    @classmethod
    def from_entry(cls, entry: TimeEntry) -> OpenPunch:
        return cls(id=entry.id, org_id=entry.org_id, employee_id=entry.employee_id, ts_utc=entry.ts_utc)


class PunchStore(Protocol):
    def list_entries(
        self, *, org_id: int, employee_id: int, start_utc: datetime, end_utc: datetime
    ) -> list[TimeEntry]: ...

    def list_open_clock_ins(self, *, org_id: int, since_utc: datetime, before_utc: datetime) -> list[OpenPunch]:
        """Latest CLOCK_IN per employee in the window with no CLOCK_OUT after it."""
        ...

    def find_closing_entry(self, open_entry: OpenPunch) -> TimeEntry | None: ...

    def find_open_break(self, open_entry: OpenPunch) -> TimeEntry | None: ...

    def create_time_entry(
        self,
        *,
        org_id: int,
        employee_id: int,
        entry_type: TimeEntryType,
        ts_utc: datetime,
        is_automatic: bool = False,
        auto_close_reason: str | None = None,
        note: str | None = None,
    ) -> TimeEntry: ...

    def upsert_workday_summary(
        self, *, org_id: int, employee_id: int, day: date, values: dict[str, Any]
    ) -> WorkdaySummary: ...


def _latest_open_per_employee(entries: Sequence[TimeEntry]) -> list[TimeEntry]:
    """Walk punches in time order and keep each employee's dangling CLOCK_IN."""
    open_by_employee: dict[int, TimeEntry | None] = {}
    for entry in sorted(entries, key=lambda item: (item.employee_id, item.ts_utc)):
        if entry.is_cancelled:
            continue
        if entry.entry_type == TimeEntryType.CLOCK_IN:
            open_by_employee[entry.employee_id] = entry
        elif entry.entry_type == TimeEntryType.CLOCK_OUT:
            open_by_employee[entry.employee_id] = None
    return [entry for entry in open_by_employee.values() if entry is not None]


class SqlPunchStore:
    def __init__(self, db: Session):
        self.db = db

    def list_entries(
        self, *, org_id: int, employee_id: int, start_utc: datetime, end_utc: datetime
    ) -> list[TimeEntry]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(TimeEntry)
                    .where(
                        TimeEntry.org_id == org_id,
                        TimeEntry.employee_id == employee_id,
                        TimeEntry.is_cancelled.is_(False),
                        TimeEntry.ts_utc >= start_utc,
                        TimeEntry.ts_utc < end_utc,
                    )
                    .order_by(TimeEntry.ts_utc.asc(), TimeEntry.id.asc())
                ).all()
            )

    def list_open_clock_ins(self, *, org_id: int, since_utc: datetime, before_utc: datetime) -> list[OpenPunch]:
        # Punches up to now are needed so a later CLOCK_OUT closes an earlier CLOCK_IN.
        with storage_errors():
            entries = list(
                self.db.scalars(
                    select(TimeEntry)
                    .where(
                        TimeEntry.org_id == org_id,
                        TimeEntry.is_cancelled.is_(False),
                        TimeEntry.entry_type.in_([TimeEntryType.CLOCK_IN, TimeEntryType.CLOCK_OUT]),
                        TimeEntry.ts_utc >= since_utc,
                    )
                    .order_by(TimeEntry.employee_id.asc(), TimeEntry.ts_utc.asc())
                ).all()
            )
        return [
            OpenPunch.from_entry(entry) for entry in _latest_open_per_employee(entries) if entry.ts_utc < before_utc
        ]

    def find_closing_entry(self, open_entry: OpenPunch) -> TimeEntry | None:
        with storage_errors():
            return self.db.scalar(
                select(TimeEntry)
                .where(
                    TimeEntry.org_id == open_entry.org_id,
                    TimeEntry.employee_id == open_entry.employee_id,
                    TimeEntry.entry_type == TimeEntryType.CLOCK_OUT,
                    TimeEntry.is_cancelled.is_(False),
                    TimeEntry.ts_utc > open_entry.ts_utc,
                )
                .order_by(TimeEntry.ts_utc.asc())
                .limit(1)
            )

    def find_open_break(self, open_entry: OpenPunch) -> TimeEntry | None:
        with storage_errors():
            breaks = list(
                self.db.scalars(
                    select(TimeEntry)
                    .where(
                        TimeEntry.org_id == open_entry.org_id,
                        TimeEntry.employee_id == open_entry.employee_id,
                        TimeEntry.entry_type.in_([TimeEntryType.BREAK_START, TimeEntryType.BREAK_END]),
                        TimeEntry.is_cancelled.is_(False),
                        TimeEntry.ts_utc > open_entry.ts_utc,
                    )
                    .order_by(TimeEntry.ts_utc.asc())
                ).all()
            )
        if breaks and breaks[-1].entry_type == TimeEntryType.BREAK_START:
            return breaks[-1]
        return None

    def create_time_entry(
        self,
        *,
        org_id: int,
        employee_id: int,
        entry_type: TimeEntryType,
        ts_utc: datetime,
        is_automatic: bool = False,
        auto_close_reason: str | None = None,
        note: str | None = None,
    ) -> TimeEntry:
        entry = TimeEntry(
            org_id=org_id,
            employee_id=employee_id,
            entry_type=entry_type,
            ts_utc=ts_utc,
            is_cancelled=False,
            is_automatic=is_automatic,
            auto_close_reason=auto_close_reason,
            note=note,
        )
        with storage_errors():
            self.db.add(entry)
            self.db.flush()
        return entry

    def upsert_workday_summary(
        self, *, org_id: int, employee_id: int, day: date, values: dict[str, Any]
    ) -> WorkdaySummary:
        with storage_errors():
            summary = self.db.scalar(
                select(WorkdaySummary).where(
                    WorkdaySummary.org_id == org_id,
                    WorkdaySummary.employee_id == employee_id,
                    WorkdaySummary.day_date == day,
                )
            )
            if summary is None:
                summary = WorkdaySummary(org_id=org_id, employee_id=employee_id, day_date=day)
                self.db.add(summary)
            for key, value in values.items():
                setattr(summary, key, value)
            self.db.flush()
        return summary
