from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schedule_engine.db import Base


class ScheduleType(str, enum.Enum):
    FIXED = "FIXED"
    SHIFT = "SHIFT"
    ROTATION = "ROTATION"
    FLEXIBLE = "FLEXIBLE"


class PeriodType(str, enum.Enum):
    REGULAR = "REGULAR"
    INTENSIVE = "INTENSIVE"
    SUMMER = "SUMMER"
    HOLIDAY = "HOLIDAY"
    SPECIAL = "SPECIAL"


class AbsenceStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class TimeEntryType(str, enum.Enum):
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"
    BREAK_START = "BREAK_START"
    BREAK_END = "BREAK_END"


class AlertSeverity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class AuthorizationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TimeBankOrigin(str, enum.Enum):
    WEEKLY_OVERTIME = "WEEKLY_OVERTIME"
    ON_CALL_AVAILABILITY = "ON_CALL_AVAILABILITY"
    ON_CALL_INTERVENTION = "ON_CALL_INTERVENTION"


class OnCallStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"


class CompensationType(str, enum.Enum):
    NONE = "NONE"
    TIME = "TIME"
    PAY = "PAY"
    MIXED = "MIXED"


class InterventionCategory(str, enum.Enum):
    INSIDE_SCHEDULE = "INSIDE_SCHEDULE"
    OUTSIDE_SCHEDULE = "OUTSIDE_SCHEDULE"


class JobRunStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="Europe/Madrid",
        server_default=text("'Europe/Madrid'"),
    )
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employees: Mapped[list[Employee]] = relationship(back_populates="organization")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    organization: Mapped[Organization] = relationship(back_populates="employees")


class ScheduleTemplate(Base):
    __tablename__ = "schedule_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    schedule_type: Mapped[ScheduleType] = mapped_column(
        Enum(ScheduleType, name="schedule_type"),
        nullable=False,
        default=ScheduleType.FIXED,
    )
    weekly_hours: Mapped[float] = mapped_column(Float, nullable=False, default=40.0, server_default=text("40"))
    anchor_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cycle_length_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    periods: Mapped[list[SchedulePeriod]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
    )
    default_patterns: Mapped[list[WorkDayPattern]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
    )


class SchedulePeriod(Base):
    __tablename__ = "schedule_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period_type: Mapped[PeriodType] = mapped_column(
        Enum(PeriodType, name="schedule_period_type"),
        nullable=False,
        default=PeriodType.REGULAR,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    template: Mapped[ScheduleTemplate] = relationship(back_populates="periods")
    patterns: Mapped[list[WorkDayPattern]] = relationship(
        back_populates="period",
        cascade="all, delete-orphan",
    )


class WorkDayPattern(Base):
    """Day entry owned either by a period or, as a default, by a template."""

    __tablename__ = "work_day_patterns"
    __table_args__ = (
        CheckConstraint(
            "(template_id IS NULL) <> (period_id IS NULL)",
            name="ck_work_day_patterns_single_owner",
        ),
        UniqueConstraint("template_id", "day_of_week", name="uq_work_day_patterns_template_weekday"),
        UniqueConstraint("template_id", "cycle_day_index", name="uq_work_day_patterns_template_cycle_day"),
        UniqueConstraint("period_id", "day_of_week", name="uq_work_day_patterns_period_weekday"),
        UniqueConstraint("period_id", "cycle_day_index", name="uq_work_day_patterns_period_cycle_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    period_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_periods.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cycle_day_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_working_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    template: Mapped[ScheduleTemplate | None] = relationship(back_populates="default_patterns")
    period: Mapped[SchedulePeriod | None] = relationship(back_populates="patterns")
    time_slots: Mapped[list[TimeSlot]] = relationship(
        back_populates="pattern",
        cascade="all, delete-orphan",
        order_by="TimeSlot.sort_order",
    )


class ExceptionDayOverride(Base):
    __tablename__ = "exception_day_overrides"
    __table_args__ = (
        UniqueConstraint("org_id", "employee_id", "day_date", name="uq_exception_day_overrides_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    is_working_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    time_slots: Mapped[list[TimeSlot]] = relationship(
        back_populates="override",
        cascade="all, delete-orphan",
        order_by="TimeSlot.sort_order",
    )


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pattern_id: Mapped[int | None] = mapped_column(
        ForeignKey("work_day_patterns.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    override_id: Mapped[int | None] = mapped_column(
        ForeignKey("exception_day_overrides.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    is_break: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    pattern: Mapped[WorkDayPattern | None] = relationship(back_populates="time_slots")
    override: Mapped[ExceptionDayOverride | None] = relationship(back_populates="time_slots")


class EmployeeScheduleAssignment(Base):
    __tablename__ = "employee_schedule_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_id: Mapped[int] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    template: Mapped[ScheduleTemplate] = relationship()


class AbsenceRequest(Base):
    __tablename__ = "absence_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    absence_type: Mapped[str] = mapped_column(String(50), nullable=False, default="VACATION")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[AbsenceStatus] = mapped_column(
        Enum(AbsenceStatus, name="absence_status"),
        nullable=False,
        default=AbsenceStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class HolidayCalendarDay(Base):
    __tablename__ = "holiday_calendar_days"
    __table_args__ = (UniqueConstraint("org_id", "day_date", name="uq_holiday_calendar_days_org_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class TimeEntry(Base):
    __tablename__ = "time_entries"
    __table_args__ = (Index("ix_time_entries_employee_ts", "employee_id", "ts_utc"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entry_type: Mapped[TimeEntryType] = mapped_column(
        Enum(TimeEntryType, name="time_entry_type"),
        nullable=False,
    )
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    auto_close_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WorkdaySummary(Base):
    __tablename__ = "workday_summaries"
    __table_args__ = (
        UniqueConstraint("org_id", "employee_id", "day_date", name="uq_workday_summaries_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    worked_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    compliance_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="IN_PROGRESS")
    resolution_status: Mapped[str] = mapped_column(String(50), nullable=False, default="OK")
    data_quality: Mapped[str] = mapped_column(String(20), nullable=False, default="HIGH")
    source_layer: Mapped[str | None] = mapped_column(String(50), nullable=True)
    flags: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index(
            "uq_alerts_active_employee_day_type",
            "org_id",
            "employee_id",
            "day_date",
            "alert_type",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(AlertSeverity, name="alert_severity"),
        nullable=False,
        default=AlertSeverity.WARNING,
    )
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, name="alert_status"),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class OverworkAuthorization(Base):
    __tablename__ = "overwork_authorizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    minutes_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    minutes_approved: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[AuthorizationStatus] = mapped_column(
        Enum(AuthorizationStatus, name="overwork_authorization_status"),
        nullable=False,
        default=AuthorizationStatus.PENDING,
        index=True,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TimeBankMovement(Base):
    __tablename__ = "time_bank_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    origin: Mapped[TimeBankOrigin] = mapped_column(
        Enum(TimeBankOrigin, name="time_bank_origin"),
        nullable=False,
    )
    reference_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class OnCallSchedule(Base):
    __tablename__ = "on_call_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[OnCallStatus] = mapped_column(
        Enum(OnCallStatus, name="on_call_status"),
        nullable=False,
        default=OnCallStatus.SCHEDULED,
    )
    compensation_type: Mapped[CompensationType] = mapped_column(
        Enum(CompensationType, name="compensation_type"),
        nullable=False,
        default=CompensationType.NONE,
    )
    compensation_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    compensation_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR", server_default=text("'EUR'"))

    interventions: Mapped[list[OnCallIntervention]] = relationship(back_populates="schedule")
    allowance: Mapped[OnCallAllowance | None] = relationship(back_populates="schedule", uselist=False)


class OnCallIntervention(Base):
    __tablename__ = "on_call_interventions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    category: Mapped[InterventionCategory | None] = mapped_column(
        Enum(InterventionCategory, name="intervention_category"),
        nullable=True,
    )
    inside_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    outside_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    schedule: Mapped[OnCallSchedule] = relationship(back_populates="interventions")


class OnCallAllowance(Base):
    __tablename__ = "on_call_allowances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    compensation_type: Mapped[CompensationType] = mapped_column(
        Enum(CompensationType, name="compensation_type"),
        nullable=False,
    )
    minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR", server_default=text("'EUR'"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    schedule: Mapped[OnCallSchedule] = relationship(back_populates="allowance")


class JobRun(Base):
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    stage: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    status: Mapped[JobRunStatus] = mapped_column(
        Enum(JobRunStatus, name="job_run_status"),
        nullable=False,
        default=JobRunStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    started_at_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
