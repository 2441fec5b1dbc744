from datetime import date
from typing import Any, Literal

from pydantic import AwareDatetime, BaseModel, Field, model_validator

from schedule_engine.models import TimeEntryType


class PeriodRead(BaseModel):
    type: str
    weekly_hours: float | None = None


class EffectiveScheduleRead(BaseModel):
    date: date
    is_working_day: bool
    is_holiday: bool
    holiday_name: str | None = None
    hours_expected: float
    expected_minutes: int
    expected_entry_time: str | None = None
    expected_exit_time: str | None = None
    break_start: str | None = None
    break_end: str | None = None
    period: PeriodRead | None = None
    source_layer: str
    absence_type: str | None = None
    weekly_target_minutes: int | None = None
    warnings: list[str] = Field(default_factory=list)


class WeekScheduleRead(BaseModel):
    week_start: date
    week_end: date
    days: list[EffectiveScheduleRead]
    total_expected_minutes: int
    total_expected_hours: float


class ScheduleRangeRead(BaseModel):
    start_date: date
    end_date: date
    days: list[EffectiveScheduleRead]
    total_expected_minutes: int


class DayComplianceRead(BaseModel):
    date: date
    hours_expected: float
    hours_worked: float
    expected_minutes: int
    worked_minutes: int
    compliance_ratio: float
    status: str
    has_clocked_in: bool
    has_clocked_out: bool
    is_absent: bool
    flags: list[str] = Field(default_factory=list)
    difference_minutes: int | None = None


class PunchCheckRequest(BaseModel):
    entry_type: TimeEntryType
    at: AwareDatetime


class PunchCheckRead(BaseModel):
    date: date
    entry_type: TimeEntryType
    allowed: bool
    warnings: list[str] = Field(default_factory=list)
    deviation_minutes: int | None = None


class ScheduleRangeQuery(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_range(self) -> "ScheduleRangeQuery":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if (self.end_date - self.start_date).days > 366:
            raise ValueError("Range cannot exceed 366 days")
        return self


class JobTriggerRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    run_now: bool = False


class JobFailureRead(BaseModel):
    employee_id: int
    error_code: str
    message: str


class JobResultRead(BaseModel):
    job_type: str
    org_id: int
    processed: int
    changed: int
    failed: int
    failures: list[JobFailureRead] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class JobTriggerResponse(BaseModel):
    job_type: str
    org_id: int
    status: Literal["ENQUEUED", "DEDUPLICATED", "COMPLETED"]
    job_run_id: int | None = None
    result: JobResultRead | None = None
