from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from schedule_engine.db import get_db
from schedule_engine.errors import ApiError
from schedule_engine.models import Employee
from schedule_engine.schemas import (
    DayComplianceRead,
    EffectiveScheduleRead,
    PunchCheckRead,
    PunchCheckRequest,
    ScheduleRangeQuery,
    ScheduleRangeRead,
    WeekScheduleRead,
)
from schedule_engine.services.compliance import evaluate_stored_day, validate_time_entry
from schedule_engine.services.org_config import OrganizationPolicy, SqlOrganizationDirectory
from schedule_engine.services.pattern_store import SqlPatternStore
from schedule_engine.services.punch_store import SqlPunchStore
from schedule_engine.services.schedule_range import ScheduleRangeExpander
from schedule_engine.services.schedule_resolver import ScheduleResolver

router = APIRouter(tags=["schedules"])


def _load_policy(db: Session, *, org_id: int, employee_id: int) -> OrganizationPolicy:
    policy = SqlOrganizationDirectory(db).get_policy(org_id)
    if policy is None:
        raise ApiError(status_code=404, code="ORGANIZATION_NOT_FOUND", message="Organization not found.")
    employee_id_found = db.scalar(
        select(Employee.id).where(Employee.id == employee_id, Employee.org_id == org_id)
    )
    if employee_id_found is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    return policy


def _local_today(policy: OrganizationPolicy) -> date:
    return datetime.now(timezone.utc).astimezone(policy.tz).date()


@router.get(
    "/api/orgs/{org_id}/employees/{employee_id}/schedule",
    response_model=EffectiveScheduleRead,
)
def get_effective_schedule(
    org_id: int,
    employee_id: int,
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> EffectiveScheduleRead:
    policy = _load_policy(db, org_id=org_id, employee_id=employee_id)
    resolver = ScheduleResolver(SqlPatternStore(db))
    schedule = resolver.resolve(org_id=org_id, employee_id=employee_id, day=day or _local_today(policy))
    return EffectiveScheduleRead.model_validate(schedule.to_dict())


@router.get(
    "/api/orgs/{org_id}/employees/{employee_id}/schedule/range",
    response_model=ScheduleRangeRead,
)
def get_schedule_range(
    org_id: int,
    employee_id: int,
    start_date: date = Query(),
    end_date: date = Query(),
    db: Session = Depends(get_db),
) -> ScheduleRangeRead:
    try:
        query = ScheduleRangeQuery(start_date=start_date, end_date=end_date)
    except ValidationError as exc:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message=str(exc.errors()[0]["msg"])) from exc
    _load_policy(db, org_id=org_id, employee_id=employee_id)
    expander = ScheduleRangeExpander(ScheduleResolver(SqlPatternStore(db)))
    days = expander.resolve_range(
        org_id=org_id,
        employee_id=employee_id,
        start_date=query.start_date,
        end_date=query.end_date,
    )
    return ScheduleRangeRead(
        start_date=query.start_date,
        end_date=query.end_date,
        days=[EffectiveScheduleRead.model_validate(item.to_dict()) for item in days],
        total_expected_minutes=sum(item.expected_minutes for item in days),
    )


@router.get(
    "/api/orgs/{org_id}/employees/{employee_id}/schedule/week",
    response_model=WeekScheduleRead,
)
def get_week_schedule(
    org_id: int,
    employee_id: int,
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> WeekScheduleRead:
    policy = _load_policy(db, org_id=org_id, employee_id=employee_id)
    expander = ScheduleRangeExpander(ScheduleResolver(SqlPatternStore(db)))
    week = expander.resolve_week(org_id=org_id, employee_id=employee_id, day=day or _local_today(policy))
    return WeekScheduleRead.model_validate(week.to_dict())


@router.get(
    "/api/orgs/{org_id}/employees/{employee_id}/compliance",
    response_model=DayComplianceRead,
)
def get_day_compliance(
    org_id: int,
    employee_id: int,
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> DayComplianceRead:
    policy = _load_policy(db, org_id=org_id, employee_id=employee_id)
    schedule = ScheduleResolver(SqlPatternStore(db)).resolve(
        org_id=org_id,
        employee_id=employee_id,
        day=day or _local_today(policy),
    )
    result = evaluate_stored_day(
        SqlPunchStore(db),
        schedule,
        org_id=org_id,
        employee_id=employee_id,
        policy=policy,
        now_utc=datetime.now(timezone.utc),
    )
    return DayComplianceRead.model_validate(result.to_dict())


@router.post(
    "/api/orgs/{org_id}/employees/{employee_id}/punch-check",
    response_model=PunchCheckRead,
)
def check_punch(
    org_id: int,
    employee_id: int,
    payload: PunchCheckRequest,
    db: Session = Depends(get_db),
) -> PunchCheckRead:
    """Dry run of a punch against the day's schedule; nothing is written."""
    policy = _load_policy(db, org_id=org_id, employee_id=employee_id)
    local_day = payload.at.astimezone(policy.tz).date()
    schedule = ScheduleResolver(SqlPatternStore(db)).resolve(org_id=org_id, employee_id=employee_id, day=local_day)
    check = validate_time_entry(schedule, payload.entry_type, payload.at, policy)
    return PunchCheckRead(
        date=local_day,
        entry_type=payload.entry_type,
        allowed=check.allowed,
        warnings=list(check.warnings),
        deviation_minutes=check.deviation_minutes,
    )
