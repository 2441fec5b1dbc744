from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from schedule_engine.models import Employee, Organization
from schedule_engine.services.pattern_store import storage_errors
from schedule_engine.settings import get_settings

logger = logging.getLogger("schedule_engine.org_config")


class OrganizationPolicy(BaseModel):
    """Per-organization knobs, merged over defaults at the storage boundary."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    timezone: str = "Europe/Madrid"
    tolerance_minutes: int = Field(default=15, ge=0, le=240)
    early_clock_in_tolerance_minutes: int = Field(default=30, ge=0, le=480)
    late_clock_out_tolerance_minutes: int = Field(default=60, ge=0, le=720)
    complete_threshold: float = Field(default=0.95, gt=0, le=2)
    incomplete_threshold: float = Field(default=0.70, ge=0, le=2)
    absence_margin_minutes: int = Field(default=60, ge=0, le=1440)
    non_workday_clock_in_allowed: bool = True

    rollover_lookback_days: int = Field(default=3, ge=1, le=14)
    rollover_auto_close_enabled: bool = True
    auto_close_tolerance_minutes: int = Field(default=15, ge=0, le=720)
    safety_close_lookback_days: int = Field(default=2, ge=1, le=7)
    safety_close_max_open_hours: int = Field(default=24, ge=1, le=72)

    overtime_tolerance_minutes: int = Field(default=15, ge=0, le=240)
    overtime_rounding_increment_minutes: int = Field(default=5, ge=1, le=60)
    time_bank_max_positive_minutes: int = Field(default=4800, ge=0)
    overwork_authorization_expiry_days: int = Field(default=7, ge=1, le=90)

    on_call_lookback_days: int = Field(default=7, ge=1, le=30)
    on_call_intervention_factor: float = Field(default=1.0, ge=0, le=5)

    @property
    def tz(self) -> ZoneInfo:
        return resolve_timezone(self.timezone)


@lru_cache(maxsize=64)
def resolve_timezone(name: str | None) -> ZoneInfo:
    fallback = get_settings().default_timezone
    try:
        return ZoneInfo(name or fallback)
    except ZoneInfoNotFoundError:
        logger.warning("organization_timezone_invalid", extra={"timezone": name, "fallback": fallback})
        return ZoneInfo(fallback)


def build_policy(raw_settings: dict[str, Any] | None, *, timezone: str | None = None) -> OrganizationPolicy:
    merged: dict[str, Any] = dict(raw_settings or {})
    if timezone:
        merged["timezone"] = timezone
    try:
        return OrganizationPolicy.model_validate(merged)
    except ValidationError as exc:
        invalid_fields = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
        logger.warning(
            "organization_policy_invalid_fields",
            extra={"invalid_fields": sorted(invalid_fields)},
        )
        cleaned = {key: value for key, value in merged.items() if key not in invalid_fields}
        return OrganizationPolicy.model_validate(cleaned)


class OrganizationDirectory(Protocol):
    def get_policy(self, org_id: int) -> OrganizationPolicy | None: ...

    def list_active_employee_ids(self, org_id: int) -> list[int]: ...

    def list_active_org_ids(self) -> list[int]: ...


class SqlOrganizationDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_policy(self, org_id: int) -> OrganizationPolicy | None:
        with storage_errors():
            organization = self.db.get(Organization, org_id)
        if organization is None:
            return None
        return build_policy(organization.settings, timezone=organization.timezone)

    def list_active_employee_ids(self, org_id: int) -> list[int]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(Employee.id)
                    .where(Employee.org_id == org_id, Employee.is_active.is_(True))
                    .order_by(Employee.id.asc())
                ).all()
            )

    def list_active_org_ids(self) -> list[int]:
        with storage_errors():
            return list(
                self.db.scalars(
                    select(Organization.id).where(Organization.is_active.is_(True)).order_by(Organization.id.asc())
                ).all()
            )
