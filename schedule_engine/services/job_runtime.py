from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timezone
from typing import Any, ClassVar, Generic, Protocol, TypeVar
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from schedule_engine.db import SessionLocal
from schedule_engine.errors import FatalJobError, TransientStorageError
from schedule_engine.services.alerts import AlertSink, SqlAlertSink
from schedule_engine.services.org_config import OrganizationDirectory, OrganizationPolicy, SqlOrganizationDirectory
from schedule_engine.services.pattern_store import PatternStore, SqlPatternStore, storage_errors
from schedule_engine.services.punch_store import PunchStore, SqlPunchStore
from schedule_engine.services.schedule_resolver import ScheduleResolver
from schedule_engine.services.time_bank import SqlTimeBankStore, TimeBankStore
from schedule_engine.settings import get_settings

logger = logging.getLogger("schedule_engine.jobs")

PayloadT = TypeVar("PayloadT", bound=BaseModel)
PayloadT_contra = TypeVar("PayloadT_contra", bound=BaseModel, contravariant=True)
UnitT = TypeVar("UnitT")


def _noop() -> None:
    return None


@dataclass
class JobServices:
    """Stores bound to one unit of work (one database session in production)."""

    patterns: PatternStore
    punches: PunchStore
    time_bank: TimeBankStore
    alerts: AlertSink
    organizations: OrganizationDirectory
    commit: Callable[[], None] = _noop
    rollback: Callable[[], None] = _noop

    def resolver(self) -> ScheduleResolver:
        return ScheduleResolver(self.patterns)


UnitOfWork = Callable[[], AbstractContextManager[JobServices]]


@contextmanager
def sql_unit_of_work(session_factory: sessionmaker[Session]) -> Iterator[JobServices]:
    db = session_factory()

    def _commit() -> None:
        with storage_errors():
            db.commit()

    try:
        yield JobServices(
            patterns=SqlPatternStore(db),
            punches=SqlPunchStore(db),
            time_bank=SqlTimeBankStore(db),
            alerts=SqlAlertSink(db),
            organizations=SqlOrganizationDirectory(db),
            commit=_commit,
            rollback=db.rollback,
        )
    finally:
        db.close()


def sql_unit_of_work_factory(session_factory: sessionmaker[Session]) -> UnitOfWork:
    return lambda: sql_unit_of_work(session_factory)


def default_unit_of_work() -> UnitOfWork:
    return sql_unit_of_work_factory(SessionLocal)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def local_midnight_utc(now_utc: datetime, tz: ZoneInfo) -> datetime:
    """UTC instant of the most recent local midnight in ``tz``."""
    local_today = now_utc.astimezone(tz).date()
    return datetime.combine(local_today, dt_time.min, tzinfo=tz).astimezone(timezone.utc)


class OrgJobPayload(BaseModel):
    org_id: int = Field(ge=1)


@dataclass(frozen=True, slots=True)
class EmployeeFailure:
    employee_id: int
    error_code: str
    message: str


@dataclass
class JobResult:
    job_type: str
    org_id: int
    processed: int = 0
    changed: int = 0
    failures: list[EmployeeFailure] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "org_id": self.org_id,
            "processed": self.processed,
            "changed": self.changed,
            "failed": self.failed,
            "failures": [
                {"employee_id": item.employee_id, "error_code": item.error_code, "message": item.message}
                for item in self.failures
            ],
            "details": self.details,
        }


class Job(Protocol[PayloadT_contra]):
    job_type: str
    stage: int

    def singleton_key(self, payload: PayloadT_contra) -> str: ...

    def execute(self, payload: PayloadT_contra, *, now_utc: datetime | None = None) -> JobResult: ...


class SweepJob(Generic[PayloadT]):
    """Shared plumbing for org-scoped sweeps; subclasses implement ``execute``."""

    job_type: ClassVar[str]
    payload_model: ClassVar[type[BaseModel]]
    stage: ClassVar[int] = 1
    singleton_fields: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        *,
        concurrency: int | None = None,
        max_duration_seconds: int | None = None,
    ):
        settings = get_settings()
        self.unit_of_work = unit_of_work
        self.concurrency = max(1, concurrency if concurrency is not None else settings.sweep_concurrency)
        self.max_duration_seconds = (
            max_duration_seconds if max_duration_seconds is not None else settings.job_max_duration_seconds
        )

    def parse_payload(self, raw: dict[str, Any]) -> PayloadT:
        return self.payload_model.model_validate(raw)  # type: ignore[return-value]

    def singleton_key(self, payload: PayloadT) -> str:
        parts = [self.job_type, str(payload.org_id)]  # type: ignore[attr-defined]
        for name in self.singleton_fields:
            value = getattr(payload, name, None)
            if value is not None:
                parts.append(f"{name}={value}")
        return ":".join(parts)

    def execute(self, payload: PayloadT, *, now_utc: datetime | None = None) -> JobResult:
        raise NotImplementedError

    def run(self, raw_payload: dict[str, Any], *, now_utc: datetime | None = None) -> JobResult:
        return self.execute(self.parse_payload(raw_payload), now_utc=now_utc)

    @staticmethod
    def now(now_utc: datetime | None) -> datetime:
        return now_utc or datetime.now(timezone.utc)

    def load_policy(self, org_id: int) -> OrganizationPolicy:
        with self.unit_of_work() as services:
            policy = services.organizations.get_policy(org_id)
        if policy is None:
            raise FatalJobError("ORGANIZATION_NOT_FOUND", "Organization does not exist.", org_id=org_id)
        return policy

    def run_employee_units(
        self,
        *,
        org_id: int,
        units: Sequence[UnitT],
        handler: Callable[[JobServices, UnitT], bool],
        employee_id_of: Callable[[UnitT], int],
        details: dict[str, Any] | None = None,
    ) -> JobResult:
        """Process units in isolation: one unit of work each, failures recorded and skipped.

        Transient storage errors abort the sweep so the queue can retry it.
        """
        deadline = time.monotonic() + self.max_duration_seconds

        def _run_one(unit: UnitT) -> tuple[bool, EmployeeFailure | None]:
            employee_id = employee_id_of(unit)
            if time.monotonic() > deadline:
                raise FatalJobError(
                    "JOB_TIMEOUT",
                    "Maximum execution time exceeded.",
                    org_id=org_id,
                    employee_id=employee_id,
                )
            with self.unit_of_work() as services:
                try:
                    changed = bool(handler(services, unit))
                    services.commit()
                except TransientStorageError:
                    services.rollback()
                    raise
                except Exception as exc:
                    services.rollback()
                    failure = FatalJobError(
                        "EMPLOYEE_PROCESSING_FAILED",
                        str(exc) or exc.__class__.__name__,
                        org_id=org_id,
                        employee_id=employee_id,
                    )
                    logger.exception(
                        "employee_job_failed",
                        extra={
                            "job_type": self.job_type,
                            "org_id": failure.org_id,
                            "employee_id": failure.employee_id,
                            "error_type": exc.__class__.__name__,
                        },
                    )
                    return False, EmployeeFailure(
                        employee_id=employee_id,
                        error_code=exc.__class__.__name__,
                        message=failure.message,
                    )
            return changed, None

        if self.concurrency <= 1 or len(units) <= 1:
            outcomes = [_run_one(unit) for unit in units]
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.concurrency, len(units)),
                thread_name_prefix=f"{self.job_type}-{org_id}",
            ) as pool:
                outcomes = list(pool.map(_run_one, units))

        result = JobResult(
            job_type=self.job_type,
            org_id=org_id,
            processed=len(outcomes),
            changed=sum(1 for changed, _ in outcomes if changed),
            failures=[failure for _, failure in outcomes if failure is not None],
            details=dict(details or {}),
        )
        logger.info(
            "job_completed",
            extra={
                "job_type": self.job_type,
                "org_id": org_id,
                "processed": result.processed,
                "changed": result.changed,
                "failed": result.failed,
            },
        )
        return result
