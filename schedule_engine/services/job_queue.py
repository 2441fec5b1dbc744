from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from schedule_engine.db import SessionLocal
from schedule_engine.errors import TransientStorageError
from schedule_engine.models import JobRun, JobRunStatus
from schedule_engine.services.calendar import start_of_week
from schedule_engine.services.job_runtime import SweepJob, UnitOfWork, default_unit_of_work
from schedule_engine.services.jobs.open_punch import (
    JOB_TYPE_OPEN_PUNCH_ROLLOVER,
    JOB_TYPE_OPEN_PUNCH_SAFETY_CLOSE,
    OpenPunchRolloverJob,
    OpenPunchSafetyCloseJob,
)
from schedule_engine.services.jobs.on_call import JOB_TYPE_ON_CALL_SETTLEMENT, OnCallSettlementJob
from schedule_engine.services.jobs.overtime import (
    JOB_TYPE_OVERWORK_AUTHORIZATION_EXPIRY,
    JOB_TYPE_WEEKLY_OVERTIME,
    OverworkAuthorizationExpiryJob,
    WeeklyOvertimeJob,
)
from schedule_engine.services.org_config import OrganizationDirectory, SqlOrganizationDirectory
from schedule_engine.settings import get_settings

logger = logging.getLogger("schedule_engine.job_queue")

JobRegistry = dict[str, SweepJob[Any]]

DAILY_SWEEP_JOB_TYPES = (
    JOB_TYPE_OPEN_PUNCH_ROLLOVER,
    JOB_TYPE_OPEN_PUNCH_SAFETY_CLOSE,
    JOB_TYPE_ON_CALL_SETTLEMENT,
    JOB_TYPE_OVERWORK_AUTHORIZATION_EXPIRY,
)
MAX_ERROR_LENGTH = 4000


class UnknownJobTypeError(ValueError):
    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


def build_job_registry(unit_of_work: UnitOfWork | None = None) -> JobRegistry:
    uow = unit_of_work or default_unit_of_work()
    jobs: list[SweepJob[Any]] = [
        OpenPunchRolloverJob(uow),
        OpenPunchSafetyCloseJob(uow),
        WeeklyOvertimeJob(uow),
        OnCallSettlementJob(uow),
        OverworkAuthorizationExpiryJob(uow),
    ]
    return {job.job_type: job for job in jobs}


def dedup_slot(now_utc: datetime, window_minutes: int) -> int:
    window_seconds = max(1, window_minutes) * 60
    return math.floor(now_utc.timestamp() / window_seconds)


def build_dedup_key(singleton_key: str, *, now_utc: datetime, window_minutes: int) -> str:
    return f"{singleton_key}:{dedup_slot(now_utc, window_minutes)}"


def retry_delay(attempts: int, *, backoff_seconds: int) -> timedelta:
    return timedelta(seconds=max(1, backoff_seconds) * (2 ** max(0, attempts - 1)))


class JobQueue:
    """Durable job rows with a unique dedup key per job, org and time window.

    A second enqueue inside the same window hits the unique index and is
    dropped. Stage-2 jobs wait while an earlier stage for the same org is
    still pending or running. A run left RUNNING past job_max_duration_seconds
    is treated as abandoned: it goes back to PENDING with backoff, or to FAILED
    once its attempts are spent.
    """

    def __init__(self, db: Session, registry: JobRegistry):
        self.db = db
        self.registry = registry
        self.settings = get_settings()

    def get_job(self, job_type: str) -> SweepJob[Any]:
        job = self.registry.get(job_type)
        if job is None:
            raise UnknownJobTypeError(job_type)
        return job

    def _stale_cutoff(self, now_utc: datetime) -> datetime:
        return now_utc - timedelta(seconds=max(1, self.settings.job_max_duration_seconds))

    def _new_run(self, job_type: str, payload: dict[str, Any], *, now_utc: datetime, status: JobRunStatus) -> JobRun:
        job = self.get_job(job_type)
        parsed = job.parse_payload(payload)
        return JobRun(
            job_type=job_type,
            org_id=parsed.org_id,  # type: ignore[attr-defined]
            dedup_key=build_dedup_key(
                job.singleton_key(parsed),
                now_utc=now_utc,
                window_minutes=self.settings.job_dedup_window_minutes,
            ),
            stage=job.stage,
            payload=parsed.model_dump(mode="json"),
            status=status,
            attempts=0,
            scheduled_at_utc=now_utc,
            started_at_utc=now_utc if status == JobRunStatus.RUNNING else None,
            result={},
        )

    def _insert(self, run: JobRun) -> bool:
        try:
            with self.db.begin_nested():
                self.db.add(run)
                self.db.flush()
        except IntegrityError:
            self.db.commit()
            logger.info(
                "job_enqueue_deduplicated",
                extra={"job_type": run.job_type, "org_id": run.org_id, "dedup_key": run.dedup_key},
            )
            return False
        self.db.commit()
        return True

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        now_utc: datetime | None = None,
    ) -> JobRun | None:
        reference_utc = now_utc or datetime.now(timezone.utc)
        run = self._new_run(job_type, payload, now_utc=reference_utc, status=JobRunStatus.PENDING)
        if not self._insert(run):
            return None
        logger.info(
            "job_enqueued",
            extra={"job_type": job_type, "org_id": run.org_id, "job_run_id": run.id, "stage": run.stage},
        )
        return run

    def _in_flight_count(self, run: JobRun, *, now_utc: datetime) -> int:
        return int(
            self.db.scalar(
                select(func.count(JobRun.id)).where(
                    JobRun.org_id == run.org_id,
                    JobRun.job_type == run.job_type,
                    JobRun.status == JobRunStatus.RUNNING,
                    JobRun.started_at_utc >= self._stale_cutoff(now_utc),
                )
            )
            or 0
        )

    def run_now(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        now_utc: datetime | None = None,
    ) -> JobRun | None:
        """Run a job inside the caller, recorded as a JobRun under the usual dedup key.

        Returns None when the same job for the organization was already queued in
        this window or is still running. Errors are recorded on the row and re-raised.
        """
        reference_utc = now_utc or datetime.now(timezone.utc)
        run = self._new_run(job_type, payload, now_utc=reference_utc, status=JobRunStatus.RUNNING)
        if self._in_flight_count(run, now_utc=reference_utc):
            logger.info(
                "job_run_now_in_flight",
                extra={"job_type": job_type, "org_id": run.org_id, "dedup_key": run.dedup_key},
            )
            return None
        if not self._insert(run):
            return None

        error = self._execute(run, self.get_job(job_type), now_utc=reference_utc)
        if error is not None:
            raise error
        return run

    def _reclaim_stale_running(self, *, now_utc: datetime) -> list[JobRun]:
        stmt = (
            select(JobRun)
            .where(
                JobRun.status == JobRunStatus.RUNNING,
                JobRun.started_at_utc < self._stale_cutoff(now_utc),
            )
            .order_by(JobRun.id.asc())
            .with_for_update(skip_locked=True)
        )
        stale = list(self.db.scalars(stmt).all())
        for run in stale:
            logger.warning(
                "job_run_stale",
                extra={
                    "job_type": run.job_type,
                    "org_id": run.org_id,
                    "job_run_id": run.id,
                    "started_at_utc": run.started_at_utc,
                },
            )
            self._mark_failure(
                run,
                error=TimeoutError(
                    f"still RUNNING after {self.settings.job_max_duration_seconds}s; worker presumed lost"
                ),
                now_utc=now_utc,
                retryable=True,
            )
        return stale

    def _claim_due_pending(self, *, now_utc: datetime, limit: int) -> list[JobRun]:
        stmt = (
            select(JobRun)
            .where(
                JobRun.status == JobRunStatus.PENDING,
                JobRun.scheduled_at_utc <= now_utc,
            )
            .order_by(JobRun.stage.asc(), JobRun.scheduled_at_utc.asc(), JobRun.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        runs = list(self.db.scalars(stmt).all())
        for run in runs:
            run.status = JobRunStatus.RUNNING
            run.started_at_utc = now_utc
        self.db.commit()
        return runs

    def _blocked_by_earlier_stage(self, run: JobRun, *, now_utc: datetime) -> bool:
        if run.stage <= 1:
            return False
        pending = self.db.scalar(
            select(func.count(JobRun.id)).where(
                JobRun.org_id == run.org_id,
                JobRun.stage < run.stage,
                JobRun.id != run.id,
                or_(
                    JobRun.status == JobRunStatus.PENDING,
                    and_(
                        JobRun.status == JobRunStatus.RUNNING,
                        JobRun.started_at_utc >= self._stale_cutoff(now_utc),
                    ),
                ),
            )
        )
        return bool(pending)

    def _release(self, run: JobRun) -> None:
        run.status = JobRunStatus.PENDING
        run.started_at_utc = None
        self.db.commit()

    def _mark_succeeded(self, run: JobRun, *, result: dict[str, Any], now_utc: datetime) -> None:
        run.attempts = (run.attempts or 0) + 1
        run.status = JobRunStatus.SUCCEEDED
        run.finished_at_utc = now_utc
        run.last_error = None
        run.result = result
        self.db.commit()

    def _mark_failure(self, run: JobRun, *, error: Exception, now_utc: datetime, retryable: bool) -> None:
        next_attempts = (run.attempts or 0) + 1
        run.attempts = next_attempts
        run.last_error = f"{error.__class__.__name__}: {error}"[:MAX_ERROR_LENGTH]
        if retryable and next_attempts < self.settings.job_max_attempts:
            run.status = JobRunStatus.PENDING
            run.started_at_utc = None
            run.scheduled_at_utc = now_utc + retry_delay(
                next_attempts,
                backoff_seconds=self.settings.job_retry_backoff_seconds,
            )
        else:
            run.status = JobRunStatus.FAILED
            run.finished_at_utc = now_utc
        self.db.commit()

    def _execute(self, run: JobRun, job: SweepJob[Any], *, now_utc: datetime) -> Exception | None:
        try:
            result = job.run(dict(run.payload or {}), now_utc=now_utc)
        except TransientStorageError as exc:
            logger.warning(
                "job_transient_failure",
                extra={
                    "job_type": run.job_type,
                    "org_id": run.org_id,
                    "job_run_id": run.id,
                    "attempts": (run.attempts or 0) + 1,
                },
            )
            self._mark_failure(run, error=exc, now_utc=now_utc, retryable=True)
            return exc
        except Exception as exc:
            logger.exception(
                "job_failed",
                extra={"job_type": run.job_type, "org_id": run.org_id, "job_run_id": run.id},
            )
            self._mark_failure(run, error=exc, now_utc=now_utc, retryable=False)
            return exc
        self._mark_succeeded(run, result=result.to_dict(), now_utc=now_utc)
        return None

    def run_pending(self, *, now_utc: datetime | None = None, limit: int | None = None) -> list[JobRun]:
        reference_utc = now_utc or datetime.now(timezone.utc)
        self._reclaim_stale_running(now_utc=reference_utc)
        claimed = self._claim_due_pending(
            now_utc=reference_utc,
            limit=max(1, limit if limit is not None else self.settings.job_batch_size),
        )
        processed: list[JobRun] = []
        for run in claimed:
            if self._blocked_by_earlier_stage(run, now_utc=reference_utc):
                logger.info(
                    "job_waiting_for_earlier_stage",
                    extra={"job_type": run.job_type, "org_id": run.org_id, "job_run_id": run.id},
                )
                self._release(run)
                continue

            job = self.registry.get(run.job_type)
            if job is None:
                self._mark_failure(
                    run,
                    error=UnknownJobTypeError(run.job_type),
                    now_utc=reference_utc,
                    retryable=False,
                )
                processed.append(run)
                continue

            self._execute(run, job, now_utc=reference_utc)
            processed.append(run)
        return processed


def dispatch_scheduled_sweeps(
    queue: JobQueue,
    organizations: OrganizationDirectory,
    *,
    now_utc: datetime | None = None,
) -> list[JobRun]:
    """Enqueue the periodic sweeps for every active organization."""
    reference_utc = now_utc or datetime.now(timezone.utc)
    overtime_weekday = queue.settings.weekly_overtime_dispatch_weekday
    enqueued: list[JobRun] = []
    for org_id in organizations.list_active_org_ids():
        for job_type in DAILY_SWEEP_JOB_TYPES:
            run = queue.enqueue(job_type, {"org_id": org_id}, now_utc=reference_utc)
            if run is not None:
                enqueued.append(run)

        policy = organizations.get_policy(org_id)
        if policy is None:
            continue
        local_today = reference_utc.astimezone(policy.tz).date()
        if local_today.weekday() != overtime_weekday:
            continue
        previous_week = start_of_week(local_today) - timedelta(days=7)
        run = queue.enqueue(
            JOB_TYPE_WEEKLY_OVERTIME,
            {"org_id": org_id, "week_start": previous_week.isoformat()},
            now_utc=reference_utc,
        )
        if run is not None:
            enqueued.append(run)
    return enqueued


def run_sweep_tick(now_utc: datetime | None = None, *, db: Session | None = None) -> dict[str, int]:
    if db is None:
        with SessionLocal() as managed_db:
            return run_sweep_tick(now_utc, db=managed_db)

    reference_utc = now_utc or datetime.now(timezone.utc)
    queue = JobQueue(db, build_job_registry())
    enqueued = dispatch_scheduled_sweeps(queue, SqlOrganizationDirectory(db), now_utc=reference_utc)
    processed = queue.run_pending(now_utc=reference_utc)
    return {"enqueued": len(enqueued), "processed": len(processed)}
