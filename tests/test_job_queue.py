from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

from sqlalchemy.exc import IntegrityError

from schedule_engine.errors import TransientStorageError
from schedule_engine.models import JobRun, JobRunStatus
from schedule_engine.services.job_queue import (
    DAILY_SWEEP_JOB_TYPES,
    JobQueue,
    UnknownJobTypeError,
    build_dedup_key,
    build_job_registry,
    dispatch_scheduled_sweeps,
    retry_delay,
)
from schedule_engine.services.job_runtime import JobResult, OrgJobPayload, SweepJob
from schedule_engine.services.jobs.overtime import JOB_TYPE_WEEKLY_OVERTIME
from schedule_engine.settings import get_settings
from fakes import ORG_ID, FakeOrganizationDirectory, FakeWorld, utc_policy

NOW = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


class _ScriptedJob(SweepJob[OrgJobPayload]):
    job_type = "scripted"
    payload_model = OrgJobPayload

    def __init__(self, outcome: Exception | None = None, *, stage: int = 1):
        super().__init__(FakeWorld().unit_of_work, concurrency=1)
        self.outcome = outcome
        self.stage = stage  # type: ignore[misc]
        self.calls: list[dict[str, Any]] = []

    def execute(self, payload: OrgJobPayload, *, now_utc: datetime | None = None) -> JobResult:
        self.calls.append(payload.model_dump())
        if self.outcome is not None:
            raise self.outcome
        return JobResult(job_type=self.job_type, org_id=payload.org_id, processed=1, changed=1)


class _NestedTransaction:
    def __enter__(self) -> _NestedTransaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False


class _FakeSession:
    def __init__(
        self,
        *,
        due: list[JobRun] | None = None,
        stale: list[JobRun] | None = None,
        counted: int = 0,
    ):
        self.added: list[JobRun] = []
        # run_pending selects stale RUNNING rows first, then due PENDING rows.
        self._selects = [list(stale or []), list(due or [])]
        self.counted = counted
        self.commits = 0
        self._next_id = 1

    def begin_nested(self) -> _NestedTransaction:
        return _NestedTransaction()

    def add(self, run: JobRun) -> None:
        self._pending = run

    def flush(self) -> None:
        run = self._pending
        if any(existing.dedup_key == run.dedup_key for existing in self.added):
            raise IntegrityError("INSERT INTO job_runs", {}, Exception("duplicate dedup_key"))
        run.id = self._next_id
        self._next_id += 1
        self.added.append(run)

    def commit(self) -> None:
        self.commits += 1

    def scalars(self, _stmt: Any) -> SimpleNamespace:
        batch = self._selects.pop(0) if self._selects else []
        return SimpleNamespace(all=lambda: batch)

    def scalar(self, _stmt: Any) -> int:
        return self.counted


def _run(job_type: str = "scripted", *, stage: int = 1, attempts: int = 0, run_id: int = 1) -> JobRun:
    return JobRun(
        id=run_id,
        job_type=job_type,
        org_id=ORG_ID,
        dedup_key=f"{job_type}:{ORG_ID}:1",
        stage=stage,
        payload={"org_id": ORG_ID},
        status=JobRunStatus.PENDING,
        attempts=attempts,
        scheduled_at_utc=NOW - timedelta(minutes=1),
        result={},
    )


class DedupAndRetryTests(unittest.TestCase):
    def test_dedup_key_is_stable_within_window(self) -> None:
        first = build_dedup_key("scripted:1", now_utc=NOW, window_minutes=20)
        same = build_dedup_key("scripted:1", now_utc=NOW + timedelta(minutes=19, seconds=59), window_minutes=20)
        later = build_dedup_key("scripted:1", now_utc=NOW + timedelta(minutes=20), window_minutes=20)

        self.assertEqual(first, same)
        self.assertNotEqual(first, later)
        self.assertTrue(first.startswith("scripted:1:"))

    def test_retry_delay_doubles(self) -> None:
        self.assertEqual(retry_delay(1, backoff_seconds=30), timedelta(seconds=30))
        self.assertEqual(retry_delay(2, backoff_seconds=30), timedelta(seconds=60))
        self.assertEqual(retry_delay(3, backoff_seconds=30), timedelta(seconds=120))

    def test_registry_lists_every_sweep(self) -> None:
        registry = build_job_registry(FakeWorld().unit_of_work)
        self.assertEqual(set(registry), {*DAILY_SWEEP_JOB_TYPES, JOB_TYPE_WEEKLY_OVERTIME})
        self.assertEqual(registry[JOB_TYPE_WEEKLY_OVERTIME].stage, 2)


class JobQueueEnqueueTests(unittest.TestCase):
    def test_enqueue_creates_pending_run(self) -> None:
        db = _FakeSession()
        queue = JobQueue(db, {"scripted": _ScriptedJob()})  # type: ignore[arg-type]

        run = queue.enqueue("scripted", {"org_id": ORG_ID}, now_utc=NOW)

        self.assertIsNotNone(run)
        self.assertEqual(run.status, JobRunStatus.PENDING)
        self.assertEqual(run.payload, {"org_id": ORG_ID})
        self.assertEqual(run.stage, 1)
        self.assertEqual(run.scheduled_at_utc, NOW)
        self.assertEqual(
            run.dedup_key,
            build_dedup_key("scripted:1", now_utc=NOW, window_minutes=queue.settings.job_dedup_window_minutes),
        )
        self.assertEqual(db.commits, 1)

    def test_second_enqueue_in_window_is_dropped(self) -> None:
        db = _FakeSession()
        queue = JobQueue(db, {"scripted": _ScriptedJob()})  # type: ignore[arg-type]

        queue.enqueue("scripted", {"org_id": ORG_ID}, now_utc=NOW)
        with self.assertLogs("schedule_engine.job_queue", level="INFO") as logs:
            duplicate = queue.enqueue("scripted", {"org_id": ORG_ID}, now_utc=NOW + timedelta(seconds=5))

        self.assertIsNone(duplicate)
        self.assertEqual(len(db.added), 1)
        self.assertTrue(any("job_enqueue_deduplicated" in line for line in logs.output))

    def test_unknown_job_type(self) -> None:
        queue = JobQueue(_FakeSession(), {})  # type: ignore[arg-type]
        with self.assertRaises(UnknownJobTypeError) as ctx:
            queue.enqueue("missing", {"org_id": ORG_ID}, now_utc=NOW)
        self.assertEqual(ctx.exception.job_type, "missing")


class JobQueueRunPendingTests(unittest.TestCase):
    def test_successful_run(self) -> None:
        run = _run()
        job = _ScriptedJob()
        queue = JobQueue(_FakeSession(due=[run]), {"scripted": job})  # type: ignore[arg-type]

        processed = queue.run_pending(now_utc=NOW)

        self.assertEqual(processed, [run])
        self.assertEqual(run.status, JobRunStatus.SUCCEEDED)
        self.assertEqual(run.attempts, 1)
        self.assertEqual(run.finished_at_utc, NOW)
        self.assertEqual(run.result["changed"], 1)
        self.assertEqual(job.calls, [{"org_id": ORG_ID}])

    def test_transient_failure_is_rescheduled_with_backoff(self) -> None:
        run = _run()
        queue = JobQueue(
            _FakeSession(due=[run]),
            {"scripted": _ScriptedJob(TransientStorageError("connection reset"))},  # type: ignore[dict-item]
        )

        with self.assertLogs("schedule_engine.job_queue", level="WARNING"):
            queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.PENDING)
        self.assertEqual(run.attempts, 1)
        self.assertIsNone(run.started_at_utc)
        self.assertEqual(
            run.scheduled_at_utc,
            NOW + retry_delay(1, backoff_seconds=queue.settings.job_retry_backoff_seconds),
        )
        self.assertEqual(run.last_error, "TransientStorageError: connection reset")

    def test_transient_failure_gives_up_after_max_attempts(self) -> None:
        run = _run()
        queue = JobQueue(
            _FakeSession(due=[run]),
            {"scripted": _ScriptedJob(TransientStorageError("connection reset"))},  # type: ignore[dict-item]
        )
        run.attempts = queue.settings.job_max_attempts - 1

        with self.assertLogs("schedule_engine.job_queue", level="WARNING"):
            queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.FAILED)
        self.assertEqual(run.attempts, queue.settings.job_max_attempts)
        self.assertEqual(run.finished_at_utc, NOW)

    def test_other_errors_fail_immediately(self) -> None:
        run = _run()
        queue = JobQueue(
            _FakeSession(due=[run]),
            {"scripted": _ScriptedJob(RuntimeError("boom"))},  # type: ignore[dict-item]
        )

        with self.assertLogs("schedule_engine.job_queue", level="ERROR") as logs:
            queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.FAILED)
        self.assertEqual(run.attempts, 1)
        self.assertEqual(run.last_error, "RuntimeError: boom")
        self.assertTrue(any("job_failed" in line for line in logs.output))

    def test_later_stage_waits_for_earlier_stage(self) -> None:
        run = _run(stage=2)
        job = _ScriptedJob(stage=2)
        queue = JobQueue(_FakeSession(due=[run], counted=1), {"scripted": job})  # type: ignore[arg-type]

        processed = queue.run_pending(now_utc=NOW)

        self.assertEqual(processed, [])
        self.assertEqual(run.status, JobRunStatus.PENDING)
        self.assertIsNone(run.started_at_utc)
        self.assertEqual(job.calls, [])

    def test_later_stage_runs_once_earlier_stage_is_done(self) -> None:
        run = _run(stage=2)
        queue = JobQueue(_FakeSession(due=[run]), {"scripted": _ScriptedJob(stage=2)})  # type: ignore[arg-type]

        queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.SUCCEEDED)

    def test_unregistered_job_type_fails(self) -> None:
        run = _run("retired_job")
        queue = JobQueue(_FakeSession(due=[run]), {})  # type: ignore[arg-type]

        queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.FAILED)
        self.assertIn("Unknown job type", run.last_error)


class _StatementRecordingSession(_FakeSession):
    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self.counted_statements: list[Any] = []

    def scalar(self, _stmt: Any) -> int:
        self.counted_statements.append(_stmt)
        return super().scalar(_stmt)


def _abandoned_run(*, attempts: int = 0) -> JobRun:
    run = _run(attempts=attempts)
    run.status = JobRunStatus.RUNNING
    run.started_at_utc = NOW - timedelta(seconds=get_settings().job_max_duration_seconds + 60)
    return run


class StaleRunTests(unittest.TestCase):
    def test_abandoned_running_run_is_rescheduled(self) -> None:
        run = _abandoned_run()
        job = _ScriptedJob()
        queue = JobQueue(_FakeSession(stale=[run]), {"scripted": job})  # type: ignore[arg-type]

        with self.assertLogs("schedule_engine.job_queue", level="WARNING") as logs:
            processed = queue.run_pending(now_utc=NOW)

        self.assertEqual(processed, [])
        self.assertEqual(job.calls, [])
        self.assertEqual(run.status, JobRunStatus.PENDING)
        self.assertEqual(run.attempts, 1)
        self.assertIsNone(run.started_at_utc)
        self.assertEqual(
            run.scheduled_at_utc,
            NOW + retry_delay(1, backoff_seconds=queue.settings.job_retry_backoff_seconds),
        )
        self.assertTrue(run.last_error.startswith("TimeoutError: still RUNNING"))
        self.assertTrue(any("job_run_stale" in line for line in logs.output))

    def test_abandoned_run_without_attempts_left_fails(self) -> None:
        run = _abandoned_run(attempts=get_settings().job_max_attempts - 1)
        queue = JobQueue(_FakeSession(stale=[run]), {"scripted": _ScriptedJob()})  # type: ignore[arg-type]

        with self.assertLogs("schedule_engine.job_queue", level="WARNING"):
            queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.FAILED)
        self.assertEqual(run.finished_at_utc, NOW)

    def test_stage_check_only_counts_fresh_running_rows(self) -> None:
        run = _run(stage=2)
        db = _StatementRecordingSession(due=[run])
        queue = JobQueue(db, {"scripted": _ScriptedJob(stage=2)})  # type: ignore[arg-type]

        queue.run_pending(now_utc=NOW)

        self.assertEqual(run.status, JobRunStatus.SUCCEEDED)
        self.assertEqual(len(db.counted_statements), 1)
        self.assertIn("job_runs.started_at_utc >=", str(db.counted_statements[0]))


class RunNowTests(unittest.TestCase):
    def test_run_now_records_and_executes(self) -> None:
        db = _FakeSession()
        job = _ScriptedJob()
        queue = JobQueue(db, {"scripted": job})  # type: ignore[arg-type]

        run = queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW)

        self.assertIsNotNone(run)
        self.assertEqual(db.added, [run])
        self.assertEqual(run.status, JobRunStatus.SUCCEEDED)
        self.assertEqual(run.started_at_utc, NOW)
        self.assertEqual(run.attempts, 1)
        self.assertEqual(run.result["processed"], 1)
        self.assertEqual(len(job.calls), 1)

    def test_second_run_now_in_window_is_dropped(self) -> None:
        db = _FakeSession()
        job = _ScriptedJob()
        queue = JobQueue(db, {"scripted": job})  # type: ignore[arg-type]

        queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW)
        duplicate = queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW + timedelta(seconds=5))

        self.assertIsNone(duplicate)
        self.assertEqual(len(db.added), 1)
        self.assertEqual(len(job.calls), 1)

    def test_run_now_after_enqueue_in_window_is_dropped(self) -> None:
        db = _FakeSession()
        job = _ScriptedJob()
        queue = JobQueue(db, {"scripted": job})  # type: ignore[arg-type]

        queue.enqueue("scripted", {"org_id": ORG_ID}, now_utc=NOW)
        manual = queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW + timedelta(minutes=1))

        self.assertIsNone(manual)
        self.assertEqual(job.calls, [])

    def test_run_now_waits_while_same_job_is_running(self) -> None:
        db = _FakeSession(counted=1)
        job = _ScriptedJob()
        queue = JobQueue(db, {"scripted": job})  # type: ignore[arg-type]

        with self.assertLogs("schedule_engine.job_queue", level="INFO") as logs:
            manual = queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW)

        self.assertIsNone(manual)
        self.assertEqual(db.added, [])
        self.assertEqual(job.calls, [])
        self.assertTrue(any("job_run_now_in_flight" in line for line in logs.output))

    def test_run_now_failure_is_recorded_and_raised(self) -> None:
        db = _FakeSession()
        queue = JobQueue(db, {"scripted": _ScriptedJob(RuntimeError("boom"))})  # type: ignore[dict-item]

        with self.assertLogs("schedule_engine.job_queue", level="ERROR"):
            with self.assertRaises(RuntimeError):
                queue.run_now("scripted", {"org_id": ORG_ID}, now_utc=NOW)

        self.assertEqual(db.added[0].status, JobRunStatus.FAILED)
        self.assertEqual(db.added[0].last_error, "RuntimeError: boom")


class _RecordingQueue:
    def __init__(self, weekday: int = 0):
        self.settings = SimpleNamespace(weekly_overtime_dispatch_weekday=weekday)
        self.enqueued: list[tuple[str, dict[str, Any]]] = []

    def enqueue(self, job_type: str, payload: dict[str, Any], *, now_utc: datetime | None = None) -> JobRun:
        self.enqueued.append((job_type, payload))
        return _run(job_type)


class DispatchTests(unittest.TestCase):
    def test_monday_adds_weekly_overtime_for_previous_week(self) -> None:
        queue = _RecordingQueue()
        directory = FakeOrganizationDirectory({ORG_ID: utc_policy()})
        monday = datetime(2026, 3, 9, 2, 0, tzinfo=timezone.utc)

        runs = dispatch_scheduled_sweeps(queue, directory, now_utc=monday)  # type: ignore[arg-type]

        self.assertEqual(len(runs), len(DAILY_SWEEP_JOB_TYPES) + 1)
        self.assertEqual([job_type for job_type, _ in queue.enqueued[:-1]], list(DAILY_SWEEP_JOB_TYPES))
        self.assertEqual(
            queue.enqueued[-1],
            (JOB_TYPE_WEEKLY_OVERTIME, {"org_id": ORG_ID, "week_start": "2026-03-02"}),
        )

    def test_other_days_only_run_daily_sweeps(self) -> None:
        queue = _RecordingQueue()
        directory = FakeOrganizationDirectory({ORG_ID: utc_policy(), 2: utc_policy()})

        dispatch_scheduled_sweeps(queue, directory, now_utc=NOW)  # type: ignore[arg-type]

        self.assertEqual(len(queue.enqueued), 2 * len(DAILY_SWEEP_JOB_TYPES))
        self.assertNotIn(JOB_TYPE_WEEKLY_OVERTIME, {job_type for job_type, _ in queue.enqueued})


if __name__ == "__main__":
    unittest.main()
