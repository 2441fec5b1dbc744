from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from schedule_engine.errors import FatalJobError, TransientStorageError
from schedule_engine.models import AlertSeverity, PeriodType, TimeEntryType
from schedule_engine.services.alerts import ALERT_AUTO_CLOSED, ALERT_AUTO_CLOSED_SAFETY, ALERT_INCOMPLETE_ENTRY
from schedule_engine.services.jobs.open_punch import OpenPunchRolloverJob, OpenPunchSafetyCloseJob
from schedule_engine.services.punch_store import (
    AUTO_CLOSE_REASON_SAFETY,
    AUTO_CLOSE_REASON_SCHEDULE_END,
    RESOLUTION_AUTO_CLOSED_SAFETY,
    RESOLUTION_AUTO_CLOSED_SCHEDULE_END,
    RESOLUTION_UNRESOLVED_MISSING_CLOCK_OUT,
)
from fakes import (
    EMPLOYEE_ID,
    ORG_ID,
    FakeWorld,
    InMemoryPatternStore,
    InMemoryPunchStore,
    make_assignment,
    make_entry,
    make_period,
    make_template,
    utc_policy,
    weekday_patterns,
)

TUESDAY = date(2026, 3, 3)


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _patterns(cls: type[InMemoryPatternStore] = InMemoryPatternStore) -> InMemoryPatternStore:
    template = make_template(
        default_patterns=weekday_patterns(),
        periods=[make_period(10, PeriodType.REGULAR, date(2026, 1, 1), None)],
    )
    return cls(templates=[template], assignments=[make_assignment(1, template.id, date(2026, 1, 1))])


def _world(entries, **policy_overrides) -> FakeWorld:  # type: ignore[no-untyped-def]
    return FakeWorld(
        patterns=_patterns(),
        punches=InMemoryPunchStore(entries),
        policy=utc_policy(**policy_overrides),
    )


class _BrokenPatternStore(InMemoryPatternStore):
    error: Exception = RuntimeError("template store offline")

    def list_assignments(self, **kwargs):  # type: ignore[no-untyped-def]
        raise self.error


class OpenPunchRolloverTests(unittest.TestCase):
    def test_closes_at_scheduled_exit_and_is_idempotent(self) -> None:
        world = _world([make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 9))])
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)
        now = _at(date(2026, 3, 4), 8)

        first = job.run({"org_id": ORG_ID}, now_utc=now)

        self.assertEqual(first.processed, 1)
        self.assertEqual(first.changed, 1)
        self.assertEqual(first.failures, [])
        self.assertEqual(first.details, {"lookback_days": 3})
        closing = world.punches.entries[-1]
        self.assertEqual(closing.entry_type, TimeEntryType.CLOCK_OUT)
        self.assertEqual(closing.ts_utc, _at(TUESDAY, 18))
        self.assertTrue(closing.is_automatic)
        self.assertEqual(closing.auto_close_reason, AUTO_CLOSE_REASON_SCHEDULE_END)

        summary = world.punches.summaries[(ORG_ID, EMPLOYEE_ID, TUESDAY)]
        self.assertEqual(summary.resolution_status, RESOLUTION_AUTO_CLOSED_SCHEDULE_END)
        self.assertEqual(summary.worked_minutes, 480)
        self.assertEqual(summary.status, "COMPLETED")

        alerts = world.alerts.of_type(ALERT_AUTO_CLOSED)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].severity, AlertSeverity.INFO)
        self.assertEqual(world.commits, 1)

        second = job.run({"org_id": ORG_ID}, now_utc=now)

        self.assertEqual(second.processed, 0)
        self.assertEqual(len(world.punches.entries), 2)
        self.assertEqual(len(world.alerts.alerts), 1)

    def test_leaves_shift_unresolved_when_auto_close_is_disabled(self) -> None:
        world = _world(
            [make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 9))],
            rollover_auto_close_enabled=False,
        )
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 8))

        self.assertEqual(result.processed, 1)
        self.assertEqual(result.changed, 0)
        self.assertEqual(len(world.punches.entries), 1)
        summary = world.punches.summaries[(ORG_ID, EMPLOYEE_ID, TUESDAY)]
        self.assertEqual(summary.resolution_status, RESOLUTION_UNRESOLVED_MISSING_CLOCK_OUT)
        alerts = world.alerts.of_type(ALERT_INCOMPLETE_ENTRY)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].details["source_layer"], "PERIOD:REGULAR")

    def test_clock_in_after_scheduled_exit_is_not_auto_closed(self) -> None:
        world = _world([make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 19))])
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 8))

        self.assertEqual(result.changed, 0)
        self.assertEqual(len(world.alerts.of_type(ALERT_INCOMPLETE_ENTRY)), 1)

    def test_todays_open_shift_is_left_alone(self) -> None:
        world = _world([make_entry(1, TimeEntryType.CLOCK_IN, _at(date(2026, 3, 4), 7))])
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 8))

        self.assertEqual(result.processed, 0)
        self.assertEqual(world.punches.summaries, {})

    def test_lookback_comes_from_payload_and_is_clamped(self) -> None:
        world = _world([])
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)
        result = job.run({"org_id": ORG_ID, "lookback_days": 90}, now_utc=_at(date(2026, 3, 4), 8))
        self.assertEqual(result.details, {"lookback_days": 14})

    def test_employee_failure_is_recorded_and_rolled_back(self) -> None:
        world = FakeWorld(
            patterns=_patterns(_BrokenPatternStore),
            punches=InMemoryPunchStore([make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 9))]),
        )
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)

        with self.assertLogs("schedule_engine.jobs", level="ERROR") as logs:
            result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 8))

        self.assertEqual(result.failed, 1)
        self.assertEqual(result.failures[0].employee_id, EMPLOYEE_ID)
        self.assertEqual(result.failures[0].error_code, "RuntimeError")
        self.assertEqual(world.rollbacks, 1)
        self.assertEqual(world.commits, 0)
        self.assertTrue(any("employee_job_failed" in line for line in logs.output))
        self.assertEqual(result.to_dict()["failed"], 1)

    def test_transient_error_aborts_the_sweep(self) -> None:
        class _Flaky(_BrokenPatternStore):
            error = TransientStorageError("connection reset")

        world = FakeWorld(
            patterns=_patterns(_Flaky),
            punches=InMemoryPunchStore([make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 9))]),
        )
        job = OpenPunchRolloverJob(world.unit_of_work, concurrency=1)

        with self.assertRaises(TransientStorageError):
            job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 8))
        self.assertEqual(world.rollbacks, 1)

    def test_unknown_organization_is_fatal(self) -> None:
        job = OpenPunchRolloverJob(_world([]).unit_of_work, concurrency=1)
        with self.assertRaises(FatalJobError) as ctx:
            job.run({"org_id": 99})
        self.assertEqual(ctx.exception.code, "ORGANIZATION_NOT_FOUND")


class OpenPunchSafetyCloseTests(unittest.TestCase):
    def test_force_closes_after_max_open_hours(self) -> None:
        world = _world(
            [
                make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 9)),
                make_entry(2, TimeEntryType.BREAK_START, _at(TUESDAY, 12)),
            ]
        )
        job = OpenPunchSafetyCloseJob(world.unit_of_work, concurrency=1)

        with self.assertLogs("schedule_engine.jobs.open_punch", level="WARNING"):
            result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 10))

        self.assertEqual(result.changed, 1)
        self.assertEqual(result.details, {"lookback_days": 2, "max_open_hours": 24})
        created = world.punches.entries[2:]
        self.assertEqual(
            [entry.entry_type for entry in created],
            [TimeEntryType.BREAK_END, TimeEntryType.CLOCK_OUT],
        )
        self.assertTrue(all(entry.ts_utc == _at(date(2026, 3, 4), 9) for entry in created))
        self.assertTrue(all(entry.auto_close_reason == AUTO_CLOSE_REASON_SAFETY for entry in created))

        summary = world.punches.summaries[(ORG_ID, EMPLOYEE_ID, TUESDAY)]
        self.assertEqual(summary.resolution_status, RESOLUTION_AUTO_CLOSED_SAFETY)
        alerts = world.alerts.of_type(ALERT_AUTO_CLOSED_SAFETY)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].severity, AlertSeverity.CRITICAL)
        self.assertEqual(alerts[0].details["max_open_hours"], 24)

    def test_recent_open_shift_is_not_touched(self) -> None:
        world = _world([make_entry(1, TimeEntryType.CLOCK_IN, _at(TUESDAY, 20))])
        job = OpenPunchSafetyCloseJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID}, now_utc=_at(date(2026, 3, 4), 10))

        self.assertEqual(result.processed, 0)
        self.assertEqual(len(world.punches.entries), 1)


if __name__ == "__main__":
    unittest.main()
