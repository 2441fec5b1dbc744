from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone

from schedule_engine.models import (
    AuthorizationStatus,
    OverworkAuthorization,
    PeriodType,
    TimeBankMovement,
    TimeBankOrigin,
    TimeEntryType,
)
from schedule_engine.services.alerts import ALERT_AUTHORIZATION_EXPIRED, ALERT_OVERTIME, ALERT_WORK_ON_NON_WORKDAY
from schedule_engine.services.jobs.overtime import (
    OverworkAuthorizationExpiryJob,
    WeeklyOvertimeJob,
    WeeklyOvertimePayload,
    weekly_overtime_reference_key,
)
from schedule_engine.services.time_bank import approved_minutes, clamp_movement_minutes, normalize_overtime
from fakes import (
    EMPLOYEE_ID,
    ORG_ID,
    FakeWorld,
    InMemoryPatternStore,
    InMemoryPunchStore,
    InMemoryTimeBank,
    make_assignment,
    make_entry,
    make_period,
    make_template,
    utc_policy,
    weekday_patterns,
)

WEEK_START = date(2026, 3, 2)
NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _patterns() -> InMemoryPatternStore:
    template = make_template(
        default_patterns=weekday_patterns(),
        periods=[make_period(10, PeriodType.REGULAR, date(2026, 1, 1), None)],
    )
    return InMemoryPatternStore(templates=[template], assignments=[make_assignment(1, template.id, date(2026, 1, 1))])


def _long_week() -> list:  # type: ignore[type-arg]
    """Mon-Fri 09:00-19:00: one hour over schedule every day."""
    entries = []
    for offset in range(5):
        day = WEEK_START + timedelta(days=offset)
        entries.append(make_entry(2 * offset + 1, TimeEntryType.CLOCK_IN, _at(day, 9)))
        entries.append(make_entry(2 * offset + 2, TimeEntryType.CLOCK_OUT, _at(day, 19)))
    return entries


def _authorization(
    authorization_id: int,
    *,
    status: AuthorizationStatus,
    minutes: int,
    day: date = date(2026, 3, 4),
    requested_at: datetime | None = None,
    valid_until: datetime | None = None,
) -> OverworkAuthorization:
    return OverworkAuthorization(
        id=authorization_id,
        org_id=ORG_ID,
        employee_id=EMPLOYEE_ID,
        day_date=day,
        minutes_requested=minutes,
        minutes_approved=minutes if status == AuthorizationStatus.APPROVED else None,
        status=status,
        requested_at=requested_at or _at(day, 8),
        valid_until=valid_until,
    )


class WeeklyOvertimeTests(unittest.TestCase):
    def test_authorized_overtime_is_banked_and_the_rest_alerted(self) -> None:
        world = FakeWorld(
            patterns=_patterns(),
            punches=InMemoryPunchStore(_long_week()),
            time_bank=InMemoryTimeBank(
                authorizations=[_authorization(1, status=AuthorizationStatus.APPROVED, minutes=120)]
            ),
        )
        job = WeeklyOvertimeJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID, "week_start": "2026-03-04"}, now_utc=NOW)

        self.assertEqual(result.changed, 1)
        self.assertEqual(result.details, {"week_start": "2026-03-02"})
        key = weekly_overtime_reference_key(ORG_ID, EMPLOYEE_ID, WEEK_START)
        self.assertEqual(key, "weekly-overtime:1:7:2026-03-02")
        movement = world.time_bank.movements[key]
        self.assertEqual(movement.minutes, 120)
        self.assertEqual(movement.origin, TimeBankOrigin.WEEKLY_OVERTIME)
        self.assertEqual(movement.day_date, date(2026, 3, 8))
        self.assertEqual(movement.details["worked_minutes"], 2700)
        self.assertEqual(movement.details["expected_minutes"], 2400)

        alerts = world.alerts.of_type(ALERT_OVERTIME)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].day_date, date(2026, 3, 8))
        self.assertEqual(alerts[0].details["unauthorized_minutes"], 180)
        self.assertEqual(len(world.punches.summaries), 7)

    def test_rerun_updates_the_same_movement(self) -> None:
        world = FakeWorld(
            patterns=_patterns(),
            punches=InMemoryPunchStore(_long_week()),
            time_bank=InMemoryTimeBank(
                authorizations=[_authorization(1, status=AuthorizationStatus.APPROVED, minutes=600)]
            ),
        )
        job = WeeklyOvertimeJob(world.unit_of_work, concurrency=1)

        job.run({"org_id": ORG_ID, "week_start": "2026-03-02"}, now_utc=NOW)
        job.run({"org_id": ORG_ID, "week_start": "2026-03-02"}, now_utc=NOW)

        self.assertEqual(len(world.time_bank.movements), 1)
        self.assertEqual(world.time_bank.balance_minutes(org_id=ORG_ID, employee_id=EMPLOYEE_ID), 300)
        self.assertEqual(world.alerts.of_type(ALERT_OVERTIME), [])

    def test_default_week_is_the_previous_one(self) -> None:
        world = FakeWorld(patterns=_patterns())
        job = WeeklyOvertimeJob(world.unit_of_work, concurrency=1)
        result = job.run({"org_id": ORG_ID}, now_utc=NOW)
        self.assertEqual(result.details, {"week_start": "2026-03-02"})
        self.assertEqual(result.changed, 0)

    def test_time_bank_ceiling_clamps_the_movement(self) -> None:
        existing = TimeBankMovement(
            org_id=ORG_ID,
            employee_id=EMPLOYEE_ID,
            reference_key="manual:1",
            origin=TimeBankOrigin.WEEKLY_OVERTIME,
            day_date=date(2026, 2, 1),
            minutes=4750,
        )
        world = FakeWorld(
            patterns=_patterns(),
            punches=InMemoryPunchStore(_long_week()),
            time_bank=InMemoryTimeBank(
                authorizations=[_authorization(1, status=AuthorizationStatus.APPROVED, minutes=300)],
                movements=[existing],
            ),
        )
        job = WeeklyOvertimeJob(world.unit_of_work, concurrency=1)

        with self.assertLogs("schedule_engine.jobs.overtime", level="WARNING") as logs:
            job.run({"org_id": ORG_ID, "week_start": "2026-03-02"}, now_utc=NOW)

        movement = world.time_bank.movements[weekly_overtime_reference_key(ORG_ID, EMPLOYEE_ID, WEEK_START)]
        self.assertEqual(movement.minutes, 50)
        self.assertTrue(movement.details["clamped"])
        self.assertTrue(any("time_bank_ceiling_reached" in line for line in logs.output))

    def test_work_on_non_workday_is_alerted(self) -> None:
        saturday = date(2026, 3, 7)
        world = FakeWorld(
            patterns=_patterns(),
            punches=InMemoryPunchStore(
                [
                    make_entry(1, TimeEntryType.CLOCK_IN, _at(saturday, 10)),
                    make_entry(2, TimeEntryType.CLOCK_OUT, _at(saturday, 12)),
                ]
            ),
        )
        job = WeeklyOvertimeJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID, "week_start": "2026-03-02"}, now_utc=NOW)

        self.assertEqual(result.changed, 0)
        alerts = world.alerts.of_type(ALERT_WORK_ON_NON_WORKDAY)
        self.assertEqual([alert.day_date for alert in alerts], [saturday])
        self.assertEqual(world.time_bank.movements, {})
        summary = world.punches.summaries[(ORG_ID, EMPLOYEE_ID, saturday)]
        self.assertEqual(summary.flags, ["WORK_ON_NON_WORKDAY"])

    def test_singleton_key_includes_week(self) -> None:
        job = WeeklyOvertimeJob(FakeWorld().unit_of_work, concurrency=1)
        payload = job.parse_payload({"org_id": ORG_ID, "week_start": "2026-03-05"})
        self.assertEqual(job.singleton_key(payload), "weekly_overtime_reconciliation:1:week_start=2026-03-02")
        self.assertEqual(job.singleton_key(job.parse_payload({"org_id": ORG_ID})), "weekly_overtime_reconciliation:1")

    def test_week_start_normalizes_to_monday(self) -> None:
        payload = WeeklyOvertimePayload.model_validate({"org_id": ORG_ID, "week_start": "2026-03-08"})
        self.assertEqual(payload.week_start, WEEK_START)


class OvertimeArithmeticTests(unittest.TestCase):
    def test_normalize_overtime(self) -> None:
        self.assertEqual(normalize_overtime(0, tolerance_minutes=15, increment_minutes=5), 0)
        self.assertEqual(normalize_overtime(-40, tolerance_minutes=15, increment_minutes=5), 0)
        self.assertEqual(normalize_overtime(14, tolerance_minutes=15, increment_minutes=5), 0)
        self.assertEqual(normalize_overtime(17.5, tolerance_minutes=15, increment_minutes=5), 20)
        self.assertEqual(normalize_overtime(62, tolerance_minutes=15, increment_minutes=5), 60)
        self.assertEqual(normalize_overtime(float("nan"), tolerance_minutes=15, increment_minutes=5), 0)

    def test_clamp_movement_minutes(self) -> None:
        self.assertEqual(clamp_movement_minutes(60, balance_minutes=0, max_positive_minutes=4800).applied_minutes, 60)
        clamped = clamp_movement_minutes(60, balance_minutes=4780, max_positive_minutes=4800)
        self.assertEqual((clamped.applied_minutes, clamped.clamped), (20, True))
        full = clamp_movement_minutes(60, balance_minutes=4900, max_positive_minutes=4800)
        self.assertEqual((full.applied_minutes, full.clamped), (0, True))
        self.assertEqual(clamp_movement_minutes(-30, balance_minutes=4900, max_positive_minutes=4800).applied_minutes, -30)

    def test_approved_minutes_ignores_other_statuses(self) -> None:
        items = [
            _authorization(1, status=AuthorizationStatus.APPROVED, minutes=60),
            _authorization(2, status=AuthorizationStatus.PENDING, minutes=90),
            _authorization(3, status=AuthorizationStatus.REJECTED, minutes=30),
        ]
        self.assertEqual(approved_minutes(items), 60)


class AuthorizationExpiryTests(unittest.TestCase):
    def test_stale_pending_authorizations_expire(self) -> None:
        stale = _authorization(1, status=AuthorizationStatus.PENDING, minutes=60, requested_at=_at(date(2026, 3, 1), 8))
        fresh = _authorization(2, status=AuthorizationStatus.PENDING, minutes=60, requested_at=_at(date(2026, 3, 9), 8))
        lapsed = _authorization(
            3,
            status=AuthorizationStatus.PENDING,
            minutes=30,
            day=date(2026, 3, 8),
            requested_at=_at(date(2026, 3, 8), 8),
            valid_until=_at(date(2026, 3, 9), 0),
        )
        approved = _authorization(
            4,
            status=AuthorizationStatus.APPROVED,
            minutes=60,
            requested_at=_at(date(2026, 2, 1), 8),
        )
        world = FakeWorld(time_bank=InMemoryTimeBank(authorizations=[stale, fresh, lapsed, approved]))
        job = OverworkAuthorizationExpiryJob(world.unit_of_work, concurrency=1)

        result = job.run({"org_id": ORG_ID}, now_utc=NOW)

        self.assertEqual(result.changed, 1)
        self.assertEqual(result.details, {"expiry_days": 7})
        self.assertEqual(stale.status, AuthorizationStatus.EXPIRED)
        self.assertEqual(stale.resolved_at, NOW)
        self.assertEqual(lapsed.status, AuthorizationStatus.EXPIRED)
        self.assertEqual(fresh.status, AuthorizationStatus.PENDING)
        self.assertEqual(approved.status, AuthorizationStatus.APPROVED)
        alerts = world.alerts.of_type(ALERT_AUTHORIZATION_EXPIRED)
        self.assertEqual(sorted(alert.day_date for alert in alerts), [date(2026, 3, 4), date(2026, 3, 8)])

    def test_nothing_to_expire(self) -> None:
        world = FakeWorld(policy=utc_policy(overwork_authorization_expiry_days=3))
        result = OverworkAuthorizationExpiryJob(world.unit_of_work, concurrency=1).run({"org_id": ORG_ID}, now_utc=NOW)
        self.assertEqual(result.processed, 0)
        self.assertEqual(result.details, {"expiry_days": 3})


if __name__ == "__main__":
    unittest.main()
