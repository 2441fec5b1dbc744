from __future__ import annotations

import unittest
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from schedule_engine.services.org_config import OrganizationPolicy, build_policy, resolve_timezone


class OrganizationPolicyTests(unittest.TestCase):
    def test_defaults(self) -> None:
        policy = build_policy(None)

        self.assertEqual(policy.timezone, "Europe/Madrid")
        self.assertEqual(policy.tolerance_minutes, 15)
        self.assertEqual(policy.complete_threshold, 0.95)
        self.assertEqual(policy.incomplete_threshold, 0.70)
        self.assertEqual(policy.absence_margin_minutes, 60)
        self.assertEqual(policy.safety_close_max_open_hours, 24)
        self.assertEqual(policy.time_bank_max_positive_minutes, 4800)
        self.assertTrue(policy.rollover_auto_close_enabled)

    def test_settings_override_defaults_and_column_timezone_wins(self) -> None:
        policy = build_policy(
            {"tolerance_minutes": 5, "timezone": "Europe/Paris", "rollover_auto_close_enabled": False},
            timezone="Atlantic/Canary",
        )

        self.assertEqual(policy.tolerance_minutes, 5)
        self.assertFalse(policy.rollover_auto_close_enabled)
        self.assertEqual(policy.timezone, "Atlantic/Canary")
        self.assertEqual(policy.tz, ZoneInfo("Atlantic/Canary"))

    def test_invalid_fields_fall_back_to_defaults(self) -> None:
        with self.assertLogs("schedule_engine.org_config", level="WARNING") as logs:
            policy = build_policy({"tolerance_minutes": -5, "complete_threshold": "lots", "absence_margin_minutes": 30})

        self.assertEqual(policy.tolerance_minutes, 15)
        self.assertEqual(policy.complete_threshold, 0.95)
        self.assertEqual(policy.absence_margin_minutes, 30)
        self.assertTrue(any("organization_policy_invalid_fields" in line for line in logs.output))

    def test_unknown_keys_are_ignored(self) -> None:
        policy = build_policy({"legacy_geofence_radius": 250, "tolerance_minutes": 10})
        self.assertEqual(policy.tolerance_minutes, 10)
        self.assertFalse(hasattr(policy, "legacy_geofence_radius"))

    def test_policy_is_immutable(self) -> None:
        policy = OrganizationPolicy()
        with self.assertRaises(ValidationError):
            policy.tolerance_minutes = 99  # type: ignore[misc]


class TimezoneResolutionTests(unittest.TestCase):
    def test_unknown_timezone_falls_back_to_default(self) -> None:
        with self.assertLogs("schedule_engine.org_config", level="WARNING") as logs:
            zone = resolve_timezone("Mars/Olympus_Mons")

        self.assertEqual(zone, ZoneInfo("Europe/Madrid"))
        self.assertTrue(any("organization_timezone_invalid" in line for line in logs.output))

    def test_empty_timezone_uses_default(self) -> None:
        self.assertEqual(resolve_timezone(None), ZoneInfo("Europe/Madrid"))


if __name__ == "__main__":
    unittest.main()
