from __future__ import annotations

import unittest
from datetime import date, time

from schedule_engine.errors import ConfigurationError
from schedule_engine.services.calendar import (
    DateRange,
    cycle_day_index,
    day_of_week,
    end_of_week,
    inclusive_range,
    iter_days,
    overlaps,
    start_of_week,
)
from schedule_engine.services.time_slots import (
    break_window,
    expected_minutes_for_spans,
    normalize_slots,
    work_bounds,
)
from fakes import office_slots, slot


class CalendarPrimitivesTests(unittest.TestCase):
    def test_week_starts_on_monday_and_ends_on_sunday(self) -> None:
        wednesday = date(2026, 3, 4)
        self.assertEqual(day_of_week(wednesday), 2)
        self.assertEqual(start_of_week(wednesday), date(2026, 3, 2))
        self.assertEqual(end_of_week(wednesday), date(2026, 3, 8))
        self.assertEqual(start_of_week(date(2026, 3, 8)), date(2026, 3, 2))
        self.assertEqual(start_of_week(date(2026, 3, 2)), date(2026, 3, 2))

    def test_date_range_is_closed_open(self) -> None:
        march = DateRange(date(2026, 3, 1), date(2026, 4, 1))
        self.assertTrue(march.contains(date(2026, 3, 1)))
        self.assertTrue(march.contains(date(2026, 3, 31)))
        self.assertFalse(march.contains(date(2026, 4, 1)))
        self.assertFalse(march.contains(date(2026, 2, 28)))

    def test_open_ended_range_contains_far_future(self) -> None:
        open_ended = DateRange(date(2026, 1, 1))
        self.assertTrue(open_ended.contains(date(2099, 12, 31)))
        self.assertEqual(open_ended.length_days, float("inf"))

    def test_overlaps_treats_touching_ranges_as_disjoint(self) -> None:
        first = DateRange(date(2026, 1, 1), date(2026, 2, 1))
        second = DateRange(date(2026, 2, 1), date(2026, 3, 1))
        third = DateRange(date(2026, 1, 15))
        self.assertFalse(overlaps(first, second))
        self.assertTrue(overlaps(first, third))
        self.assertTrue(second.overlaps(third))

    def test_inclusive_range_covers_last_day(self) -> None:
        absence = inclusive_range(date(2026, 3, 2), date(2026, 3, 6))
        self.assertTrue(absence.contains(date(2026, 3, 6)))
        self.assertFalse(absence.contains(date(2026, 3, 7)))

    def test_cycle_day_index_wraps_before_anchor(self) -> None:
        anchor = date(2026, 1, 1)
        self.assertEqual(cycle_day_index(anchor, anchor, 4), 0)
        self.assertEqual(cycle_day_index(anchor, date(2026, 1, 6), 4), 1)
        self.assertEqual(cycle_day_index(anchor, date(2025, 12, 31), 4), 3)
        self.assertEqual(cycle_day_index(anchor, date(2025, 12, 28), 4), 0)

    def test_cycle_day_index_rejects_non_positive_length(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            cycle_day_index(date(2026, 1, 1), date(2026, 1, 2), 0)
        self.assertEqual(ctx.exception.code, "INVALID_CYCLE_LENGTH")

    def test_iter_days_excludes_end(self) -> None:
        days = list(iter_days(date(2026, 2, 27), date(2026, 3, 2)))
        self.assertEqual(days, [date(2026, 2, 27), date(2026, 2, 28), date(2026, 3, 1)])
        self.assertEqual(list(iter_days(date(2026, 3, 2), date(2026, 3, 2))), [])


class TimeSlotArithmeticTests(unittest.TestCase):
    def test_break_slot_is_subtracted_from_work_slot(self) -> None:
        spans = normalize_slots(office_slots())
        self.assertEqual(expected_minutes_for_spans(spans), 480)
        self.assertEqual(work_bounds(spans), (540, 1080))
        self.assertEqual(break_window(spans), (780, 840))

    def test_split_shift_gap_is_the_break(self) -> None:
        spans = normalize_slots(
            [
                slot(time(9, 0), time(13, 0), sort_order=0),
                slot(time(14, 0), time(18, 0), sort_order=1),
            ]
        )
        self.assertEqual(expected_minutes_for_spans(spans), 480)
        self.assertEqual(break_window(spans), (780, 840))

    def test_slot_crossing_midnight(self) -> None:
        spans = normalize_slots([slot(time(22, 0), time(6, 0))])
        self.assertEqual(work_bounds(spans), (1320, 1800))
        self.assertEqual(expected_minutes_for_spans(spans), 480)

    def test_slots_after_midnight_follow_the_first_work_slot(self) -> None:
        spans = normalize_slots(
            [
                slot(time(20, 0), time(23, 30), sort_order=0),
                slot(time(0, 0), time(4, 0), sort_order=1),
            ]
        )
        self.assertEqual(work_bounds(spans), (1200, 1680))
        self.assertEqual(expected_minutes_for_spans(spans), 450)


if __name__ == "__main__":
    unittest.main()
