from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import time
from typing import Protocol


MINUTES_PER_DAY = 24 * 60


class SlotLike(Protocol):
    start_time: time
    end_time: time
    is_break: bool


@dataclass(frozen=True, slots=True)
class SlotSpan:
    """A time slot expressed as minutes from local midnight of its schedule day.

    ``end_minute`` may exceed 1440 for slots that cross midnight.
    """

    start_minute: int
    end_minute: int
    is_break: bool = False

    @property
    def duration_minutes(self) -> int:
        return self.end_minute - self.start_minute

    @property
    def start_time(self) -> time:
        return minutes_to_time(self.start_minute)

    @property
    def end_time(self) -> time:
        return minutes_to_time(self.end_minute)


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    normalized = minutes % MINUTES_PER_DAY
    return time(hour=normalized // 60, minute=normalized % 60)


def _sort_key(slot: SlotLike) -> int:
    return int(getattr(slot, "sort_order", 0) or 0)


def normalize_slots(slots: Iterable[SlotLike]) -> list[SlotSpan]:
    """Convert ORM slots into day-relative spans.

    Slots are taken in ``sort_order``. The first work slot anchors the day;
    any slot starting before it belongs to the small hours after midnight.
    """
    ordered = sorted(slots, key=_sort_key)
    if not ordered:
        return []

    raw: list[SlotSpan] = []
    for slot in ordered:
        start = time_to_minutes(slot.start_time)
        end = time_to_minutes(slot.end_time)
        if end <= start:
            end += MINUTES_PER_DAY
        raw.append(SlotSpan(start_minute=start, end_minute=end, is_break=bool(slot.is_break)))

    work = [span for span in raw if not span.is_break]
    anchor = work[0].start_minute if work else raw[0].start_minute

    spans: list[SlotSpan] = []
    for span in raw:
        if span.start_minute < anchor:
            span = SlotSpan(
                start_minute=span.start_minute + MINUTES_PER_DAY,
                end_minute=span.end_minute + MINUTES_PER_DAY,
                is_break=span.is_break,
            )
        spans.append(span)
    return spans


def merge_intervals(intervals: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(item for item in intervals if item[1] > item[0]):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(
    base: Sequence[tuple[int, int]],
    cuts: Sequence[tuple[int, int]],
) -> list[tuple[int, int]]:
    result: list[tuple[int, int]] = []
    for start, end in merge_intervals(base):
        cursor = start
        for cut_start, cut_end in merge_intervals(cuts):
            if cut_end <= cursor or cut_start >= end:
                continue
            if cut_start > cursor:
                result.append((cursor, cut_start))
            cursor = max(cursor, cut_end)
        if cursor < end:
            result.append((cursor, end))
    return result


def paid_intervals(spans: Sequence[SlotSpan]) -> list[tuple[int, int]]:
    work = [(span.start_minute, span.end_minute) for span in spans if not span.is_break]
    breaks = [(span.start_minute, span.end_minute) for span in spans if span.is_break]
    return subtract_intervals(work, breaks)


def expected_minutes_for_spans(spans: Sequence[SlotSpan]) -> int:
    return sum(end - start for start, end in paid_intervals(spans))


def work_bounds(spans: Sequence[SlotSpan]) -> tuple[int, int] | None:
    work = [span for span in spans if not span.is_break]
    if not work:
        return None
    return min(span.start_minute for span in work), max(span.end_minute for span in work)


def break_window(spans: Sequence[SlotSpan]) -> tuple[int, int] | None:
    """First explicit break slot, else the first gap between work slots."""
    for span in spans:
        if span.is_break:
            return span.start_minute, span.end_minute

    work = merge_intervals((span.start_minute, span.end_minute) for span in spans if not span.is_break)
    for (_, previous_end), (next_start, _) in zip(work, work[1:]):
        if next_start > previous_end:
            return previous_end, next_start
    return None


def unpaid_break_intervals(spans: Sequence[SlotSpan]) -> list[tuple[int, int]]:
    """Explicit break slots plus gaps inside the working envelope."""
    explicit = [(span.start_minute, span.end_minute) for span in spans if span.is_break]
    work = merge_intervals((span.start_minute, span.end_minute) for span in spans if not span.is_break)
    gaps = [
        (previous_end, next_start)
        for (_, previous_end), (next_start, _) in zip(work, work[1:])
        if next_start > previous_end
    ]
    return merge_intervals(explicit + gaps)
