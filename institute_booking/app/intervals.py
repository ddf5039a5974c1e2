# intervals.py
"""
Half-open time interval algebra.

Every interval is a ``TimeInterval(start, end)`` of absolute instants covering
``[start, end)``. All functions are total: intervals with ``end <= start`` are
dropped, never rejected.
"""
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional


class TimeInterval(NamedTuple):
    start: datetime
    end: datetime


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def contains_instant(interval: TimeInterval, instant: datetime) -> bool:
    return interval.start <= instant < interval.end


def normalize(intervals: Iterable[TimeInterval]) -> List[TimeInterval]:
    """Drop empty intervals, sort by start and merge overlapping or touching ones."""
    ordered = sorted(
        (TimeInterval(*interval) for interval in intervals if interval[1] > interval[0]),
        key=lambda interval: interval.start
    )
    if not ordered:
        return []

    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeInterval(last.start, current.end)
        else:
            merged.append(current)
    return merged


def subtract(base: Iterable[TimeInterval], blocked: Iterable[TimeInterval]) -> List[TimeInterval]:
    """
    Return the parts of ``base`` not covered by ``blocked``.

    Sweeps a cursor through each base interval, emitting the gap in front of every
    blocking interval and jumping the cursor to the end of the block.
    """
    merged_blocked = normalize(blocked)
    result = []

    for interval in normalize(base):
        cursor = interval.start

        for block in merged_blocked:
            if block.end <= cursor:
                continue
            if block.start >= interval.end:
                break
            if block.start > cursor:
                result.append(TimeInterval(cursor, min(block.start, interval.end)))
            cursor = max(cursor, block.end)
            if cursor >= interval.end:
                break

        if cursor < interval.end:
            result.append(TimeInterval(cursor, interval.end))

    return normalize(result)


def intersect(first: Iterable[TimeInterval], second: Iterable[TimeInterval]) -> List[TimeInterval]:
    left = normalize(first)
    right = normalize(second)
    result = []
    i = j = 0

    while i < len(left) and j < len(right):
        start = max(left[i].start, right[j].start)
        end = min(left[i].end, right[j].end)
        if start < end:
            result.append(TimeInterval(start, end))
        # Advance whichever interval finishes first
        if left[i].end < right[j].end:
            i += 1
        else:
            j += 1

    return normalize(result)


def find_containing(intervals: Iterable[TimeInterval], instant: datetime) -> Optional[TimeInterval]:
    for interval in intervals:
        if contains_instant(interval, instant):
            return interval
    return None


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, floored, never negative."""
    return max(0, int((end - start).total_seconds() // 60))
