import random
from datetime import datetime, timedelta, timezone

from institute_booking.app.intervals import (TimeInterval, contains_instant, find_containing, intersect,
                                             minutes_between, normalize, overlaps, subtract)


def at(hour, minute=0):
    return datetime(2027, 6, 14, hour, minute, tzinfo=timezone.utc)


def span(start_hour, end_hour):
    return TimeInterval(at(start_hour), at(end_hour))


def random_intervals(rng, count):
    intervals = []
    for _ in range(count):
        start = at(8) + timedelta(minutes=rng.randrange(0, 12 * 60, 5))
        intervals.append(TimeInterval(start, start + timedelta(minutes=rng.randrange(-30, 180, 5))))
    return intervals


def test_overlaps_is_half_open():
    assert overlaps(at(9), at(10), at(9, 30), at(11))
    assert not overlaps(at(9), at(10), at(10), at(11))
    assert not overlaps(at(10), at(11), at(9), at(10))


def test_contains_instant_excludes_end():
    assert contains_instant(span(9, 10), at(9))
    assert not contains_instant(span(9, 10), at(10))


def test_normalize_drops_empty_sorts_and_merges_touching():
    intervals = [span(10, 11), span(9, 10), span(12, 12), span(14, 13), span(15, 16)]
    assert normalize(intervals) == [span(9, 11), span(15, 16)]


def test_normalize_keeps_longest_end_when_nested():
    assert normalize([span(9, 17), span(10, 11)]) == [span(9, 17)]


def test_normalize_is_idempotent():
    rng = random.Random(7)
    for _ in range(50):
        once = normalize(random_intervals(rng, 8))
        assert normalize(once) == once
        for left, right in zip(once, once[1:]):
            assert left.start < right.start
            assert not overlaps(left.start, left.end, right.start, right.end)


def test_subtract_splits_around_block():
    assert subtract([span(9, 19)], [span(10, 11)]) == [span(9, 10), span(11, 19)]


def test_subtract_block_covering_start():
    assert subtract([span(9, 12)], [span(8, 10)]) == [span(10, 12)]


def test_subtract_block_spanning_two_bases():
    base = [span(9, 10), span(11, 12)]
    assert subtract(base, [TimeInterval(at(9, 30), at(11, 30))]) == [
        TimeInterval(at(9), at(9, 30)),
        TimeInterval(at(11, 30), at(12)),
    ]


def test_subtract_with_nothing_blocked_is_normalize():
    base = [span(13, 15), span(9, 11), span(10, 12)]
    assert subtract(base, []) == normalize(base)


def test_subtract_self_is_empty():
    assert subtract([span(9, 12)], [span(9, 12)]) == []
    assert subtract([span(9, 12), span(14, 16)], [span(8, 17)]) == []


def test_subtract_result_is_disjoint_and_inside_base():
    rng = random.Random(42)
    for _ in range(100):
        base = random_intervals(rng, 4)
        blocked = random_intervals(rng, 4)
        free = subtract(base, blocked)

        for left, right in zip(free, free[1:]):
            assert left.end < right.start
        for interval in free:
            assert interval.end > interval.start
            assert any(b.start <= interval.start and interval.end <= b.end for b in normalize(base))
            assert not any(overlaps(interval.start, interval.end, k.start, k.end) for k in normalize(blocked))


def test_intersect_two_sets():
    assert intersect([span(9, 12), span(13, 17)], [span(10, 14)]) == [span(10, 12), span(13, 14)]
    assert intersect([span(9, 10)], [span(10, 11)]) == []


def test_find_containing():
    free = [span(9, 10), span(11, 19)]
    assert find_containing(free, at(11, 30)) == span(11, 19)
    assert find_containing(free, at(10, 30)) is None


def test_minutes_between_floors_and_clamps():
    assert minutes_between(at(10), at(10) + timedelta(seconds=90)) == 1
    assert minutes_between(at(11), at(10)) == 0
    assert minutes_between(at(10), at(19)) == 540
