"""
Tests for interval algebra over half-open TimeSlots.
"""

import random

import pytest

from app.models.domain.scheduling_domain import TimeSlot
from app.services.scheduling.intervals import (
    clip,
    common_free,
    intersect,
    intersect_all,
    merge,
    overlaps_any,
    subtract,
)
from tests.fakes import at, slot


def test_timeslot_rejects_empty_or_inverted_range():
    with pytest.raises(ValueError):
        TimeSlot(at(0, 10), at(0, 10))
    with pytest.raises(ValueError):
        TimeSlot(at(0, 11), at(0, 10))


def test_adjacent_slots_do_not_overlap():
    assert not slot(0, 9, 10).overlaps(slot(0, 10, 11))
    assert slot(0, 9, 10.5).overlaps(slot(0, 10, 11))


def test_subtract_splits_free_interval_in_two():
    result = subtract([slot(0, 9, 17)], [slot(0, 12, 13)])

    assert result == [slot(0, 9, 12), slot(0, 13, 17)]


def test_subtract_keeps_interval_touching_busy_boundary():
    # Busy ends exactly where free begins: nothing is removed
    assert subtract([slot(0, 10, 11)], [slot(0, 9, 10)]) == [slot(0, 10, 11)]


def test_subtract_handles_unsorted_overlapping_busy():
    busy = [slot(0, 14, 16), slot(0, 9, 11), slot(0, 10, 12)]

    assert subtract([slot(0, 8, 17)], busy) == [
        slot(0, 8, 9),
        slot(0, 12, 14),
        slot(0, 16, 17),
    ]


def test_subtract_fully_covered_leaves_nothing():
    assert subtract([slot(0, 10, 11)], [slot(0, 9, 12)]) == []


def test_merge_coalesces_overlapping_and_touching():
    merged = merge([slot(0, 13, 14), slot(0, 9, 10), slot(0, 10, 11), slot(0, 10.5, 12)])

    assert merged == [slot(0, 9, 12), slot(0, 13, 14)]


def test_intersect_two_lists():
    left = [slot(0, 9, 12), slot(0, 14, 18)]
    right = [slot(0, 11, 15)]

    assert intersect(left, right) == [slot(0, 11, 12), slot(0, 14, 15)]


def test_intersect_all_with_no_participants_is_empty():
    assert intersect_all([]) == []


def test_intersect_all_three_participants():
    result = intersect_all(
        [
            [slot(0, 9, 17)],
            [slot(0, 10, 12), slot(0, 13, 16)],
            [slot(0, 11, 14)],
        ]
    )

    assert result == [slot(0, 11, 12), slot(0, 13, 14)]


def test_common_free_without_busy_lists_is_whole_window():
    window = slot(0, 0, 24)

    assert common_free(window, []) == [window]


def test_common_free_subtracts_every_participant():
    window = slot(0, 9, 17)
    busy = [[slot(0, 9, 10)], [slot(0, 12, 13), slot(0, 16, 18)]]

    assert common_free(window, busy) == [slot(0, 10, 12), slot(0, 13, 16)]


def test_overlaps_any_and_clip():
    busy = [slot(0, 9, 10), slot(0, 15, 16)]

    assert overlaps_any(slot(0, 9.5, 10.5), busy)
    assert not overlaps_any(slot(0, 10, 15), busy)
    assert clip([slot(0, 8, 10), slot(0, 16, 18)], slot(0, 9, 17)) == [
        slot(0, 9, 10),
        slot(0, 16, 17),
    ]


def random_slots(rng: random.Random, count: int) -> list[TimeSlot]:
    """Quarter-hour aligned slots within one day, possibly overlapping."""
    slots = []
    for _ in range(count):
        start = rng.randrange(0, 96)
        length = rng.randrange(1, 24)
        slots.append(TimeSlot(at(0, 0, start * 15), at(0, 0, (start + length) * 15)))
    return slots


@pytest.mark.parametrize("seed", range(50))
def test_subtract_conserves_free_time(seed):
    rng = random.Random(seed)
    free = random_slots(rng, rng.randrange(1, 5))
    busy = random_slots(rng, rng.randrange(0, 6))

    result = subtract(free, busy)

    assert not any(overlaps_any(piece, busy) for piece in result)
    # What is left plus what was removed is exactly the free time we started with
    assert merge(result + intersect(free, busy)) == merge(free)
