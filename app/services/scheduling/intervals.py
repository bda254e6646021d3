"""
Interval algebra over half-open TimeSlots.

Pure functions: no I/O, no state, deterministic output sorted by start.
Inputs may be unsorted and may overlap (a participant's calendar can return
overlapping busy blocks).
"""

from collections.abc import Iterable

from app.models.domain.scheduling_domain import TimeSlot


def _remaining(free: TimeSlot, busy: TimeSlot) -> list[TimeSlot]:
    """Pieces of `free` left after removing `busy`: zero, one or two slots."""
    if not free.overlaps(busy):
        return [free]

    pieces = []
    if busy.start > free.start:
        pieces.append(TimeSlot(free.start, busy.start))
    if busy.end < free.end:
        pieces.append(TimeSlot(busy.end, free.end))
    return pieces


def subtract(free: Iterable[TimeSlot], busy: Iterable[TimeSlot]) -> list[TimeSlot]:
    """
    Remove every busy interval from the free intervals.

    Each busy interval splits the free intervals it overlaps into 0, 1 or 2
    pieces. Adjacent intervals (busy.end == free.start) do not overlap.
    """
    result = list(free)
    for busy_slot in busy:
        next_result: list[TimeSlot] = []
        for free_slot in result:
            next_result.extend(_remaining(free_slot, busy_slot))
        result = next_result
    return sorted(result)


def merge(slots: Iterable[TimeSlot]) -> list[TimeSlot]:
    """Union of the given slots; overlapping or touching slots are coalesced."""
    ordered = sorted(slots)
    if not ordered:
        return []

    merged = [ordered[0]]
    for slot in ordered[1:]:
        last = merged[-1]
        if slot.start <= last.end:
            if slot.end > last.end:
                merged[-1] = TimeSlot(last.start, slot.end)
        else:
            merged.append(slot)
    return merged


def intersect(left: Iterable[TimeSlot], right: Iterable[TimeSlot]) -> list[TimeSlot]:
    """Moments that are in both lists."""
    a = merge(left)
    b = merge(right)
    result = []
    i = j = 0
    while i < len(a) and j < len(b):
        start = max(a[i].start, b[j].start)
        end = min(a[i].end, b[j].end)
        if start < end:
            result.append(TimeSlot(start, end))
        if a[i].end <= b[j].end:
            i += 1
        else:
            j += 1
    return result


def intersect_all(per_participant_free: Iterable[Iterable[TimeSlot]]) -> list[TimeSlot]:
    """
    Moments when every participant is simultaneously free.

    With no participants there is nothing to intersect and the result is empty;
    callers that want "no participants means the whole window" use common_free().
    """
    lists = [list(free) for free in per_participant_free]
    if not lists:
        return []

    result = merge(lists[0])
    for free in lists[1:]:
        result = intersect(result, free)
        if not result:
            break
    return result


def common_free(window: TimeSlot, busy_lists: Iterable[Iterable[TimeSlot]]) -> list[TimeSlot]:
    """
    Start from the whole window and subtract each participant's busy periods.

    Zero busy lists (zero participants) leave the whole window free.
    """
    free = [window]
    for busy in busy_lists:
        free = subtract(free, busy)
        if not free:
            break
    return merge(free)


def overlaps_any(slot: TimeSlot, busy: Iterable[TimeSlot]) -> bool:
    return any(slot.overlaps(busy_slot) for busy_slot in busy)


def clip(slots: Iterable[TimeSlot], window: TimeSlot) -> list[TimeSlot]:
    """Restrict slots to the window, dropping anything outside it."""
    return intersect(slots, [window])
