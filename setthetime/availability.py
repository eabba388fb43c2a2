"""Slot generation over a window of busy time.

Slots are tiled contiguously from the window start, each exactly
``duration_minutes`` long.  A slot is offered only when it overlaps no
busy interval under the half-open rule, so a slot that ends exactly when
a busy block starts (or starts exactly when one ends) is still free.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Iterator

from setthetime.calendar_providers.base import BusyInterval, TimeSlot
from setthetime.errors import InvalidInput


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open intersection test for ``[a_start, a_end)`` and ``[b_start, b_end)``."""
    return a_start < b_end and b_start < a_end


def conflicts(
    start: datetime, end: datetime, busy: Iterable[BusyInterval]
) -> list[BusyInterval]:
    """Return the busy intervals that overlap ``[start, end)``."""
    return [b for b in busy if overlaps(start, end, b.start, b.end)]


class SlotSequence:
    """Finite, restartable sequence of free slots.

    Iterating twice yields the same slots in the same order; nothing is
    computed until iteration starts.
    """

    def __init__(
        self,
        window_start: datetime,
        window_end: datetime,
        duration_minutes: int,
        busy: Iterable[BusyInterval] = (),
    ) -> None:
        if duration_minutes <= 0:
            raise InvalidInput("duration_minutes must be a positive integer")
        if window_end < window_start:
            raise InvalidInput("window end is before window start")
        self.window_start = window_start
        self.window_end = window_end
        self.duration = timedelta(minutes=duration_minutes)
        self._busy = tuple(sorted(busy, key=lambda b: b.start))

    def __iter__(self) -> Iterator[TimeSlot]:
        cursor = self.window_start
        while cursor + self.duration <= self.window_end:
            slot_end = cursor + self.duration
            if not conflicts(cursor, slot_end, self._busy):
                yield TimeSlot(start=cursor, end=slot_end)
            cursor = slot_end

    def __repr__(self) -> str:
        return (
            f"SlotSequence({self.window_start.isoformat()} -> "
            f"{self.window_end.isoformat()}, {self.duration}, busy={len(self._busy)})"
        )


def generate_slots(
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    busy: Iterable[BusyInterval] = (),
) -> SlotSequence:
    """Return the free slots of ``duration_minutes`` within the window."""
    return SlotSequence(window_start, window_end, duration_minutes, busy)
