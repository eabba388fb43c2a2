"""Calendar provider abstractions and implementations."""

from .base import (
    BusyInterval,
    CalendarEvent,
    CalendarProvider,
    OwnerCredential,
    TimeSlot,
)

__all__ = [
    "BusyInterval",
    "CalendarEvent",
    "CalendarProvider",
    "OwnerCredential",
    "TimeSlot",
]
