"""Abstract base class for calendar providers.

Defines the interface for reading busy time and creating events on an
owner's calendar.  Any calendar backend (Google, Outlook, etc.)
implements this ABC.  Credentials are passed explicitly on every call so
one provider instance can serve many owners.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class TimeSlot:
    """A half-open ``[start, end)`` window of time."""

    start: datetime
    end: datetime


# Busy intervals and offered slots share the same shape.
BusyInterval = TimeSlot


@dataclass
class OwnerCredential:
    """Calendar access for one meeting-type owner."""

    owner_id: str
    calendar_id: str = "primary"
    access_token: str = ""
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scope: str = ""


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created."""

    summary: str
    start: datetime
    end: datetime
    description: str = ""
    attendees: list[str] = field(default_factory=list)  # email addresses
    location: str = ""


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Subclasses must implement busy-time lookup, event creation, and event
    cancellation.
    """

    @abstractmethod
    async def get_busy_intervals(
        self,
        credential: OwnerCredential,
        start: datetime,
        end: datetime,
    ) -> list[BusyInterval]:
        """Return busy intervals on the owner's calendar within ``[start, end)``.

        Args:
            credential: Owner credential, including the calendar to query.
            start: Beginning of the search window.
            end: End of the search window.

        Returns:
            List of BusyInterval objects, sorted by start.

        Raises:
            UpstreamFailure: if the provider call fails.
        """

    @abstractmethod
    async def create_event(
        self, credential: OwnerCredential, event: CalendarEvent
    ) -> dict:
        """Create a calendar event.

        Args:
            credential: Owner credential, including the target calendar.
            event: Event details.

        Returns:
            Dict containing at least ``"event_id"`` and ``"html_link"``.

        Raises:
            UpstreamFailure: if the provider call fails.
        """

    @abstractmethod
    async def cancel_event(
        self, credential: OwnerCredential, event_id: str
    ) -> bool:
        """Cancel / delete a calendar event.

        Returns:
            True if the event was successfully cancelled.
        """
