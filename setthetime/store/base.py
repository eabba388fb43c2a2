"""Abstract persistent store for meeting types, bookings and OAuth tokens.

The store is the single source of truth for confirmed bookings.  It is
shared, concurrently written state: ``insert_confirmed_booking`` must
refuse a row that overlaps another confirmed booking of the same owner,
even if the caller already checked.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from setthetime.calendar_providers.base import OwnerCredential

CONFIRMED = "confirmed"
CANCELLED = "cancelled"


@dataclass
class MeetingType:
    id: int
    owner_id: str
    title: str
    duration_minutes: int
    timezone: str
    owner_email: str = ""


@dataclass
class Booking:
    id: int
    meeting_type_id: int
    owner_id: str
    recipient_name: str
    recipient_email: str
    start: datetime
    end: datetime
    status: str = CONFIRMED
    event_id: str = ""
    created_at: Optional[datetime] = None


@dataclass
class TokenBundle:
    """Tokens returned by the OAuth token endpoint."""

    access_token: str
    refresh_token: Optional[str]
    expiry: datetime
    scope: str


class BookingStore(ABC):
    """Async persistence interface used by the resolver and the API."""

    # ── Meeting types ─────────────────────────────────────────────

    @abstractmethod
    async def get_meeting_type(self, meeting_type_id: int) -> Optional[MeetingType]:
        """Return the meeting type, or None if it does not exist."""

    @abstractmethod
    async def create_meeting_type(
        self,
        owner_id: str,
        title: str,
        duration_minutes: int,
        timezone: str,
        owner_email: str = "",
    ) -> MeetingType:
        """Insert a meeting type and return it with its new id."""

    @abstractmethod
    async def list_meeting_types(self, owner_id: str) -> list[MeetingType]:
        """Return the owner's meeting types ordered by id."""

    # ── Bookings ──────────────────────────────────────────────────

    @abstractmethod
    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        """Return the booking, or None."""

    @abstractmethod
    async def find_confirmed_overlapping(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[Booking]:
        """Confirmed bookings of ``owner_id`` overlapping ``[start, end)``."""

    @abstractmethod
    async def insert_confirmed_booking(
        self,
        meeting_type: MeetingType,
        recipient_name: str,
        recipient_email: str,
        start: datetime,
        end: datetime,
        event_id: str,
    ) -> Booking:
        """Persist a confirmed booking.

        Raises:
            LocalConflict: another confirmed booking of the same owner
                overlaps ``[start, end)``.
        """

    @abstractmethod
    async def cancel_booking(self, booking_id: int) -> Optional[Booking]:
        """Mark a booking cancelled. Returns None if it does not exist."""

    # ── OAuth ─────────────────────────────────────────────────────

    @abstractmethod
    async def save_oauth_tokens(
        self, owner_id: str, provider: str, tokens: TokenBundle
    ) -> None:
        """Upsert tokens for ``(owner_id, provider)``.

        A missing refresh token keeps the previously stored one.
        """

    @abstractmethod
    async def get_oauth_status(self, owner_id: str, provider: str) -> Optional[dict]:
        """Return ``{"expiry", "updated_at"}`` or None when not connected."""

    @abstractmethod
    async def get_credential(
        self, owner_id: str, provider: str = "google"
    ) -> Optional[OwnerCredential]:
        """Return the owner's calendar credential, or None when not connected."""
