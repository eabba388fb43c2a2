"""In-process BookingStore for tests and local development."""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from setthetime.availability import overlaps
from setthetime.calendar_providers.base import OwnerCredential
from setthetime.errors import LocalConflict

from .base import (
    CANCELLED,
    CONFIRMED,
    Booking,
    BookingStore,
    MeetingType,
    TokenBundle,
)


class MemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self.meeting_types: dict[int, MeetingType] = {}
        self.bookings: dict[int, Booking] = {}
        self.tokens: dict[tuple[str, str], dict] = {}
        self._mt_ids = itertools.count(1)
        self._booking_ids = itertools.count(1)

    async def get_meeting_type(self, meeting_type_id: int) -> Optional[MeetingType]:
        return self.meeting_types.get(meeting_type_id)

    async def create_meeting_type(
        self,
        owner_id: str,
        title: str,
        duration_minutes: int,
        timezone: str,
        owner_email: str = "",
    ) -> MeetingType:
        mt = MeetingType(
            id=next(self._mt_ids),
            owner_id=owner_id,
            title=title,
            duration_minutes=duration_minutes,
            timezone=timezone,
            owner_email=owner_email,
        )
        self.meeting_types[mt.id] = mt
        return mt

    async def list_meeting_types(self, owner_id: str) -> list[MeetingType]:
        return [mt for mt in self.meeting_types.values() if mt.owner_id == owner_id]

    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        return self.bookings.get(booking_id)

    async def find_confirmed_overlapping(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[Booking]:
        found = [
            b
            for b in self.bookings.values()
            if b.owner_id == owner_id
            and b.status == CONFIRMED
            and overlaps(start, end, b.start, b.end)
        ]
        return sorted(found, key=lambda b: b.start)

    async def insert_confirmed_booking(
        self,
        meeting_type: MeetingType,
        recipient_name: str,
        recipient_email: str,
        start: datetime,
        end: datetime,
        event_id: str,
    ) -> Booking:
        # No await between check and insert, so this is atomic on the loop
        clash = await self.find_confirmed_overlapping(meeting_type.owner_id, start, end)
        if clash:
            raise LocalConflict(f"Slot overlaps existing booking {clash[0].id}")
        booking = Booking(
            id=next(self._booking_ids),
            meeting_type_id=meeting_type.id,
            owner_id=meeting_type.owner_id,
            recipient_name=recipient_name,
            recipient_email=recipient_email,
            start=start,
            end=end,
            status=CONFIRMED,
            event_id=event_id,
            created_at=datetime.now(timezone.utc),
        )
        self.bookings[booking.id] = booking
        return booking

    async def cancel_booking(self, booking_id: int) -> Optional[Booking]:
        booking = self.bookings.get(booking_id)
        if booking is None:
            return None
        booking = replace(booking, status=CANCELLED)
        self.bookings[booking_id] = booking
        return booking

    async def save_oauth_tokens(
        self, owner_id: str, provider: str, tokens: TokenBundle
    ) -> None:
        previous = self.tokens.get((owner_id, provider), {})
        self.tokens[(owner_id, provider)] = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token or previous.get("refresh_token"),
            "expiry": tokens.expiry,
            "scope": tokens.scope,
            "updated_at": datetime.now(timezone.utc),
        }

    async def get_oauth_status(self, owner_id: str, provider: str) -> Optional[dict]:
        row = self.tokens.get((owner_id, provider))
        if row is None:
            return None
        return {"expiry": row["expiry"], "updated_at": row["updated_at"]}

    async def get_credential(
        self, owner_id: str, provider: str = "google"
    ) -> Optional[OwnerCredential]:
        row = self.tokens.get((owner_id, provider))
        if row is None:
            return None
        return OwnerCredential(
            owner_id=owner_id,
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expiry=row["expiry"],
            scope=row["scope"],
        )
