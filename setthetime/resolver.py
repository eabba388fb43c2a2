"""Availability & booking resolver.

Turns an owner's external busy time plus their confirmed local bookings
into offered slots, and commits a booking only after re-checking both
sources against the requested window.

Commit flow for ``book``:

  1. load meeting type           (NOT_FOUND, nothing else touched)
  2. validate input              (INVALID_INPUT)
  3. fresh busy fetch            (CALENDAR_CONFLICT)
  4. local overlap query         (LOCAL_CONFLICT)
  5. create calendar event       (UPSTREAM_FAILURE, nothing persisted)
  6. persist confirmed booking   (LOCAL_CONFLICT / UPSTREAM_FAILURE,
                                  external event cancelled again)
  7. notify recipient and owner  (best effort, never fails the booking)

Steps 3-6 hold a per-owner lock, and the store re-checks overlap inside
its own write, so two requests racing for one slot cannot both confirm.
"""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from setthetime.availability import conflicts, generate_slots
from setthetime.calendar_providers.base import (
    CalendarEvent,
    CalendarProvider,
    OwnerCredential,
    TimeSlot,
)
from setthetime.errors import (
    BookingError,
    CalendarConflict,
    InvalidInput,
    LocalConflict,
    NotFound,
    UpstreamFailure,
)
from setthetime.notifications.base import Notifier
from setthetime.notifications.messages import owner_notification, recipient_confirmation
from setthetime.store.base import CONFIRMED, Booking, BookingStore, MeetingType

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class Availability:
    meeting_type: MeetingType
    slots: list[TimeSlot]

    @property
    def duration_minutes(self) -> int:
        return self.meeting_type.duration_minutes


@dataclass
class BookingResult:
    booking: Booking
    event_id: str
    html_link: str = ""


def localize(dt: datetime, tz_name: str) -> datetime:
    """Attach ``tz_name`` to a naive datetime; aware datetimes pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz_name))
    return dt


class BookingResolver:
    """Computes bookable slots and commits reservations.

    Every collaborator is injected so tests can run the full flow against
    in-memory fakes.
    """

    def __init__(
        self,
        calendar: CalendarProvider,
        store: BookingStore,
        notifier: Notifier,
        mail_from: str = "noreply@setthetime.com",
        default_calendar_id: str = "primary",
        max_window_days: int = 31,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._calendar = calendar
        self._store = store
        self._notifier = notifier
        self._mail_from = mail_from
        self._default_calendar_id = default_calendar_id
        self._max_window = timedelta(days=max_window_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Entries vanish once no booking for the owner holds or awaits the lock
        self._owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _upstream(what: str, call: Awaitable[T]) -> T:
        """Await an external call, reporting any non-domain error as upstream."""
        try:
            return await call
        except BookingError:
            raise
        except Exception as exc:
            logger.exception("%s failed", what)
            raise UpstreamFailure(f"{what} failed: {exc}") from exc

    async def _load_meeting_type(self, meeting_type_id: int) -> MeetingType:
        meeting_type = await self._upstream(
            "Meeting type lookup", self._store.get_meeting_type(meeting_type_id)
        )
        if meeting_type is None:
            raise NotFound(f"Meeting type {meeting_type_id} not found")
        return meeting_type

    async def _credential(self, meeting_type: MeetingType) -> OwnerCredential:
        credential = await self._upstream(
            "Credential lookup", self._store.get_credential(meeting_type.owner_id)
        )
        if credential is None:
            # Providers with their own credentials (service account) still work
            credential = OwnerCredential(
                owner_id=meeting_type.owner_id,
                calendar_id=self._default_calendar_id,
            )
        return credential

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = self._owner_locks[owner_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_availability(
        self, meeting_type_id: int, window_start: datetime, window_end: datetime
    ) -> Availability:
        """Free slots of the meeting type's duration within the window."""
        meeting_type = await self._load_meeting_type(meeting_type_id)

        window_start = localize(window_start, meeting_type.timezone)
        window_end = localize(window_end, meeting_type.timezone)
        if window_end <= window_start:
            raise InvalidInput("'to' must be after 'from'")
        if window_end - window_start > self._max_window:
            raise InvalidInput(
                f"Window longer than {self._max_window.days} days"
            )

        credential = await self._credential(meeting_type)
        busy = await self._upstream(
            "Calendar busy lookup",
            self._calendar.get_busy_intervals(credential, window_start, window_end),
        )
        booked = await self._upstream(
            "Booking lookup",
            self._store.find_confirmed_overlapping(
                meeting_type.owner_id, window_start, window_end
            ),
        )
        busy = list(busy) + [TimeSlot(start=b.start, end=b.end) for b in booked]

        slots = list(
            generate_slots(
                window_start, window_end, meeting_type.duration_minutes, busy
            )
        )
        logger.info(
            "Meeting type %s: %d slot(s) between %s and %s (%d busy)",
            meeting_type.id,
            len(slots),
            window_start.isoformat(),
            window_end.isoformat(),
            len(busy),
        )
        return Availability(meeting_type=meeting_type, slots=slots)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def _validate_request(
        self, meeting_type: MeetingType, recipient_name: str, recipient_email: str, start: datetime
    ) -> None:
        if not recipient_name or not recipient_name.strip():
            raise InvalidInput("recipientName is required")
        if not recipient_email or not _EMAIL_PATTERN.match(recipient_email.strip()):
            raise InvalidInput("recipientEmail is not a valid email address")
        if meeting_type.duration_minutes <= 0:
            raise InvalidInput("Meeting type has a non-positive duration")
        if start < self._clock():
            raise InvalidInput("startTime is in the past")

    async def book(
        self,
        meeting_type_id: int,
        recipient_name: str,
        recipient_email: str,
        start: datetime,
    ) -> BookingResult:
        """Validate and commit a reservation starting at ``start``."""
        meeting_type = await self._load_meeting_type(meeting_type_id)
        start = localize(start, meeting_type.timezone)
        self._validate_request(meeting_type, recipient_name, recipient_email, start)
        recipient_name = recipient_name.strip()
        recipient_email = recipient_email.strip()
        end = start + timedelta(minutes=meeting_type.duration_minutes)

        credential = await self._credential(meeting_type)

        async with self._owner_lock(meeting_type.owner_id):
            busy = await self._upstream(
                "Calendar busy lookup",
                self._calendar.get_busy_intervals(credential, start, end),
            )
            if conflicts(start, end, busy):
                logger.info(
                    "Calendar conflict for meeting type %s at %s",
                    meeting_type.id,
                    start.isoformat(),
                )
                raise CalendarConflict("The requested time is busy on the calendar")

            existing = await self._upstream(
                "Booking lookup",
                self._store.find_confirmed_overlapping(
                    meeting_type.owner_id, start, end
                ),
            )
            if existing:
                logger.info(
                    "Local conflict for meeting type %s at %s (booking %s)",
                    meeting_type.id,
                    start.isoformat(),
                    existing[0].id,
                )
                raise LocalConflict("The requested time is already booked")

            attendees = [recipient_email]
            if meeting_type.owner_email:
                attendees.insert(0, meeting_type.owner_email)
            event = CalendarEvent(
                summary=f"{meeting_type.title} with {recipient_name}",
                start=start,
                end=end,
                description=f"Booked by {recipient_name} ({recipient_email}).",
                attendees=attendees,
            )
            created = await self._upstream(
                "Calendar event creation",
                self._calendar.create_event(credential, event),
            )
            event_id = created.get("event_id", "")

            try:
                booking = await self._upstream(
                    "Booking persistence",
                    self._store.insert_confirmed_booking(
                        meeting_type,
                        recipient_name,
                        recipient_email,
                        start,
                        end,
                        event_id,
                    ),
                )
            except BookingError:
                await self._cancel_event(credential, event_id)
                raise

        await self._notify(meeting_type, booking)
        return BookingResult(
            booking=booking,
            event_id=event_id,
            html_link=created.get("html_link", ""),
        )

    async def _cancel_event(self, credential: OwnerCredential, event_id: str) -> None:
        """Best-effort removal of an external event."""
        if not event_id:
            return
        try:
            cancelled = await self._calendar.cancel_event(credential, event_id)
        except Exception:
            logger.exception("Compensating cancel of event %s raised", event_id)
            return
        if not cancelled:
            logger.error(
                "Event %s exists without a booking row and could not be cancelled",
                event_id,
            )

    async def _notify(self, meeting_type: MeetingType, booking: Booking) -> None:
        messages = [(booking.recipient_email, recipient_confirmation(meeting_type, booking))]
        if meeting_type.owner_email:
            messages.append(
                (meeting_type.owner_email, owner_notification(meeting_type, booking))
            )
        else:
            logger.warning(
                "Meeting type %s has no owner email; owner not notified",
                meeting_type.id,
            )

        for to, (subject, body) in messages:
            try:
                await self._notifier.send(
                    to=to,
                    from_=self._mail_from,
                    subject=subject,
                    text=body,
                    payload={"kind": "booking", "booking_id": booking.id},
                )
            except Exception:
                logger.exception(
                    "Notification to %s for booking %s failed", to, booking.id
                )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, booking_id: int) -> Booking:
        """Cancel a booking and remove its calendar event (best effort)."""
        booking = await self._upstream(
            "Booking lookup", self._store.get_booking(booking_id)
        )
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        if booking.status != CONFIRMED:
            return booking

        cancelled = await self._upstream(
            "Booking cancellation", self._store.cancel_booking(booking_id)
        )
        meeting_type = await self._upstream(
            "Meeting type lookup", self._store.get_meeting_type(booking.meeting_type_id)
        )
        if meeting_type is not None:
            credential = await self._credential(meeting_type)
            await self._cancel_event(credential, booking.event_id)
        return cancelled
