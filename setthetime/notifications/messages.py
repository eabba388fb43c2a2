"""Plain-text confirmation emails for a new booking."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from setthetime.store.base import Booking, MeetingType


def _when(meeting_type: MeetingType, start: datetime) -> str:
    local = start.astimezone(ZoneInfo(meeting_type.timezone))
    return f"{local.strftime('%A, %B %d at %I:%M %p')} ({meeting_type.timezone})"


def recipient_confirmation(meeting_type: MeetingType, booking: Booking) -> tuple[str, str]:
    """Subject and body sent to the person who booked."""
    subject = f"Confirmed: {meeting_type.title}"
    body = (
        f"Hi {booking.recipient_name},\n\n"
        f"Your booking is confirmed.\n"
        f"  What: {meeting_type.title} ({meeting_type.duration_minutes} minutes)\n"
        f"  When: {_when(meeting_type, booking.start)}\n"
        f"  Booking ID: {booking.id}\n\n"
        f"A calendar invitation has been sent separately."
    )
    return subject, body


def owner_notification(meeting_type: MeetingType, booking: Booking) -> tuple[str, str]:
    """Subject and body sent to the meeting type's owner."""
    subject = f"New booking: {meeting_type.title} with {booking.recipient_name}"
    body = (
        f"{booking.recipient_name} ({booking.recipient_email}) booked "
        f"{meeting_type.title}.\n"
        f"  When: {_when(meeting_type, booking.start)}\n"
        f"  Booking ID: {booking.id}\n"
        f"  Event ID: {booking.event_id}"
    )
    return subject, body
