"""Request and response models for the HTTP API."""

from .booking import AvailabilityResponse, BookingRequest, BookingResponse, SlotOut
from .meeting_type import MeetingTypeCreate, MeetingTypeOut

__all__ = [
    "AvailabilityResponse",
    "BookingRequest",
    "BookingResponse",
    "MeetingTypeCreate",
    "MeetingTypeOut",
    "SlotOut",
]
