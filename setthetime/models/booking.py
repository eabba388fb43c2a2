"""Pydantic models for availability queries and booking requests."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SlotOut(CamelModel):
    start: datetime
    end: datetime


class AvailabilityResponse(CamelModel):
    slots: list[SlotOut]
    duration_minutes: int


class BookingRequest(CamelModel):
    """Data collected from the person booking a slot."""

    meeting_type_id: int
    recipient_name: str = Field(min_length=1, max_length=255)
    recipient_email: str = Field(min_length=3, max_length=320)
    start_time: datetime


class BookingResponse(CamelModel):
    """Result returned after a successful booking."""

    booking_id: int
    event_id: str
    start: datetime
    end: datetime
    calendar_link: str = ""
