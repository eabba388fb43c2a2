"""Pydantic models for meeting types."""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator

from .booking import CamelModel


class MeetingTypeCreate(CamelModel):
    owner_id: str = Field(min_length=1, max_length=255)
    owner_email: str = ""
    title: str = Field(min_length=1, max_length=255)
    duration_minutes: int = Field(gt=0, le=24 * 60)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value!r}")
        return value


class MeetingTypeOut(CamelModel):
    id: int
    owner_id: str
    title: str
    duration_minutes: int
    timezone: str
