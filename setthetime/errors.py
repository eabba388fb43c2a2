"""Error kinds surfaced by the availability and booking flow.

Each error carries a ``kind`` string that the HTTP layer maps to a
distinct response.  Nothing here is retried automatically; a caller that
gets a conflict starts again from the availability query.
"""

from __future__ import annotations

NOT_FOUND = "NOT_FOUND"
INVALID_INPUT = "INVALID_INPUT"
CALENDAR_CONFLICT = "CALENDAR_CONFLICT"
LOCAL_CONFLICT = "LOCAL_CONFLICT"
UPSTREAM_FAILURE = "UPSTREAM_FAILURE"


class BookingError(Exception):
    """Base class for every user-visible failure."""

    kind: str = UPSTREAM_FAILURE
    status_code: int = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind


class NotFound(BookingError):
    kind = NOT_FOUND
    status_code = 404


class InvalidInput(BookingError):
    kind = INVALID_INPUT
    status_code = 422


class CalendarConflict(BookingError):
    kind = CALENDAR_CONFLICT
    status_code = 409


class LocalConflict(BookingError):
    kind = LOCAL_CONFLICT
    status_code = 409


class UpstreamFailure(BookingError):
    kind = UPSTREAM_FAILURE
    status_code = 502
