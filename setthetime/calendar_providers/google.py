"""Google Calendar provider implementation.

Talks to the Calendar API v3 on behalf of each owner.  Owners connect
through the OAuth flow and their tokens arrive here as an
``OwnerCredential``.  When ``GOOGLE_SERVICE_ACCOUNT_JSON`` is configured
the service account is used instead (handy for a single shared calendar).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from setthetime.errors import UpstreamFailure

from .base import BusyInterval, CalendarEvent, CalendarProvider, OwnerCredential

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        service_account_path: str = "",
        send_updates: str = "all",
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._send_updates = send_updates
        self._sa_credentials = None
        if service_account_path:
            self._sa_credentials = (
                service_account.Credentials.from_service_account_file(
                    service_account_path, scopes=SCOPES
                )
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _parse_rfc3339(value: str) -> datetime:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))

    def _credentials_for(self, credential: OwnerCredential):
        if self._sa_credentials is not None:
            return self._sa_credentials
        if not credential.access_token and not credential.refresh_token:
            raise UpstreamFailure(
                f"Google Calendar is not connected for owner {credential.owner_id}"
            )
        return Credentials(
            token=credential.access_token or None,
            refresh_token=credential.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._client_id or None,
            client_secret=self._client_secret or None,
            scopes=SCOPES,
        )

    def _service(self, credential: OwnerCredential):
        return build(
            "calendar",
            "v3",
            credentials=self._credentials_for(credential),
            cache_discovery=False,
        )

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def get_busy_intervals(
        self,
        credential: OwnerCredential,
        start: datetime,
        end: datetime,
    ) -> list[BusyInterval]:
        """Query the Google freebusy API for the credential's calendar."""
        calendar_id = credential.calendar_id
        body = {
            "timeMin": self._to_rfc3339(start),
            "timeMax": self._to_rfc3339(end),
            "items": [{"id": calendar_id}],
        }

        try:
            service = self._service(credential)
            response = await self._run_in_executor(
                service.freebusy().query(body=body).execute
            )
        except UpstreamFailure:
            raise
        except Exception as exc:
            logger.exception("freebusy query failed for calendar %s", calendar_id)
            raise UpstreamFailure(f"Calendar busy lookup failed: {exc}") from exc

        calendar = response.get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            reasons = ", ".join(e.get("reason", "?") for e in calendar["errors"])
            raise UpstreamFailure(f"Calendar busy lookup failed: {reasons}")

        busy: list[BusyInterval] = []
        for interval in calendar.get("busy", []):
            busy.append(
                BusyInterval(
                    start=self._parse_rfc3339(interval["start"]),
                    end=self._parse_rfc3339(interval["end"]),
                )
            )
        busy.sort(key=lambda b: b.start)
        return busy

    async def create_event(
        self, credential: OwnerCredential, event: CalendarEvent
    ) -> dict:
        """Insert an event into the owner's Google Calendar.

        Invitations go out to attendees according to ``send_updates``.
        """
        body: dict[str, Any] = {
            "summary": event.summary,
            "start": {"dateTime": self._to_rfc3339(event.start)},
            "end": {"dateTime": self._to_rfc3339(event.end)},
        }
        if event.description:
            body["description"] = event.description
        if event.location:
            body["location"] = event.location
        if event.attendees:
            body["attendees"] = [
                {"email": addr} for addr in event.attendees
            ]

        try:
            service = self._service(credential)
            result = await self._run_in_executor(
                service.events()
                .insert(
                    calendarId=credential.calendar_id,
                    body=body,
                    sendUpdates=self._send_updates,
                )
                .execute
            )
        except UpstreamFailure:
            raise
        except Exception as exc:
            logger.exception(
                "Failed to create event on calendar %s", credential.calendar_id
            )
            raise UpstreamFailure(f"Calendar event creation failed: {exc}") from exc

        logger.info(
            "Created event %s on calendar %s", result["id"], credential.calendar_id
        )

        return {
            "event_id": result["id"],
            "html_link": result.get("htmlLink", ""),
            "status": result.get("status", "confirmed"),
        }

    async def cancel_event(
        self, credential: OwnerCredential, event_id: str
    ) -> bool:
        """Delete an event from Google Calendar."""
        try:
            service = self._service(credential)
            await self._run_in_executor(
                service.events()
                .delete(
                    calendarId=credential.calendar_id,
                    eventId=event_id,
                    sendUpdates=self._send_updates,
                )
                .execute
            )
            logger.info(
                "Cancelled event %s on calendar %s",
                event_id,
                credential.calendar_id,
            )
            return True
        except Exception:
            logger.exception(
                "Failed to cancel event %s on calendar %s",
                event_id,
                credential.calendar_id,
            )
            return False
