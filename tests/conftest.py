"""Shared fakes: a scriptable calendar provider and a recording notifier."""

import asyncio
from datetime import datetime, timezone

import pytest

from setthetime.calendar_providers.base import (
    BusyInterval,
    CalendarEvent,
    CalendarProvider,
    OwnerCredential,
)
from setthetime.config import Settings
from setthetime.db import init_db, make_engine, make_session_factory
from setthetime.errors import UpstreamFailure
from setthetime.notifications.base import Notifier
from setthetime.store.memory import MemoryBookingStore


class FakeCalendar(CalendarProvider):
    """In-memory calendar. Busy time is whatever the test puts in ``busy``."""

    def __init__(self):
        self.busy: list[BusyInterval] = []
        self.busy_calls: list[tuple[datetime, datetime]] = []
        self.created: list[CalendarEvent] = []
        self.cancelled: list[str] = []
        self.fail_busy = False
        self.fail_create = False
        self.slow = False

    @property
    def calls(self) -> int:
        return len(self.busy_calls) + len(self.created) + len(self.cancelled)

    async def get_busy_intervals(self, credential: OwnerCredential, start, end):
        self.busy_calls.append((start, end))
        if self.slow:
            # Let a concurrent request run between check and act
            await asyncio.sleep(0.01)
        if self.fail_busy:
            raise UpstreamFailure("freebusy down")
        return [b for b in self.busy if b.start < end and start < b.end]

    async def create_event(self, credential: OwnerCredential, event: CalendarEvent) -> dict:
        if self.slow:
            await asyncio.sleep(0.01)
        if self.fail_create:
            raise UpstreamFailure("insert failed")
        self.created.append(event)
        event_id = f"evt_{len(self.created)}"
        return {"event_id": event_id, "html_link": f"https://calendar.test/{event_id}"}

    async def cancel_event(self, credential: OwnerCredential, event_id: str) -> bool:
        self.cancelled.append(event_id)
        return True


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send(self, to, from_, subject, text, html=None, payload=None):
        if self.fail:
            raise RuntimeError("smtp on fire")
        self.sent.append({"to": to, "from": from_, "subject": subject, "text": text})
        return {"queued": True, "id": len(self.sent)}


NOW = datetime(2030, 3, 1, 8, 0, tzinfo=timezone.utc)


def utc(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2030, 3, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def store():
    return MemoryBookingStore()


@pytest.fixture
def session_factory(tmp_path):
    # File-backed so executor threads each get their own connection
    url = f"sqlite:///{tmp_path / 'setthetime.db'}"
    engine = make_engine(Settings(_env_file=None, database_url=url))
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()
