"""Tests for BookingResolver: availability and the booking commit flow."""

import asyncio
import gc
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import NOW, FakeCalendar, FakeNotifier, utc
from setthetime.calendar_providers.base import BusyInterval, TimeSlot
from setthetime.errors import (
    CalendarConflict,
    InvalidInput,
    LocalConflict,
    NotFound,
    UpstreamFailure,
)
from setthetime.resolver import BookingResolver


@pytest.fixture
def resolver(calendar, store, notifier):
    return BookingResolver(calendar, store, notifier, clock=lambda: NOW)


@pytest.fixture
async def meeting_type(store):
    return await store.create_meeting_type(
        "owner-1", "Intro call", 30, "UTC", owner_email="host@example.com"
    )


# ── Availability ────────────────────────────────────────────────────


class TestAvailability:
    async def test_empty_calendar(self, resolver, meeting_type):
        result = await resolver.get_availability(meeting_type.id, utc(9), utc(10))
        assert result.duration_minutes == 30
        assert result.slots == [
            TimeSlot(utc(9), utc(9, 30)),
            TimeSlot(utc(9, 30), utc(10)),
        ]

    async def test_external_busy_removed(self, resolver, calendar, meeting_type):
        calendar.busy = [BusyInterval(utc(9), utc(9, 30))]
        result = await resolver.get_availability(meeting_type.id, utc(9), utc(10))
        assert result.slots == [TimeSlot(utc(9, 30), utc(10))]

    async def test_local_bookings_removed(self, resolver, store, meeting_type):
        await store.insert_confirmed_booking(
            meeting_type, "Ann", "ann@example.com", utc(9, 30), utc(10), "evt_x"
        )
        result = await resolver.get_availability(meeting_type.id, utc(9), utc(10))
        assert result.slots == [TimeSlot(utc(9), utc(9, 30))]

    async def test_bookings_of_other_owner_ignored(self, resolver, store, meeting_type):
        other = await store.create_meeting_type("owner-2", "Other", 30, "UTC")
        await store.insert_confirmed_booking(
            other, "Ann", "ann@example.com", utc(9), utc(9, 30), "evt_x"
        )
        result = await resolver.get_availability(meeting_type.id, utc(9), utc(10))
        assert len(result.slots) == 2

    async def test_naive_window_uses_meeting_type_timezone(self, resolver, store):
        mt = await store.create_meeting_type("owner-1", "Chat", 60, "America/Chicago")
        result = await resolver.get_availability(
            mt.id, datetime(2030, 3, 15, 9, 0), datetime(2030, 3, 15, 11, 0)
        )
        # 09:00 CDT is 14:00 UTC
        assert result.slots[0].start == datetime(2030, 3, 15, 14, 0, tzinfo=timezone.utc)
        assert len(result.slots) == 2

    async def test_unknown_meeting_type(self, resolver, calendar):
        with pytest.raises(NotFound):
            await resolver.get_availability(999, utc(9), utc(10))
        assert calendar.calls == 0

    async def test_inverted_window(self, resolver, meeting_type):
        with pytest.raises(InvalidInput):
            await resolver.get_availability(meeting_type.id, utc(10), utc(9))

    async def test_window_too_long(self, resolver, meeting_type):
        with pytest.raises(InvalidInput):
            await resolver.get_availability(
                meeting_type.id, utc(9), utc(9) + timedelta(days=40)
            )

    async def test_busy_lookup_failure(self, resolver, calendar, meeting_type):
        calendar.fail_busy = True
        with pytest.raises(UpstreamFailure):
            await resolver.get_availability(meeting_type.id, utc(9), utc(10))


# ── Booking ─────────────────────────────────────────────────────────


class TestBook:
    async def test_happy_path(self, resolver, calendar, store, notifier, meeting_type):
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))

        assert result.event_id == "evt_1"
        assert result.booking.start == utc(9)
        assert result.booking.end == utc(9, 30)
        assert result.booking.status == "confirmed"
        assert store.bookings[result.booking.id].event_id == "evt_1"

        event = calendar.created[0]
        assert event.attendees == ["host@example.com", "ann@example.com"]
        assert event.start == utc(9)

        recipients = [m["to"] for m in notifier.sent]
        assert recipients == ["ann@example.com", "host@example.com"]

    async def test_busy_fetch_is_fresh_and_exact(self, resolver, calendar, meeting_type):
        await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert calendar.busy_calls == [(utc(9), utc(9, 30))]

    async def test_calendar_conflict(self, resolver, calendar, store, meeting_type):
        calendar.busy = [BusyInterval(utc(9, 15), utc(9, 45))]
        with pytest.raises(CalendarConflict):
            await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert calendar.created == []
        assert store.bookings == {}

    async def test_touching_busy_is_not_conflict(self, resolver, calendar, meeting_type):
        calendar.busy = [BusyInterval(utc(8, 30), utc(9))]
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert result.booking.start == utc(9)

    async def test_local_conflict(self, resolver, calendar, store, meeting_type):
        await store.insert_confirmed_booking(
            meeting_type, "Bob", "bob@example.com", utc(9, 15), utc(9, 45), "evt_old"
        )
        with pytest.raises(LocalConflict):
            await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert calendar.created == []

    async def test_cancelled_booking_does_not_block(self, resolver, store, meeting_type):
        old = await store.insert_confirmed_booking(
            meeting_type, "Bob", "bob@example.com", utc(9), utc(9, 30), "evt_old"
        )
        await store.cancel_booking(old.id)
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert result.booking.id != old.id

    async def test_unknown_meeting_type_touches_nothing(self, resolver, calendar, store, notifier):
        with pytest.raises(NotFound):
            await resolver.book(42, "Ann", "ann@example.com", utc(9))
        assert calendar.calls == 0
        assert store.bookings == {}
        assert notifier.sent == []

    @pytest.mark.parametrize(
        "name, email",
        [("", "ann@example.com"), ("   ", "ann@example.com"), ("Ann", "not-an-email"), ("Ann", "")],
    )
    async def test_invalid_recipient(self, resolver, calendar, meeting_type, name, email):
        with pytest.raises(InvalidInput):
            await resolver.book(meeting_type.id, name, email, utc(9))
        assert calendar.calls == 0

    async def test_start_in_past(self, resolver, meeting_type):
        with pytest.raises(InvalidInput):
            await resolver.book(
                meeting_type.id, "Ann", "ann@example.com", NOW - timedelta(hours=1)
            )

    async def test_event_creation_failure_persists_nothing(
        self, resolver, calendar, store, notifier, meeting_type
    ):
        calendar.fail_create = True
        with pytest.raises(UpstreamFailure):
            await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert store.bookings == {}
        assert notifier.sent == []

    async def test_persistence_failure_cancels_event(
        self, resolver, calendar, store, notifier, meeting_type
    ):
        store.insert_confirmed_booking = AsyncMock(side_effect=RuntimeError("db gone"))
        with pytest.raises(UpstreamFailure):
            await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert calendar.cancelled == ["evt_1"]
        assert notifier.sent == []

    async def test_notification_failure_does_not_fail_booking(
        self, calendar, store, meeting_type
    ):
        resolver = BookingResolver(calendar, store, FakeNotifier(fail=True), clock=lambda: NOW)
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        assert result.booking.status == "confirmed"

    async def test_owner_without_email_gets_no_notification(
        self, resolver, store, notifier
    ):
        mt = await store.create_meeting_type("owner-9", "Quick", 15, "UTC")
        await resolver.book(mt.id, "Ann", "ann@example.com", utc(9))
        assert [m["to"] for m in notifier.sent] == ["ann@example.com"]

    async def test_naive_start_uses_meeting_type_timezone(self, resolver, store):
        mt = await store.create_meeting_type("owner-1", "Chat", 30, "Europe/Berlin")
        result = await resolver.book(
            mt.id, "Ann", "ann@example.com", datetime(2030, 3, 15, 10, 0)
        )
        assert result.booking.start.astimezone(timezone.utc) == utc(9)


# ── Concurrency ─────────────────────────────────────────────────────


class TestConcurrentBooking:
    async def test_same_slot_only_one_confirmed(self, resolver, calendar, store, meeting_type):
        calendar.slow = True
        results = await asyncio.gather(
            resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9)),
            resolver.book(meeting_type.id, "Bob", "bob@example.com", utc(9)),
            return_exceptions=True,
        )
        confirmed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(confirmed) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], (LocalConflict, CalendarConflict))
        assert len([b for b in store.bookings.values() if b.status == "confirmed"]) == 1

    async def test_store_backstop_across_resolvers(self, store, meeting_type):
        # Two resolvers stand in for two server processes sharing one store
        cal_a, cal_b = FakeCalendar(), FakeCalendar()
        cal_a.slow = cal_b.slow = True
        a = BookingResolver(cal_a, store, FakeNotifier(), clock=lambda: NOW)
        b = BookingResolver(cal_b, store, FakeNotifier(), clock=lambda: NOW)

        results = await asyncio.gather(
            a.book(meeting_type.id, "Ann", "ann@example.com", utc(9)),
            b.book(meeting_type.id, "Bob", "bob@example.com", utc(9, 15)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], LocalConflict)
        assert len(store.bookings) == 1
        # The loser's external event was removed again
        assert cal_a.cancelled + cal_b.cancelled == ["evt_1"]

    async def test_different_owners_do_not_block(self, resolver, store):
        mt1 = await store.create_meeting_type("owner-1", "A", 30, "UTC")
        mt2 = await store.create_meeting_type("owner-2", "B", 30, "UTC")
        r1, r2 = await asyncio.gather(
            resolver.book(mt1.id, "Ann", "ann@example.com", utc(9)),
            resolver.book(mt2.id, "Bob", "bob@example.com", utc(9)),
        )
        assert r1.booking.owner_id == "owner-1"
        assert r2.booking.owner_id == "owner-2"

    async def test_owner_locks_released_when_idle(self, resolver, store):
        for i in range(20):
            mt = await store.create_meeting_type(f"owner-{i}", "A", 30, "UTC")
            await resolver.book(mt.id, "Ann", "ann@example.com", utc(9))
        gc.collect()
        assert len(resolver._owner_locks) == 0


# ── Cancellation ────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_frees_slot_and_removes_event(
        self, resolver, calendar, meeting_type
    ):
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        cancelled = await resolver.cancel(result.booking.id)
        assert cancelled.status == "cancelled"
        assert calendar.cancelled == ["evt_1"]

        availability = await resolver.get_availability(meeting_type.id, utc(9), utc(10))
        assert TimeSlot(utc(9), utc(9, 30)) in availability.slots

    async def test_cancel_unknown(self, resolver):
        with pytest.raises(NotFound):
            await resolver.cancel(123)

    async def test_cancel_twice_is_noop(self, resolver, calendar, meeting_type):
        result = await resolver.book(meeting_type.id, "Ann", "ann@example.com", utc(9))
        await resolver.cancel(result.booking.id)
        again = await resolver.cancel(result.booking.id)
        assert again.status == "cancelled"
        assert calendar.cancelled == ["evt_1"]
