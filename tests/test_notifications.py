"""Tests for the email outbox notifier and confirmation messages."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from setthetime.errors import InvalidInput, NotFound, UpstreamFailure
from setthetime.notifications.messages import owner_notification, recipient_confirmation
from setthetime.notifications.outbox import POSTMARK_URL, EmailOutboxNotifier
from setthetime.store.base import Booking, MeetingType
from setthetime.store.tables import EmailOutboxRow


def postmark_client(requests: list, status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json={"MessageID": f"msg-{len(requests)}"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestQueueMode:
    async def test_send_queues_row(self, session_factory):
        notifier = EmailOutboxNotifier(session_factory, postmark_token="tok", mail_mode="queue")
        result = await notifier.send(
            to="ann@example.com", from_="noreply@setthetime.com",
            subject="Hi", text="Body", payload={"kind": "test"},
        )
        assert result["queued"] is True

        rows = await notifier.list_recent()
        assert len(rows) == 1
        assert rows[0]["id"] == result["id"]
        assert rows[0]["status"] == "queued"
        assert rows[0]["to_email"] == "ann@example.com"

    async def test_no_token_forces_queue(self, session_factory):
        notifier = EmailOutboxNotifier(session_factory, postmark_token="", mail_mode="send")
        assert notifier.queueing
        result = await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")
        assert result["queued"] is True

    async def test_list_recent_newest_first(self, session_factory):
        notifier = EmailOutboxNotifier(session_factory)
        for i in range(3):
            await notifier.send(f"u{i}@example.com", "noreply@setthetime.com", f"S{i}", "B")
        rows = await notifier.list_recent(2)
        assert [r["subject"] for r in rows] == ["S2", "S1"]


class TestSendMode:
    async def test_sends_via_postmark_and_records(self, session_factory):
        requests: list = []
        notifier = EmailOutboxNotifier(
            session_factory, postmark_token="tok", mail_mode="send",
            http_client=postmark_client(requests),
        )
        result = await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")

        assert result == {"queued": False, "message_id": "msg-1"}
        sent = requests[0]
        assert str(sent.url) == POSTMARK_URL
        assert sent.headers["X-Postmark-Server-Token"] == "tok"
        rows = await notifier.list_recent()
        assert rows[0]["status"] == "sent"

    async def test_postmark_error_is_upstream_failure(self, session_factory):
        notifier = EmailOutboxNotifier(
            session_factory, postmark_token="tok", mail_mode="send",
            http_client=postmark_client([], status=422),
        )
        with pytest.raises(UpstreamFailure):
            await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")
        assert await notifier.list_recent() == []


class TestFlush:
    async def test_flush_sends_queued_row(self, session_factory):
        requests: list = []
        notifier = EmailOutboxNotifier(
            session_factory, postmark_token="tok", mail_mode="queue",
            http_client=postmark_client(requests),
        )
        queued = await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")

        message_id = await notifier.flush(queued["id"])
        assert message_id == "msg-1"
        rows = await notifier.list_recent()
        assert rows[0]["status"] == "sent"

        with pytest.raises(NotFound):
            await notifier.flush(queued["id"])

    async def test_flush_unknown(self, session_factory):
        notifier = EmailOutboxNotifier(session_factory, postmark_token="tok")
        with pytest.raises(NotFound):
            await notifier.flush(77)

    async def test_flush_without_postmark(self, session_factory):
        notifier = EmailOutboxNotifier(session_factory)
        queued = await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")
        with pytest.raises(InvalidInput):
            await notifier.flush(queued["id"])


class TestMessages:
    def _fixtures(self):
        mt = MeetingType(
            id=1, owner_id="owner-1", title="Intro call",
            duration_minutes=30, timezone="America/New_York",
        )
        booking = Booking(
            id=7, meeting_type_id=1, owner_id="owner-1",
            recipient_name="Ann", recipient_email="ann@example.com",
            start=datetime(2030, 3, 15, 14, 0, tzinfo=timezone.utc),
            end=datetime(2030, 3, 15, 14, 30, tzinfo=timezone.utc),
            event_id="evt_1",
        )
        return mt, booking

    def test_recipient_confirmation_uses_local_time(self):
        subject, body = recipient_confirmation(*self._fixtures())
        assert subject == "Confirmed: Intro call"
        assert "Hi Ann" in body
        # 14:00 UTC is 10:00 EDT
        assert "10:00 AM" in body
        assert "America/New_York" in body

    def test_owner_notification(self):
        subject, body = owner_notification(*self._fixtures())
        assert "Ann" in subject
        assert "ann@example.com" in body
        assert "evt_1" in body


def broken_session_factory():
    session = MagicMock()
    error = OperationalError("SELECT 1", {}, Exception("database is locked"))
    session.execute.side_effect = error
    session.commit.side_effect = error
    return session


class TestDatabaseFailures:
    async def test_queue_write_failure_is_upstream_failure(self):
        notifier = EmailOutboxNotifier(broken_session_factory)
        with pytest.raises(UpstreamFailure):
            await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")

    async def test_list_recent_failure(self):
        notifier = EmailOutboxNotifier(broken_session_factory)
        with pytest.raises(UpstreamFailure):
            await notifier.list_recent()

    async def test_flush_failure(self):
        notifier = EmailOutboxNotifier(broken_session_factory, postmark_token="tok")
        with pytest.raises(UpstreamFailure):
            await notifier.flush(1)

    async def test_flush_row_deleted_while_sending(self, session_factory):
        def handler(request: httpx.Request) -> httpx.Response:
            db = session_factory()
            db.execute(delete(EmailOutboxRow))
            db.commit()
            db.close()
            return httpx.Response(200, json={"MessageID": "msg-gone"})

        notifier = EmailOutboxNotifier(
            session_factory, postmark_token="tok", mail_mode="queue",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        queued = await notifier.send("ann@example.com", "noreply@setthetime.com", "Hi", "Body")

        assert await notifier.flush(queued["id"]) == "msg-gone"
        assert await notifier.list_recent() == []
