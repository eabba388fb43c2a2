"""Email dispatch through a database outbox and the Postmark HTTP API.

In ``queue`` mode (the default while the Postmark account awaits
approval) every message lands in ``email_outbox`` with status
``queued``; an admin can flush rows one at a time later.  In ``send``
mode messages go straight to Postmark and the outbox keeps a ``sent``
record.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from setthetime.errors import InvalidInput, NotFound, UpstreamFailure
from setthetime.store.tables import EmailOutboxRow

from .base import Notifier

logger = logging.getLogger(__name__)

POSTMARK_URL = "https://api.postmarkapp.com/email"


class EmailOutboxNotifier(Notifier):
    """Notifier that queues to ``email_outbox`` or sends via Postmark."""

    def __init__(
        self,
        session_factory,
        postmark_token: str = "",
        mail_mode: str = "queue",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._session_factory = session_factory
        self._postmark_token = postmark_token
        self._mail_mode = mail_mode
        self._http_client = http_client

    @property
    def postmark_available(self) -> bool:
        return bool(self._postmark_token)

    @property
    def queueing(self) -> bool:
        return self._mail_mode == "queue" or not self.postmark_available

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, func, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._in_session, func, *args))

    def _in_session(self, func, *args) -> Any:
        db = self._session_factory()
        try:
            return func(db, *args)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Outbox database error in %s", func.__name__)
            raise UpstreamFailure(f"Database error: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    @staticmethod
    def _record(
        db: Session,
        to: str,
        from_: str,
        subject: str,
        text: Optional[str],
        html: Optional[str],
        payload: Optional[dict],
        status: str,
    ) -> int:
        row = EmailOutboxRow(
            to_email=to,
            from_email=from_,
            subject=subject,
            text_body=text or None,
            html_body=html or None,
            payload=payload,
            status=status,
            sent_at=datetime.now(timezone.utc) if status == "sent" else None,
        )
        db.add(row)
        db.commit()
        return row.id

    async def _send_via_postmark(
        self,
        to: str,
        from_: str,
        subject: str,
        text: Optional[str],
        html: Optional[str],
    ) -> str:
        if not self.postmark_available:
            raise UpstreamFailure("Postmark not available")

        body: dict[str, Any] = {
            "From": from_,
            "To": to,
            "Subject": subject,
            "MessageStream": "outbound",
        }
        if text:
            body["TextBody"] = text
        if html:
            body["HtmlBody"] = html
        headers = {
            "Accept": "application/json",
            "X-Postmark-Server-Token": self._postmark_token,
        }

        try:
            if self._http_client is not None:
                resp = await self._http_client.post(POSTMARK_URL, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=15) as client:
                    resp = await client.post(POSTMARK_URL, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamFailure(
                f"Postmark returned status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Postmark unreachable: {exc}") from exc

        message_id = resp.json().get("MessageID", "")
        logger.info("Postmark accepted message %s to %s", message_id, to)
        return message_id

    # ------------------------------------------------------------------
    # Notifier interface
    # ------------------------------------------------------------------

    async def send(
        self,
        to: str,
        from_: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> dict[str, Any]:
        if self.queueing:
            outbox_id = await self._run(
                self._record, to, from_, subject, text, html, payload, "queued"
            )
            logger.info("Queued email %s to %s (%s)", outbox_id, to, subject)
            return {"queued": True, "id": outbox_id}

        message_id = await self._send_via_postmark(to, from_, subject, text, html)
        await self._run(self._record, to, from_, subject, text, html, payload, "sent")
        return {"queued": False, "message_id": message_id}

    # ------------------------------------------------------------------
    # Outbox administration
    # ------------------------------------------------------------------

    async def list_recent(self, limit: int = 20) -> list[dict]:
        def _list(db: Session):
            rows = db.execute(
                select(EmailOutboxRow).order_by(EmailOutboxRow.id.desc()).limit(limit)
            ).scalars().all()
            return [
                {
                    "id": r.id,
                    "to_email": r.to_email,
                    "subject": r.subject,
                    "status": r.status,
                    "created_at": r.created_at,
                }
                for r in rows
            ]

        return await self._run(_list)

    async def flush(self, outbox_id: int) -> str:
        """Send one queued outbox row through Postmark and mark it sent."""

        def _load(db: Session):
            row = db.execute(
                select(EmailOutboxRow).where(
                    EmailOutboxRow.id == outbox_id,
                    EmailOutboxRow.status == "queued",
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return (row.to_email, row.from_email, row.subject, row.text_body, row.html_body)

        loaded = await self._run(_load)
        if loaded is None:
            raise NotFound("not found or not queued")
        if not self.postmark_available:
            raise InvalidInput("Postmark not available yet")

        to, from_, subject, text, html = loaded
        message_id = await self._send_via_postmark(to, from_, subject, text, html)

        def _mark_sent(db: Session) -> bool:
            row = db.get(EmailOutboxRow, outbox_id)
            if row is None:
                return False
            row.status = "sent"
            row.sent_at = datetime.now(timezone.utc)
            db.commit()
            return True

        if not await self._run(_mark_sent):
            logger.warning(
                "Outbox row %s vanished after Postmark accepted message %s",
                outbox_id,
                message_id,
            )
        logger.info("Flushed outbox row %s (message %s)", outbox_id, message_id)
        return message_id
