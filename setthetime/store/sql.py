"""SQLAlchemy-backed BookingStore.

Sessions are synchronous; every public coroutine runs its work in the
default thread pool so the event loop is never blocked on the database.
All timestamps are written in UTC.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from setthetime.calendar_providers.base import OwnerCredential
from setthetime.errors import BookingError, LocalConflict, UpstreamFailure

from .base import (
    CANCELLED,
    CONFIRMED,
    Booking,
    BookingStore,
    MeetingType,
    TokenBundle,
)
from .tables import BookingRow, MeetingTypeRow, OAuthTokenRow

logger = logging.getLogger(__name__)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _meeting_type(row: MeetingTypeRow) -> MeetingType:
    return MeetingType(
        id=row.id,
        owner_id=row.owner_id,
        title=row.title,
        duration_minutes=row.duration_minutes,
        timezone=row.timezone,
        owner_email=row.owner_email or "",
    )


def _booking(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        meeting_type_id=row.meeting_type_id,
        owner_id=row.owner_id,
        recipient_name=row.recipient_name,
        recipient_email=row.recipient_email,
        start=_aware(row.start_time),
        end=_aware(row.end_time),
        status=row.status,
        event_id=row.event_id or "",
        created_at=_aware(row.created_at),
    )


def _overlapping(db: Session, owner_id: str, start: datetime, end: datetime):
    stmt = (
        select(BookingRow)
        .where(
            BookingRow.owner_id == owner_id,
            BookingRow.status == CONFIRMED,
            BookingRow.start_time < _utc(end),
            BookingRow.end_time > _utc(start),
        )
        .order_by(BookingRow.start_time)
    )
    return db.execute(stmt).scalars().all()


class SqlBookingStore(BookingStore):
    """BookingStore over a SQLAlchemy ``sessionmaker``."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def _run(self, func, *args, **kwargs) -> Any:
        """Run ``func(db, *args)`` in a fresh session on the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(self._in_session, func, *args, **kwargs)
        )

    def _in_session(self, func, *args, **kwargs) -> Any:
        db = self._session_factory()
        try:
            return func(db, *args, **kwargs)
        except BookingError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Database error in %s", func.__name__)
            raise UpstreamFailure(f"Database error: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    # ── Meeting types ─────────────────────────────────────────────

    async def get_meeting_type(self, meeting_type_id: int) -> Optional[MeetingType]:
        def _get(db: Session):
            row = db.get(MeetingTypeRow, meeting_type_id)
            return _meeting_type(row) if row else None

        return await self._run(_get)

    async def create_meeting_type(
        self,
        owner_id: str,
        title: str,
        duration_minutes: int,
        timezone: str,
        owner_email: str = "",
    ) -> MeetingType:
        def _create(db: Session):
            row = MeetingTypeRow(
                owner_id=owner_id,
                title=title,
                duration_minutes=duration_minutes,
                timezone=timezone,
                owner_email=owner_email,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info("Created meeting type %s for owner %s", row.id, owner_id)
            return _meeting_type(row)

        return await self._run(_create)

    async def list_meeting_types(self, owner_id: str) -> list[MeetingType]:
        def _list(db: Session):
            stmt = (
                select(MeetingTypeRow)
                .where(MeetingTypeRow.owner_id == owner_id)
                .order_by(MeetingTypeRow.id)
            )
            return [_meeting_type(r) for r in db.execute(stmt).scalars().all()]

        return await self._run(_list)

    # ── Bookings ──────────────────────────────────────────────────

    async def get_booking(self, booking_id: int) -> Optional[Booking]:
        def _get(db: Session):
            row = db.get(BookingRow, booking_id)
            return _booking(row) if row else None

        return await self._run(_get)

    async def find_confirmed_overlapping(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[Booking]:
        def _find(db: Session):
            return [_booking(r) for r in _overlapping(db, owner_id, start, end)]

        return await self._run(_find)

    async def insert_confirmed_booking(
        self,
        meeting_type: MeetingType,
        recipient_name: str,
        recipient_email: str,
        start: datetime,
        end: datetime,
        event_id: str,
    ) -> Booking:
        def _insert(db: Session):
            # Serialise writers for this owner where the dialect can lock rows
            db.execute(
                select(MeetingTypeRow.id)
                .where(MeetingTypeRow.owner_id == meeting_type.owner_id)
                .with_for_update()
            ).all()

            clash = _overlapping(db, meeting_type.owner_id, start, end)
            if clash:
                raise LocalConflict(
                    f"Slot overlaps existing booking {clash[0].id}"
                )

            row = BookingRow(
                meeting_type_id=meeting_type.id,
                owner_id=meeting_type.owner_id,
                recipient_name=recipient_name,
                recipient_email=recipient_email,
                start_time=_utc(start),
                end_time=_utc(end),
                status=CONFIRMED,
                event_id=event_id,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                if "bookings_no_overlap" in str(exc.orig):
                    raise LocalConflict("Slot was booked concurrently") from exc
                raise
            db.refresh(row)
            logger.info(
                "Booking %s confirmed for owner %s at %s",
                row.id,
                meeting_type.owner_id,
                start.isoformat(),
            )
            return _booking(row)

        return await self._run(_insert)

    async def cancel_booking(self, booking_id: int) -> Optional[Booking]:
        def _cancel(db: Session):
            row = db.get(BookingRow, booking_id)
            if row is None:
                return None
            row.status = CANCELLED
            db.commit()
            db.refresh(row)
            logger.info("Booking %s cancelled", booking_id)
            return _booking(row)

        return await self._run(_cancel)

    # ── OAuth ─────────────────────────────────────────────────────

    async def save_oauth_tokens(
        self, owner_id: str, provider: str, tokens: TokenBundle
    ) -> None:
        def _save(db: Session):
            row = self._token_row(db, owner_id, provider)
            if row is None:
                row = OAuthTokenRow(owner_id=owner_id, provider=provider)
                db.add(row)
            row.access_token = tokens.access_token
            if tokens.refresh_token:
                row.refresh_token = tokens.refresh_token
            row.expiry = _utc(tokens.expiry)
            row.scope = tokens.scope
            row.updated_at = datetime.now(timezone.utc)
            db.commit()
            logger.info("Stored %s tokens for owner %s", provider, owner_id)

        await self._run(_save)

    def _token_row(self, db: Session, owner_id: str, provider: str):
        return db.execute(
            select(OAuthTokenRow).where(
                OAuthTokenRow.owner_id == owner_id,
                OAuthTokenRow.provider == provider,
            )
        ).scalar_one_or_none()

    async def get_oauth_status(self, owner_id: str, provider: str) -> Optional[dict]:
        def _status(db: Session):
            row = self._token_row(db, owner_id, provider)
            if row is None:
                return None
            return {"expiry": _aware(row.expiry), "updated_at": _aware(row.updated_at)}

        return await self._run(_status)

    async def get_credential(
        self, owner_id: str, provider: str = "google"
    ) -> Optional[OwnerCredential]:
        def _credential(db: Session):
            row = self._token_row(db, owner_id, provider)
            if row is None:
                return None
            return OwnerCredential(
                owner_id=owner_id,
                calendar_id=row.calendar_id or "primary",
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expiry=_aware(row.expiry),
                scope=row.scope or "",
            )

        return await self._run(_credential)
