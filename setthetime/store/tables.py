"""
SQLAlchemy models for meeting types, bookings, OAuth tokens and the email outbox
"""
from sqlalchemy import (
    DDL,
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.sql import func

from setthetime.db import Base


class MeetingTypeRow(Base):
    __tablename__ = "meeting_types"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    owner_email = Column(String(320), nullable=True)
    title = Column(String(255), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BookingRow(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    meeting_type_id = Column(Integer, ForeignKey("meeting_types.id"), nullable=False)
    # Denormalised so overlap checks don't need a join
    owner_id = Column(String(255), nullable=False)
    recipient_name = Column(String(255), nullable=False)
    recipient_email = Column(String(320), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default="confirmed")
    event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_bookings_owner_status_start", "owner_id", "status", "start_time"),
    )


# Postgres backstop against double booking across processes: no two
# confirmed bookings of one owner may share any instant.
event.listen(
    BookingRow.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    BookingRow.__table__,
    "after_create",
    DDL(
        "ALTER TABLE bookings ADD CONSTRAINT bookings_no_overlap "
        "EXCLUDE USING gist (owner_id WITH =, "
        "tstzrange(start_time, end_time, '[)') WITH &&) "
        "WHERE (status = 'confirmed')"
    ).execute_if(dialect="postgresql"),
)


class OAuthTokenRow(Base):
    __tablename__ = "oauth_tokens"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False)
    provider = Column(String(32), nullable=False, default="google")

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expiry = Column(DateTime(timezone=True), nullable=False)
    scope = Column(Text, nullable=True)
    calendar_id = Column(String(500), nullable=False, default="primary")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("owner_id", "provider", name="uq_oauth_owner_provider"),)


class EmailOutboxRow(Base):
    __tablename__ = "email_outbox"

    id = Column(Integer, primary_key=True, index=True)
    to_email = Column(String(320), nullable=False)
    from_email = Column(String(320), nullable=False)
    subject = Column(String(500), nullable=False)
    text_body = Column(Text, nullable=True)
    html_body = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="queued")  # queued | sent

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)
