"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - String primary keys (uuid hex), no database-specific sequences.
  - Timestamps are timezone-aware; SQLite drops the offset on the way back,
    so readers normalise through `as_utc`.
  - Owner/registration rows are read by the capacity tracker and the webhook
    handler; message rows belong to the queue store alone.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Outbound message queue
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    channel: Mapped[str] = mapped_column(String(16), default="whatsapp")
    recipient_address: Mapped[str] = mapped_column(String(256), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(16), default="queued")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    dedupe_key: Mapped[str] = mapped_column(String(64), default="")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbound_messages_claim", "status", "next_attempt_at"),
        Index("ix_outbound_messages_dedupe", "dedupe_key", "status"),
        Index("ix_outbound_messages_created", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "channel": self.channel,
            "recipient_address": self.recipient_address,
            "subject": self.subject, "body": self.body,
            "priority": self.priority, "status": self.status,
            "attempts": self.attempts, "max_attempts": self.max_attempts,
            "dedupe_key": self.dedupe_key, "last_error": self.last_error,
            "created_at": as_utc(self.created_at),
            "next_attempt_at": as_utc(self.next_attempt_at),
            "claimed_at": as_utc(self.claimed_at),
            "sent_at": as_utc(self.sent_at),
        }


# ──────────────────────────────────────────────────────────────
#  Rate limit counters
# ──────────────────────────────────────────────────────────────

class RateLimitRow(Base):
    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ──────────────────────────────────────────────────────────────
#  Registrants
# ──────────────────────────────────────────────────────────────

class OwnerRow(Base):
    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    city: Mapped[str] = mapped_column(String(128), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    registrations: Mapped[list["RegistrationRow"]] = relationship(back_populates="owner")

    __table_args__ = (
        Index("ix_owners_phone", "phone"),
    )


class RegistrationRow(Base):
    __tablename__ = "registrations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), ForeignKey("owners.id"), nullable=False)
    pet_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    owner: Mapped["OwnerRow"] = relationship(back_populates="registrations")

    __table_args__ = (
        Index("ix_registrations_status", "status"),
        Index("ix_registrations_owner", "owner_id"),
    )
