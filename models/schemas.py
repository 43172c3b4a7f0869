"""
Core data models for the campaign dispatch service.
These are the types shared across the queue, worker, limiter and capacity code.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_MESSAGE_STATUSES = (MessageStatus.SENT, MessageStatus.FAILED)


class RegistrationStatus(str, Enum):
    PENDING = "pending"          # queued for service
    SCHEDULED = "scheduled"
    DONE = "done"
    CANCELLED = "cancelled"
    WAITLIST = "waitlist"


# Statuses that consume a campaign slot.
OCCUPYING_STATUSES = (RegistrationStatus.PENDING, RegistrationStatus.SCHEDULED)


# ──────────────────────────────────────────────────────────────
#  Outbound message
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """A unit of outbound communication held in the queue."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    channel: ChannelType = ChannelType.WHATSAPP
    recipient_address: str
    subject: Optional[str] = None
    body: str
    priority: int = 0                         # higher is sent first
    status: MessageStatus = MessageStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    dedupe_key: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    next_attempt_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None

    model_config = {"from_attributes": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MESSAGE_STATUSES


class SendResult(BaseModel):
    """Outcome of one gateway call. Gateways never raise past this."""
    ok: bool
    error: Optional[str] = None
    provider_message_id: str = ""


class DispatchResult(BaseModel):
    """Counts returned by one worker invocation."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    removed: int = 0


# ──────────────────────────────────────────────────────────────
#  Rate limiting
# ──────────────────────────────────────────────────────────────

class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    count: int
    reset_at: datetime
    retry_after_seconds: int = 0              # 0 when allowed


# ──────────────────────────────────────────────────────────────
#  Capacity
# ──────────────────────────────────────────────────────────────

class SlotCount(BaseModel):
    """Derived capacity bucket for one campaign city. Never stored."""
    city_key: str
    city_name: str
    limit: int
    occupied: int
    available: int
    waitlisted: int
    sold_out: bool


class AdmissionDecision(BaseModel):
    admit: bool
    managed: bool                             # False → city outside the campaign
    city_key: Optional[str] = None
    slots: Optional[SlotCount] = None
    status: RegistrationStatus = RegistrationStatus.PENDING


class RegistrationOutcome(BaseModel):
    registration_id: str
    owner_id: str
    status: RegistrationStatus
    managed: bool
    city_key: Optional[str] = None
    slots: Optional[SlotCount] = None
    notification_id: Optional[str] = None
