"""
Message Queue — Durable outbound notification queue.

Lifecycle of a Message:

    queued ──claim──▶ sending ──mark_sent──▶ sent
      ▲                  │
      │   mark_failed    │  attempts < max_attempts (next_attempt_at = now + backoff)
      └──────────────────┤
                         └─ attempts ≥ max_attempts ──▶ failed (terminal)

  - A `sending` row whose claim is older than `stale_sending_minutes` belongs
    to a crashed worker: the next claim re-queues it, counting the lost
    attempt, so it is never stuck.
  - purge_older_than() deletes sent/failed rows past retention; queued and
    sending rows are never purged.

Backends:
  - SqlQueueStore       (database/queue_store.py) — row-level claim via
                        UPDATE … WHERE id = (SELECT … FOR UPDATE SKIP LOCKED)
  - InMemoryQueueStore  (below) — single process, asyncio.Lock
"""
from __future__ import annotations

import asyncio
import hashlib
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config.settings import DispatchConfig
from core.errors import ValidationError
from models.schemas import ChannelType, Message, MessageStatus

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempts: int, base_seconds: int, cap_seconds: int) -> timedelta:
    """Exponential backoff after the n-th failure: base, 2·base, 4·base, … capped."""
    exponent = max(0, attempts - 1)
    seconds = min(base_seconds * (2 ** exponent), cap_seconds)
    return timedelta(seconds=seconds)


def make_dedupe_key(channel: str, recipient_address: str, body: str,
                    topic: Optional[str] = None) -> str:
    """
    Identity of a message for duplicate suppression.

    With a topic (e.g. "registration:<id>:waitlist") the body is ignored, so
    texts with varying greetings still collapse to one pending message.
    """
    identity = f"topic:{topic}" if topic else body
    digest = hashlib.sha256(f"{channel}:{recipient_address}:{identity}".encode("utf-8"))
    return digest.hexdigest()[:40]


def validate_enqueue(recipient_address: str, body: str) -> tuple[str, str]:
    recipient = (recipient_address or "").strip()
    if not recipient:
        raise ValidationError("recipient_address is required")
    if not body or not body.strip():
        raise ValidationError("body is required")
    return recipient, body


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    def __init__(self, config: DispatchConfig, clock: Clock = _utcnow):
        self.config = config
        self._clock = clock

    @abstractmethod
    async def enqueue(
        self,
        recipient_address: str,
        body: str,
        *,
        channel: ChannelType = ChannelType.WHATSAPP,
        subject: Optional[str] = None,
        priority: int = 0,
        dedupe_topic: Optional[str] = None,
    ) -> Message:
        """Insert a queued message (or return a pending duplicate)."""
        ...

    @abstractmethod
    async def claim_next(self) -> Optional[Message]:
        """Atomically move one ready message to `sending` and return it."""
        ...

    @abstractmethod
    async def mark_sent(self, message_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, message_id: str, error: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def purge_older_than(self, retention: timedelta) -> int:
        ...

    @abstractmethod
    async def get(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Message count per status."""
        ...

    def _backoff(self, attempts: int) -> timedelta:
        return backoff_delay(
            attempts,
            self.config.backoff_base_seconds,
            self.config.backoff_cap_seconds,
        )

    def _stale_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.config.stale_sending_minutes)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueStore(BaseQueueStore):
    """
    Development/test queue backed by a dict.
    Single-process only; every mutation happens under one asyncio.Lock.
    """

    def __init__(self, config: DispatchConfig, clock: Clock = _utcnow):
        super().__init__(config, clock)
        self._messages: dict[str, Message] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        recipient_address: str,
        body: str,
        *,
        channel: ChannelType = ChannelType.WHATSAPP,
        subject: Optional[str] = None,
        priority: int = 0,
        dedupe_topic: Optional[str] = None,
    ) -> Message:
        recipient, body = validate_enqueue(recipient_address, body)
        key = make_dedupe_key(channel.value, recipient, body, topic=dedupe_topic)
        async with self._lock:
            now = self._clock()
            window = timedelta(seconds=self.config.dedupe_window_seconds)
            if self.config.dedupe_window_seconds > 0:
                for existing in self._messages.values():
                    if (existing.dedupe_key == key
                            and existing.status in (MessageStatus.QUEUED, MessageStatus.SENDING)
                            and existing.created_at > now - window):
                        logger.info("message_enqueue_deduplicated", message_id=existing.id)
                        return existing.model_copy()

            message = Message(
                channel=channel,
                recipient_address=recipient,
                subject=subject,
                body=body,
                priority=priority,
                max_attempts=self.config.max_attempts,
                dedupe_key=key,
                created_at=now,
                next_attempt_at=now,
            )
            self._messages[message.id] = message
        logger.info("message_enqueued", message_id=message.id, channel=channel.value)
        return message.model_copy()

    async def claim_next(self) -> Optional[Message]:
        async with self._lock:
            now = self._clock()
            self._requeue_stale(now)
            ready = [
                m for m in self._messages.values()
                if m.status == MessageStatus.QUEUED and m.next_attempt_at <= now
            ]
            if not ready:
                return None
            ready.sort(key=lambda m: (-m.priority, m.created_at))
            message = ready[0]
            message.status = MessageStatus.SENDING
            message.claimed_at = now
            return message.model_copy()

    def _requeue_stale(self, now: datetime) -> None:
        cutoff = self._stale_cutoff(now)
        for m in self._messages.values():
            if m.status == MessageStatus.SENDING and m.claimed_at and m.claimed_at < cutoff:
                m.attempts += 1
                m.status = (MessageStatus.FAILED if m.attempts >= m.max_attempts
                            else MessageStatus.QUEUED)
                m.next_attempt_at = now
                m.claimed_at = None
                m.last_error = "claim expired while sending"
                logger.warning("stale_message_requeued", message_id=m.id, status=m.status.value)

    async def mark_sent(self, message_id: str) -> bool:
        async with self._lock:
            m = self._messages.get(message_id)
            if not m or m.status != MessageStatus.SENDING:
                logger.warning("mark_sent_ignored", message_id=message_id)
                return False
            m.status = MessageStatus.SENT
            m.sent_at = self._clock()
            m.last_error = None
            return True

    async def mark_failed(self, message_id: str, error: str) -> Optional[Message]:
        async with self._lock:
            m = self._messages.get(message_id)
            if not m or m.status != MessageStatus.SENDING:
                logger.warning("mark_failed_ignored", message_id=message_id)
                return m.model_copy() if m else None
            now = self._clock()
            m.attempts += 1
            m.last_error = error
            m.claimed_at = None
            if m.attempts >= m.max_attempts:
                m.status = MessageStatus.FAILED
            else:
                m.status = MessageStatus.QUEUED
                m.next_attempt_at = now + self._backoff(m.attempts)
            return m.model_copy()

    async def purge_older_than(self, retention: timedelta) -> int:
        async with self._lock:
            cutoff = self._clock() - retention
            doomed = [
                mid for mid, m in self._messages.items()
                if m.status in (MessageStatus.SENT, MessageStatus.FAILED) and m.created_at < cutoff
            ]
            for mid in doomed:
                del self._messages[mid]
            return len(doomed)

    async def get(self, message_id: str) -> Optional[Message]:
        m = self._messages.get(message_id)
        return m.model_copy() if m else None

    async def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in MessageStatus}
        for m in self._messages.values():
            counts[m.status.value] += 1
        return counts


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_store(backend: str, config: DispatchConfig, db=None,
                       clock: Clock = _utcnow) -> BaseQueueStore:
    """Factory: create the appropriate queue backend."""
    if backend == "sql":
        if db is None:
            raise ValueError("the sql queue backend needs a Database handle")
        from database.queue_store import SqlQueueStore
        store = SqlQueueStore(db, config, clock=clock)
    elif backend == "memory":
        store = InMemoryQueueStore(config, clock=clock)
    else:
        raise ValueError(f"Unknown queue backend: {backend!r}")
    logger.info("queue_store_created", backend=backend)
    return store
