"""
SqlQueueStore — Outbound message queue on PostgreSQL or SQLite.

Claim semantics:
  A claim is one statement:

      UPDATE outbound_messages SET status = 'sending', claimed_at = :now
      WHERE id = (SELECT id FROM outbound_messages
                  WHERE status = 'queued' AND next_attempt_at <= :now
                  ORDER BY priority DESC, created_at ASC
                  LIMIT 1 FOR UPDATE SKIP LOCKED)
        AND status = 'queued'
      RETURNING *

  On PostgreSQL concurrent claimers skip each other's locked rows; on SQLite
  the FOR UPDATE clause is dropped and the database-wide write lock
  serialises the statement. The outer status guard means a row can only go
  queued → sending once either way.

On SQLite every transaction opens with BEGIN IMMEDIATE (database/session.py),
so the dedupe read in enqueue() and its insert cannot interleave with
another writer.
"""
from __future__ import annotations

import structlog
from datetime import timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import aliased

from config.settings import DispatchConfig
from database.models import MessageRow, as_utc
from database.session import Database
from job_queue.message_queue import (
    BaseQueueStore, Clock, _utcnow, make_dedupe_key, validate_enqueue,
)
from models.schemas import ChannelType, Message, MessageStatus

logger = structlog.get_logger()

_COLUMNS = tuple(MessageRow.__table__.c)
_PENDING = (MessageStatus.QUEUED.value, MessageStatus.SENDING.value)
_TERMINAL = (MessageStatus.SENT.value, MessageStatus.FAILED.value)


def _to_message(row: Mapping[str, Any]) -> Message:
    data = dict(row)
    for field in ("created_at", "next_attempt_at", "claimed_at", "sent_at"):
        data[field] = as_utc(data.get(field))
    return Message.model_validate(data)


class SqlQueueStore(BaseQueueStore):
    """Durable queue store backed by the shared relational database."""

    def __init__(self, db: Database, config: DispatchConfig, clock: Clock = _utcnow):
        super().__init__(config, clock)
        self.db = db

    # ── Producers ──────────────────────────────────────────

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
        now = self._clock()

        async with self.db.session() as s:
            if self.config.dedupe_window_seconds > 0:
                window_start = now - timedelta(seconds=self.config.dedupe_window_seconds)
                stmt = (
                    select(*_COLUMNS)
                    .where(
                        MessageRow.dedupe_key == key,
                        MessageRow.status.in_(_PENDING),
                        MessageRow.created_at > window_start,
                    )
                    .limit(1)
                )
                existing = (await s.execute(stmt)).mappings().first()
                if existing is not None:
                    logger.info("message_enqueue_deduplicated", message_id=existing["id"])
                    return _to_message(existing)

            row = MessageRow(
                channel=channel.value,
                recipient_address=recipient,
                subject=subject,
                body=body,
                priority=priority,
                status=MessageStatus.QUEUED.value,
                attempts=0,
                max_attempts=self.config.max_attempts,
                dedupe_key=key,
                created_at=now,
                next_attempt_at=now,
            )
            s.add(row)
            await s.flush()
            message = _to_message(row.to_dict())

        logger.info("message_enqueued", message_id=message.id, channel=channel.value,
                    priority=priority)
        return message

    # ── Worker side ────────────────────────────────────────

    async def claim_next(self) -> Optional[Message]:
        await self._requeue_stale()

        now = self._clock()
        # aliased so the subquery is not correlated to the UPDATE target
        pick = aliased(MessageRow)
        candidate = (
            select(pick.id)
            .where(
                pick.status == MessageStatus.QUEUED.value,
                pick.next_attempt_at <= now,
            )
            .order_by(pick.priority.desc(), pick.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.id == candidate,
                MessageRow.status == MessageStatus.QUEUED.value,
            )
            .values(status=MessageStatus.SENDING.value, claimed_at=now)
            .returning(*_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as s:
            row = (await s.execute(stmt)).mappings().first()

        if row is None:
            return None
        message = _to_message(row)
        logger.debug("message_claimed", message_id=message.id, attempts=message.attempts)
        return message

    async def _requeue_stale(self) -> int:
        """Return abandoned `sending` rows to the queue, counting the lost attempt."""
        now = self._clock()
        next_attempts = MessageRow.attempts + 1
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.status == MessageStatus.SENDING.value,
                MessageRow.claimed_at < self._stale_cutoff(now),
            )
            .values(
                attempts=next_attempts,
                status=case(
                    (next_attempts >= MessageRow.max_attempts, MessageStatus.FAILED.value),
                    else_=MessageStatus.QUEUED.value,
                ),
                next_attempt_at=now,
                claimed_at=None,
                last_error="claim expired while sending",
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as s:
            result = await s.execute(stmt)
        if result.rowcount:
            logger.warning("stale_messages_requeued", count=result.rowcount)
        return result.rowcount or 0

    async def mark_sent(self, message_id: str) -> bool:
        now = self._clock()
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.id == message_id,
                MessageRow.status == MessageStatus.SENDING.value,
            )
            .values(status=MessageStatus.SENT.value, sent_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as s:
            result = await s.execute(stmt)
        if not result.rowcount:
            logger.warning("mark_sent_ignored", message_id=message_id)
            return False
        return True

    async def mark_failed(self, message_id: str, error: str) -> Optional[Message]:
        now = self._clock()
        bump = (
            update(MessageRow)
            .where(
                MessageRow.id == message_id,
                MessageRow.status == MessageStatus.SENDING.value,
            )
            .values(attempts=MessageRow.attempts + 1, last_error=error[:2000], claimed_at=None)
            .returning(MessageRow.attempts, MessageRow.max_attempts)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as s:
            counters = (await s.execute(bump)).first()
            if counters is None:
                logger.warning("mark_failed_ignored", message_id=message_id)
                return None

            attempts, max_attempts = counters
            if attempts >= max_attempts:
                values = {"status": MessageStatus.FAILED.value}
            else:
                values = {
                    "status": MessageStatus.QUEUED.value,
                    "next_attempt_at": now + self._backoff(attempts),
                }
            settle = (
                update(MessageRow)
                .where(MessageRow.id == message_id)
                .values(**values)
                .returning(*_COLUMNS)
                .execution_options(synchronize_session=False)
            )
            row = (await s.execute(settle)).mappings().first()

        return _to_message(row)

    # ── Housekeeping ───────────────────────────────────────

    async def purge_older_than(self, retention: timedelta) -> int:
        cutoff = self._clock() - retention
        stmt = (
            delete(MessageRow)
            .where(
                MessageRow.status.in_(_TERMINAL),
                MessageRow.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as s:
            result = await s.execute(stmt)
        removed = result.rowcount or 0
        if removed:
            logger.info("queue_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

    # ── Reads ──────────────────────────────────────────────

    async def get(self, message_id: str) -> Optional[Message]:
        async with self.db.session() as s:
            row = (await s.execute(
                select(*_COLUMNS).where(MessageRow.id == message_id)
            )).mappings().first()
        return _to_message(row) if row else None

    async def stats(self) -> dict[str, int]:
        stmt = select(MessageRow.status, func.count()).group_by(MessageRow.status)
        async with self.db.session() as s:
            rows = (await s.execute(stmt)).all()
        counts = {s.value: 0 for s in MessageStatus}
        for status, count in rows:
            counts[status] = count
        return counts
