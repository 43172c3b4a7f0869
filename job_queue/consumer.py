"""
Dispatch Worker — Drains the outbound queue with pacing.

Stateless: one call to run_once() is one externally-triggered tick
(cron endpoint). Overlapping ticks are safe because every message is
obtained through the store's atomic claim.

Flow of one tick:
  ┌───────────┐  claim  ┌───────────┐  send   ┌─────────────┐
  │ QueueStore│────────▶│  Worker   │────────▶│   Gateway   │
  └─────┬─────┘         └─────┬─────┘         └──────┬──────┘
        ▲   mark_sent /       │   sleep U(min,max)   │
        └── mark_failed ──────┘   between sends      │
                                                     ▼
  after the loop: purge_older_than(retention) exactly once

Per-message gateway failures are contained; a store failure aborts the
remaining batch and surfaces as InternalError.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from config.settings import DispatchConfig
from core.errors import InternalError, PermanentDeliveryError
from job_queue.message_queue import BaseQueueStore
from models.schemas import DispatchResult, Message, MessageStatus, SendResult

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class DispatchWorker:
    """
    Usage:
        worker = DispatchWorker(store, gateways, settings.dispatch)
        result = await worker.run_once()     # {processed, sent, failed, removed}
    """

    def __init__(
        self,
        store: BaseQueueStore,
        gateways,  # type: channels.gateway.GatewayRegistry
        config: DispatchConfig,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.gateways = gateways
        self.config = config
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def run_once(self) -> DispatchResult:
        result = DispatchResult()
        try:
            for _ in range(self.config.batch_ceiling):
                message = await self.store.claim_next()
                if message is None:
                    break

                if result.processed > 0:
                    await self._pace()
                result.processed += 1

                outcome = await self._deliver(message)
                if outcome.ok:
                    await self.store.mark_sent(message.id)
                    result.sent += 1
                    logger.info("message_sent", message_id=message.id,
                                channel=message.channel.value,
                                provider_message_id=outcome.provider_message_id)
                else:
                    await self._record_failure(message, outcome.error or "unknown error")
                    result.failed += 1

            result.removed = await self.store.purge_older_than(
                timedelta(days=self.config.retention_days)
            )
        except (SQLAlchemyError, OSError) as e:
            logger.error("dispatch_batch_aborted",
                         processed=result.processed,
                         error=str(e), exc_info=True)
            raise InternalError(f"queue store unavailable: {e}") from e

        logger.info("dispatch_batch_finished",
                    processed=result.processed, sent=result.sent,
                    failed=result.failed, removed=result.removed)
        return result

    async def _pace(self) -> None:
        """Randomised gap between sends so the gateway never sees a burst."""
        delay_ms = self._rng.uniform(self.config.min_delay_ms, self.config.max_delay_ms)
        await self._sleep(delay_ms / 1000.0)

    async def _deliver(self, message: Message) -> SendResult:
        timeout = self.config.gateway_timeout_seconds
        try:
            return await asyncio.wait_for(self.gateways.send(message), timeout=timeout)
        except asyncio.TimeoutError:
            return SendResult(ok=False, error=f"gateway timeout after {timeout}s")
        except Exception as e:
            # gateways should not raise; a buggy one still must not sink the batch
            logger.warning("gateway_raised", message_id=message.id, error=str(e))
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}")

    async def _record_failure(self, message: Message, error: str) -> None:
        updated = await self.store.mark_failed(message.id, error)
        if updated is not None and updated.status == MessageStatus.FAILED:
            exc = PermanentDeliveryError(
                f"delivery abandoned after {updated.attempts} attempts: {error}",
                message_id=message.id,
                attempts=updated.attempts,
            )
            logger.error("message_delivery_exhausted",
                         message_id=message.id,
                         attempts=updated.attempts,
                         error=str(exc))
            return
        logger.warning("message_send_failed",
                       message_id=message.id,
                       attempts=updated.attempts if updated else message.attempts + 1,
                       next_attempt_at=(updated.next_attempt_at.isoformat()
                                        if updated else None),
                       error=error)
