"""
Registration flow — admission, insert, notification.

register():
  1. load the owner and resolve their city
  2. [strict admission] take the per-city lock
       PostgreSQL: pg_advisory_xact_lock(city) inside the transaction
       elsewhere:  an in-process asyncio.Lock per city
  3. count slots and insert the registration as `pending` or `waitlist`
     in the same transaction
  4. enqueue the WhatsApp notification for the owner

Without strict admission steps 2–3 are best effort: two concurrent
registrations can both see the last free slot.
"""
from __future__ import annotations

import asyncio
import hashlib
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import func, select

from campaign.capacity import CapacityTracker
from campaign.messages import status_message
from config.settings import CampaignConfig
from core.errors import ValidationError
from database.models import OwnerRow, RegistrationRow
from database.session import Database
from job_queue.message_queue import BaseQueueStore
from models.schemas import (
    AdmissionDecision, ChannelType, RegistrationOutcome, RegistrationStatus,
)

logger = structlog.get_logger()


def advisory_lock_id(city_key: str) -> int:
    """Stable signed 64-bit id for pg_advisory_xact_lock."""
    digest = hashlib.sha256(f"campaign-city:{city_key}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class RegistrationService:

    def __init__(
        self,
        db: Database,
        capacity: CapacityTracker,
        queue: BaseQueueStore,
        config: CampaignConfig,
    ):
        self.db = db
        self.capacity = capacity
        self.queue = queue
        self.config = config
        self._city_locks: dict[str, asyncio.Lock] = {}

    @property
    def strict_admission(self) -> bool:
        return self.config.strict_admission

    @asynccontextmanager
    async def _local_city_lock(self, city_key: Optional[str]) -> AsyncIterator[None]:
        if not (self.strict_admission and city_key) or self.db.dialect == "postgresql":
            yield
            return
        lock = self._city_locks.setdefault(city_key, asyncio.Lock())
        async with lock:
            yield

    async def register(self, owner_id: str, pet_name: str) -> RegistrationOutcome:
        pet_name = (pet_name or "").strip()
        if not pet_name:
            raise ValidationError("pet_name is required")

        async with self.db.session() as s:
            owner = await s.get(OwnerRow, owner_id)
            if owner is None:
                raise ValidationError(f"unknown owner: {owner_id}")
            owner_name, owner_phone, owner_city = owner.name, owner.phone, owner.city

        city_key = self.capacity.catalog.resolve(owner_city)

        async with self._local_city_lock(city_key):
            async with self.db.session() as s:
                if self.strict_admission and city_key and self.db.dialect == "postgresql":
                    await s.execute(select(func.pg_advisory_xact_lock(advisory_lock_id(city_key))))

                decision: AdmissionDecision = await self.capacity.check_admission(
                    owner_city, session=s)
                row = RegistrationRow(
                    owner_id=owner_id,
                    pet_name=pet_name,
                    status=decision.status.value,
                )
                s.add(row)
                await s.flush()
                registration_id = row.id

        logger.info("registration_created",
                    registration_id=registration_id,
                    city=city_key,
                    managed=decision.managed,
                    status=decision.status.value,
                    strict=self.strict_admission)

        notification_id = await self._notify(registration_id, owner_phone, owner_name,
                                             pet_name, decision.status)
        return RegistrationOutcome(
            registration_id=registration_id,
            owner_id=owner_id,
            status=decision.status,
            managed=decision.managed,
            city_key=decision.city_key,
            slots=decision.slots,
            notification_id=notification_id,
        )

    async def change_status(self, registration_id: str,
                            status: RegistrationStatus) -> RegistrationOutcome:
        async with self.db.session() as s:
            row = await s.get(RegistrationRow, registration_id)
            if row is None:
                raise ValidationError(f"unknown registration: {registration_id}")
            owner = await s.get(OwnerRow, row.owner_id)
            previous = row.status
            row.status = status.value
            pet_name, owner_id = row.pet_name, row.owner_id
            owner_name, owner_phone, owner_city = owner.name, owner.phone, owner.city

        logger.info("registration_status_changed",
                    registration_id=registration_id,
                    previous=previous, status=status.value)

        notification_id = None
        if previous != status.value:
            notification_id = await self._notify(registration_id, owner_phone, owner_name,
                                                 pet_name, status)
        city_key = self.capacity.catalog.resolve(owner_city)
        return RegistrationOutcome(
            registration_id=registration_id,
            owner_id=owner_id,
            status=status,
            managed=city_key is not None,
            city_key=city_key,
            notification_id=notification_id,
        )

    async def _notify(self, registration_id: str, phone: str, owner_name: str,
                      pet_name: str, status: RegistrationStatus) -> Optional[str]:
        if not phone:
            logger.info("registration_notification_skipped", reason="owner has no phone")
            return None
        text = status_message(status, owner_name, pet_name, campaign=self.config.name)
        message = await self.queue.enqueue(
            phone, text,
            channel=ChannelType.WHATSAPP,
            dedupe_topic=f"registration:{registration_id}:{status.value}",
        )
        return message.id
