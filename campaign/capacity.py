"""
Capacity Tracker — Per-city slot accounting, derived on every read.

For a campaign city:
  occupied   = registrations in an occupying status (pending, scheduled)
               whose owner's free-text city contains one of the city's
               spellings (case-insensitive substring)
  waitlisted = registrations in `waitlist`, matched the same way
  available  = max(0, limit − occupied)
  sold_out   ⇔ available == 0

Counts are advisory: nothing here locks against concurrent inserts.
RegistrationService adds the per-city lock when strict admission is on.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign.cities import CampaignCity, CityCatalog
from core.errors import ValidationError
from database.models import OwnerRow, RegistrationRow
from database.session import Database
from models.schemas import (
    AdmissionDecision, OCCUPYING_STATUSES, RegistrationStatus, SlotCount,
)

logger = structlog.get_logger()

_OCCUPYING = [s.value for s in OCCUPYING_STATUSES]


def build_slot_count(city: CampaignCity, occupied: int, waitlisted: int) -> SlotCount:
    available = max(0, city.limit - occupied)
    return SlotCount(
        city_key=city.key,
        city_name=city.name,
        limit=city.limit,
        occupied=occupied,
        available=available,
        waitlisted=waitlisted,
        sold_out=available == 0,
    )


class CapacityTracker:

    def __init__(self, db: Database, catalog: CityCatalog):
        self.db = db
        self.catalog = catalog

    def _city(self, city_key: str) -> CampaignCity:
        city = self.catalog.get(city_key)
        if city is None:
            raise ValidationError(f"unknown campaign city: {city_key}")
        return city

    async def _count(self, session: AsyncSession, city: CampaignCity) -> SlotCount:
        in_city = or_(*[OwnerRow.city.icontains(v, autoescape=True) for v in city.variants])
        occupied = func.coalesce(func.sum(
            case((RegistrationRow.status.in_(_OCCUPYING), 1), else_=0)), 0)
        waitlisted = func.coalesce(func.sum(
            case((RegistrationRow.status == RegistrationStatus.WAITLIST.value, 1), else_=0)), 0)

        stmt = (
            select(occupied, waitlisted)
            .select_from(RegistrationRow)
            .join(OwnerRow, RegistrationRow.owner_id == OwnerRow.id)
            .where(in_city)
        )
        occ, wait = (await session.execute(stmt)).one()
        return build_slot_count(city, int(occ or 0), int(wait or 0))

    async def count_slots(self, city_key: str,
                          session: Optional[AsyncSession] = None) -> SlotCount:
        city = self._city(city_key)
        if session is not None:
            return await self._count(session, city)
        async with self.db.session() as s:
            return await self._count(s, city)

    async def count_all(self) -> list[SlotCount]:
        async with self.db.session() as s:
            return [await self._count(s, city) for city in self.catalog.all()]

    async def check_admission(self, city_text: str,
                              session: Optional[AsyncSession] = None) -> AdmissionDecision:
        """
        Admit or route to the waitlist.

        Cities outside the campaign are admitted unconditionally with
        managed=False.
        """
        city_key = self.catalog.resolve(city_text)
        if city_key is None:
            return AdmissionDecision(admit=True, managed=False)

        slots = await self.count_slots(city_key, session=session)
        if slots.sold_out:
            logger.info("admission_waitlisted", city=city_key,
                        occupied=slots.occupied, limit=slots.limit)
            return AdmissionDecision(admit=False, managed=True, city_key=city_key,
                                     slots=slots, status=RegistrationStatus.WAITLIST)
        return AdmissionDecision(admit=True, managed=True, city_key=city_key,
                                 slots=slots, status=RegistrationStatus.PENDING)
