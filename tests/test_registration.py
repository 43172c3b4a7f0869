"""Tests for RegistrationService: admission, waitlist and notifications."""
import asyncio

import pytest
from sqlalchemy import func, select

from campaign.capacity import CapacityTracker
from campaign.cities import CityCatalog
from campaign.messages import status_message
from campaign.registration import RegistrationService, advisory_lock_id
from core.errors import ValidationError
from database.models import RegistrationRow
from database.queue_store import SqlQueueStore
from models.schemas import MessageStatus, RegistrationStatus

from tests.conftest import add_owner, add_registrations


@pytest.fixture
def queue(db, settings, clock):
    return SqlQueueStore(db, settings.dispatch, clock=clock)


@pytest.fixture
def service(db, settings, queue):
    capacity = CapacityTracker(db, CityCatalog.from_config(settings.campaign))
    return RegistrationService(db, capacity, queue, settings.campaign)


async def _count(db, status: str) -> int:
    async with db.session() as s:
        return (await s.execute(
            select(func.count()).select_from(RegistrationRow).where(RegistrationRow.status == status)
        )).scalar_one()


class TestRegister:
    @pytest.mark.asyncio
    async def test_admitted_registration_is_pending_and_notified(self, db, service, queue):
        owner_id = await add_owner(db, "Maria", "Barbacena/MG", phone="(32) 99999-0001")
        outcome = await service.register(owner_id, "Rex")

        assert outcome.status == RegistrationStatus.PENDING
        assert outcome.managed is True
        assert outcome.city_key == "barbacena"
        assert outcome.notification_id is not None

        message = await queue.get(outcome.notification_id)
        assert message.status == MessageStatus.QUEUED
        assert message.recipient_address == "(32) 99999-0001"
        assert "Rex" in message.body
        assert "Maria" in message.body

    @pytest.mark.asyncio
    async def test_full_city_goes_to_waitlist(self, db, service, queue):
        await add_registrations(db, "Caranaiba/MG", 3)
        owner_id = await add_owner(db, "João", "Caranaíba", phone="32999990002")

        outcome = await service.register(owner_id, "Mimi")

        assert outcome.status == RegistrationStatus.WAITLIST
        assert outcome.slots.sold_out is True
        message = await queue.get(outcome.notification_id)
        assert "lista de espera" in message.body
        assert await _count(db, "waitlist") == 1

    @pytest.mark.asyncio
    async def test_unmanaged_city_registers_without_gating(self, db, service):
        owner_id = await add_owner(db, "Ana", "Curitiba/PR", phone="41999990003")
        outcome = await service.register(owner_id, "Bolt")
        assert outcome.status == RegistrationStatus.PENDING
        assert outcome.managed is False
        assert outcome.city_key is None

    @pytest.mark.asyncio
    async def test_owner_without_phone_is_not_notified(self, db, service):
        owner_id = await add_owner(db, "Sem Telefone", "Barbacena")
        outcome = await service.register(owner_id, "Toby")
        assert outcome.notification_id is None

    @pytest.mark.asyncio
    async def test_unknown_owner(self, service):
        with pytest.raises(ValidationError):
            await service.register("missing", "Rex")

    @pytest.mark.asyncio
    async def test_blank_pet_name(self, db, service):
        owner_id = await add_owner(db, "Maria", "Barbacena")
        with pytest.raises(ValidationError):
            await service.register(owner_id, "   ")


class TestStrictAdmission:
    @pytest.mark.asyncio
    async def test_concurrent_registrations_never_overbook(self, db, settings, service):
        settings.campaign.strict_admission = True
        owners = [await add_owner(db, f"Owner {i}", "Carandaí/MG") for i in range(5)]

        outcomes = await asyncio.gather(*[service.register(o, f"Pet {i}")
                                          for i, o in enumerate(owners)])

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["pending", "pending", "waitlist", "waitlist", "waitlist"]
        assert await _count(db, "pending") == 2

    def test_advisory_lock_id_is_stable_and_distinct(self):
        assert advisory_lock_id("barbacena") == advisory_lock_id("barbacena")
        assert advisory_lock_id("barbacena") != advisory_lock_id("carandai")
        assert -(2 ** 63) <= advisory_lock_id("barbacena") < 2 ** 63


class TestChangeStatus:
    @pytest.mark.asyncio
    async def test_status_change_enqueues_message(self, db, service, queue):
        owner_id = await add_owner(db, "Maria", "Barbacena", phone="32999990009")
        outcome = await service.register(owner_id, "Rex")

        changed = await service.change_status(outcome.registration_id, RegistrationStatus.SCHEDULED)

        assert changed.status == RegistrationStatus.SCHEDULED
        assert changed.notification_id not in (None, outcome.notification_id)
        message = await queue.get(changed.notification_id)
        assert "agendado" in message.body
        assert await _count(db, "scheduled") == 1

    @pytest.mark.asyncio
    async def test_same_status_does_not_notify(self, db, service):
        owner_id = await add_owner(db, "Maria", "Barbacena", phone="32999990009")
        outcome = await service.register(owner_id, "Rex")
        changed = await service.change_status(outcome.registration_id, RegistrationStatus.PENDING)
        assert changed.notification_id is None

    @pytest.mark.asyncio
    async def test_repeated_status_while_pending_is_not_resent(self, db, service, queue):
        owner_id = await add_owner(db, "Maria", "Barbacena", phone="32999990009")
        outcome = await service.register(owner_id, "Rex")

        first = await service.change_status(outcome.registration_id, RegistrationStatus.SCHEDULED)
        await service.change_status(outcome.registration_id, RegistrationStatus.PENDING)
        again = await service.change_status(outcome.registration_id, RegistrationStatus.SCHEDULED)

        assert again.notification_id == first.notification_id
        assert (await queue.stats())["queued"] == 2

    @pytest.mark.asyncio
    async def test_unknown_registration(self, service):
        with pytest.raises(ValidationError):
            await service.change_status("missing", RegistrationStatus.DONE)


class TestMessages:
    @pytest.mark.parametrize("status", list(RegistrationStatus))
    def test_every_status_has_text(self, status):
        text = status_message(status, "Maria", "Rex", campaign="Castra+MG")
        assert text.startswith("*Castra+MG*")
        assert "Maria" in text
        assert "Rex" in text
