"""Shared test fixtures for the campaign dispatch service."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from config.settings import Settings, settings_from_dict
from database.models import OwnerRow, RegistrationRow
from database.session import Database
from models.schemas import Message, SendResult


class FakeClock:
    """Controllable UTC clock injected into stores and limiters."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateways:
    """Stands in for GatewayRegistry; records sends, fails selected recipients."""

    def __init__(self, fail_for: set = None, error: str = "HTTP 503"):
        self.fail_for = fail_for or set()
        self.error = error
        self.sent: list[Message] = []

    async def send(self, message: Message) -> SendResult:
        if message.recipient_address in self.fail_for:
            return SendResult(ok=False, error=self.error)
        self.sent.append(message)
        return SendResult(ok=True, provider_message_id=f"prov-{message.id[:8]}")

    async def close(self) -> None:
        pass


def make_raw_settings(db_path: str, **overrides: Any) -> dict:
    raw = {
        "environment": "test",
        "database": {"url": f"sqlite:///{db_path}", "create_tables": True},
        "dispatch": {
            "batch_ceiling": 10,
            "min_delay_ms": 0,
            "max_delay_ms": 0,
            "max_attempts": 3,
            "backoff_base_seconds": 30,
            "backoff_cap_seconds": 900,
            "retention_days": 7,
            "stale_sending_minutes": 10,
            "gateway_timeout_seconds": 5,
            "dedupe_window_seconds": 300,
        },
        "gateway": {"provider": "console"},
        "security": {"cron_secret": "cron-s3cret", "webhook_secret": "hook-s3cret"},
        "rate_limits": {"backend": "sql"},
        "campaign": {
            "name": "Castra+MG",
            "strict_admission": False,
            "cities": {
                "barbacena": {"name": "Barbacena", "state": "MG", "limit": 200,
                              "variants": ["Barbacena"]},
                "caranaiba": {"name": "Caranaíba", "state": "MG", "limit": 3,
                              "variants": ["Caranaíba", "Caranaiba"]},
                "carandai": {"name": "Carandaí", "state": "MG", "limit": 2,
                             "variants": ["Carandaí", "Carandai"]},
            },
        },
    }
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(raw.get(section), dict):
            raw[section] = {**raw[section], **values}
        else:
            raw[section] = values
    return raw


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return settings_from_dict(make_raw_settings(str(tmp_path / "campaign.db")))


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings.database)
    await database.connect()
    await database.create_all()
    yield database
    await database.close()


async def add_owner(db: Database, name: str, city: str, phone: str = "") -> str:
    async with db.session() as s:
        owner = OwnerRow(name=name, city=city, phone=phone)
        s.add(owner)
        await s.flush()
        return owner.id


async def add_registrations(db: Database, city: str, count: int, status: str = "pending") -> None:
    async with db.session() as s:
        for i in range(count):
            owner = OwnerRow(name=f"Owner {i}", city=city, phone="")
            s.add(owner)
            await s.flush()
            s.add(RegistrationRow(owner_id=owner.id, pet_name=f"Pet {i}", status=status))
