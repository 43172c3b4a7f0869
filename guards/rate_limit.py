"""
Rate Limiter — Fixed-window "key → attempts in window" counters.

Semantics for check(key, max_attempts, window_ms):
  - first request for a key creates the counter with count=1
  - if now − window_start ≥ window_ms the window rolls: window_start=now, count=1
  - otherwise count += 1
  - allowed ⇔ count ≤ max_attempts; remaining = max(0, max_attempts − count)

The read-modify-write is a single statement on the SQL backend:

    INSERT INTO rate_limits (key, count, window_start) VALUES (:key, 1, :now)
    ON CONFLICT (key) DO UPDATE SET
        count        = CASE WHEN rate_limits.window_start <= :cutoff THEN 1
                            ELSE rate_limits.count + 1 END,
        window_start = CASE WHEN rate_limits.window_start <= :cutoff THEN :now
                            ELSE rate_limits.window_start END
    RETURNING count, window_start

so concurrent callers for one key serialize on the row and never both
observe a stale count. Counters are never deleted; stale ones are simply
reset on their next use.
"""
from __future__ import annotations

import asyncio
import math
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from config.settings import RateLimitConfig
from core.errors import RateLimitedError
from database.models import RateLimitRow, as_utc
from database.session import Database
from models.schemas import RateLimitResult

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _result(count: int, window_start: datetime, max_attempts: int, window_ms: int,
            now: datetime) -> RateLimitResult:
    allowed = count <= max_attempts
    reset_at = window_start + timedelta(milliseconds=window_ms)
    retry_after = 0
    if not allowed:
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
    return RateLimitResult(
        allowed=allowed,
        remaining=max(0, max_attempts - count),
        count=count,
        reset_at=reset_at,
        retry_after_seconds=retry_after,
    )


class BaseRateLimiter(ABC):

    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    @abstractmethod
    async def check(self, key: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        """Count one attempt against `key` and report whether it is allowed."""
        ...


class SqlRateLimiter(BaseRateLimiter):
    """Durable counters shared by every process using the same database."""

    _INSERTS = {
        "postgresql": pg_insert,
        "sqlite": sqlite_insert,
    }

    def __init__(self, db: Database, clock: Clock = _utcnow):
        super().__init__(clock)
        self.db = db

    async def check(self, key: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        insert = self._INSERTS.get(self.db.dialect)
        if insert is None:
            raise NotImplementedError(f"rate limiting is not supported on {self.db.dialect}")

        now = self._clock()
        cutoff = now - timedelta(milliseconds=window_ms)
        rolled = RateLimitRow.window_start <= cutoff

        stmt = insert(RateLimitRow).values(key=key, count=1, window_start=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[RateLimitRow.key],
            set_={
                "count": case((rolled, 1), else_=RateLimitRow.count + 1),
                "window_start": case((rolled, now), else_=RateLimitRow.window_start),
            },
        ).returning(RateLimitRow.count, RateLimitRow.window_start)

        async with self.db.session() as s:
            count, window_start = (await s.execute(stmt)).one()

        result = _result(count, as_utc(window_start), max_attempts, window_ms, now)
        if not result.allowed:
            logger.info("rate_limit_refused", key=key, count=count, max_attempts=max_attempts)
        return result


class InMemoryRateLimiter(BaseRateLimiter):
    """Single-process counters for development and tests."""

    def __init__(self, clock: Clock = _utcnow):
        super().__init__(clock)
        self._counters: dict[str, tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            current = self._counters.get(key)
            if current is None or now - current[1] >= timedelta(milliseconds=window_ms):
                count, window_start = 1, now
            else:
                count, window_start = current[0] + 1, current[1]
            self._counters[key] = (count, window_start)
        return _result(count, window_start, max_attempts, window_ms, now)


def create_rate_limiter(config: RateLimitConfig, db: Database = None,
                        clock: Clock = _utcnow) -> BaseRateLimiter:
    if config.backend == "sql":
        if db is None:
            raise ValueError("the sql rate limiter needs a Database handle")
        return SqlRateLimiter(db, clock=clock)
    if config.backend == "memory":
        return InMemoryRateLimiter(clock=clock)
    raise ValueError(f"Unknown rate limit backend: {config.backend!r}")


class RateLimitGuard:
    """
    Applies the named policies from configuration.

        guard = RateLimitGuard(limiter, settings.rate_limits)
        await guard.enforce("registration_per_ip", client_ip)   # raises RateLimitedError
    """

    def __init__(self, limiter: BaseRateLimiter, config: RateLimitConfig):
        self.limiter = limiter
        self.config = config

    async def check(self, policy: str, identifier: str) -> RateLimitResult:
        rule = self.config.policies.get(policy)
        if rule is None:
            raise KeyError(f"Unknown rate limit policy: {policy}")
        key = f"{policy}:{identifier or 'unknown'}"
        return await self.limiter.check(key, rule.max_attempts, rule.window_ms)

    async def enforce(self, policy: str, identifier: str) -> RateLimitResult:
        result = await self.check(policy, identifier)
        if not result.allowed:
            raise RateLimitedError(f"{policy}:{identifier}", retry_after=result.retry_after_seconds)
        return result
