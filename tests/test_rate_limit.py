"""
Tests for the fixed-window rate limiter (SQL and in-memory) and the guard.
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from config.settings import RateLimitConfig, RateLimitPolicy
from core.errors import RateLimitedError
from database.session import Database
from guards.rate_limit import (
    InMemoryRateLimiter, RateLimitGuard, SqlRateLimiter, create_rate_limiter,
)

FIFTEEN_MINUTES_MS = 900_000


@pytest_asyncio.fixture(params=["sql", "memory"])
async def limiter(request, settings, clock):
    if request.param == "memory":
        yield InMemoryRateLimiter(clock=clock)
        return
    database = Database(settings.database)
    await database.connect()
    await database.create_all()
    yield SqlRateLimiter(database, clock=clock)
    await database.close()


class TestCheck:
    @pytest.mark.asyncio
    async def test_sixth_request_in_window_is_refused(self, limiter, clock):
        results = []
        for _ in range(6):
            results.append(await limiter.check("login:ana@example.org", 5, FIFTEEN_MINUTES_MS))
            clock.advance(seconds=10)

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]
        assert results[-1].count == 6

    @pytest.mark.asyncio
    async def test_window_rollover_resets_count(self, limiter, clock):
        for _ in range(6):
            await limiter.check("login:ana@example.org", 5, FIFTEEN_MINUTES_MS)

        clock.advance(minutes=15)
        result = await limiter.check("login:ana@example.org", 5, FIFTEEN_MINUTES_MS)
        assert result.allowed is True
        assert result.count == 1
        assert result.reset_at == clock.now + timedelta(milliseconds=FIFTEEN_MINUTES_MS)

    @pytest.mark.asyncio
    async def test_just_before_rollover_still_counts(self, limiter, clock):
        for _ in range(5):
            await limiter.check("k", 5, FIFTEEN_MINUTES_MS)
        clock.advance(minutes=14, seconds=59)
        assert (await limiter.check("k", 5, FIFTEEN_MINUTES_MS)).allowed is False

    @pytest.mark.asyncio
    async def test_retry_after_follows_limiter_clock(self, limiter, clock):
        for _ in range(5):
            await limiter.check("k", 5, FIFTEEN_MINUTES_MS)
        clock.advance(minutes=10)
        result = await limiter.check("k", 5, FIFTEEN_MINUTES_MS)
        assert result.allowed is False
        assert result.retry_after_seconds == 300

    @pytest.mark.asyncio
    async def test_allowed_result_has_no_retry_after(self, limiter):
        assert (await limiter.check("k", 5, FIFTEEN_MINUTES_MS)).retry_after_seconds == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check("a", 5, FIFTEEN_MINUTES_MS)
        assert (await limiter.check("a", 5, FIFTEEN_MINUTES_MS)).allowed is False
        assert (await limiter.check("b", 5, FIFTEEN_MINUTES_MS)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_callers_never_exceed_max(self, limiter):
        results = await asyncio.gather(*[
            limiter.check("otp:10.0.0.1", 5, FIFTEEN_MINUTES_MS) for _ in range(20)
        ])
        assert sum(r.allowed for r in results) == 5
        assert sorted(r.count for r in results) == list(range(1, 21))


class TestGuard:
    @pytest.fixture
    def guard(self, clock):
        config = RateLimitConfig(backend="memory", policies={
            "registration_per_ip": RateLimitPolicy(max_attempts=3, window_ms=3_600_000),
        })
        return RateLimitGuard(InMemoryRateLimiter(clock=clock), config)

    @pytest.mark.asyncio
    async def test_enforce_raises_after_limit(self, guard):
        for _ in range(3):
            await guard.enforce("registration_per_ip", "10.0.0.9")
        with pytest.raises(RateLimitedError) as exc_info:
            await guard.enforce("registration_per_ip", "10.0.0.9")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after >= 1

    @pytest.mark.asyncio
    async def test_identifiers_are_separate(self, guard):
        for _ in range(3):
            await guard.enforce("registration_per_ip", "10.0.0.9")
        result = await guard.enforce("registration_per_ip", "10.0.0.10")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_unknown_policy(self, guard):
        with pytest.raises(KeyError):
            await guard.check("nonexistent", "x")

    def test_default_policies_present(self, settings):
        policies = settings.rate_limits.policies
        assert policies["login_per_identifier"].max_attempts == 5
        assert policies["login_per_identifier"].window_ms == FIFTEEN_MINUTES_MS
        assert policies["otp_request_per_ip"].max_attempts == 20
        assert policies["registration_per_ip"].window_ms == 3_600_000

    def test_factory(self, settings):
        assert isinstance(create_rate_limiter(RateLimitConfig(backend="memory")),
                          InMemoryRateLimiter)
        with pytest.raises(ValueError):
            create_rate_limiter(RateLimitConfig(backend="sql"))
