"""Request guards: rate limiting and shared-secret authentication."""
from guards.rate_limit import (
    BaseRateLimiter,
    SqlRateLimiter,
    InMemoryRateLimiter,
    RateLimitGuard,
    create_rate_limiter,
)
from guards.webhook_auth import secrets_match, require_secret

__all__ = [
    "BaseRateLimiter", "SqlRateLimiter", "InMemoryRateLimiter",
    "RateLimitGuard", "create_rate_limiter",
    "secrets_match", "require_secret",
]
