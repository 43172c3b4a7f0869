"""
Error taxonomy shared by the queue, worker, limiter and HTTP layer.

Every error carries the HTTP status it maps to and a public message that is
safe to return to callers; the exception's own text stays in the logs.
"""
from __future__ import annotations

from typing import Optional


class CampaignError(Exception):
    """Base exception for all campaign operations."""

    status_code: int = 500
    public_message: str = "internal error"
    retryable: bool = False

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        if public_message is not None:
            self.public_message = public_message
        super().__init__(message or self.public_message)


class ValidationError(CampaignError):
    status_code = 400
    public_message = "invalid request"


class AuthError(CampaignError):
    status_code = 401
    public_message = "unauthorized"


class RateLimitedError(CampaignError):
    status_code = 429
    public_message = "too many requests, try again later"

    def __init__(self, key: str = "", retry_after: int = 0):
        self.key = key
        self.retry_after = max(0, int(retry_after))
        super().__init__(f"Rate limit exceeded for {key}")


class TransientDeliveryError(CampaignError):
    """Gateway timeout / 5xx: retried through the queue backoff."""
    retryable = True

    def __init__(self, message: str = "", message_id: str = ""):
        self.message_id = message_id
        super().__init__(message)


class PermanentDeliveryError(CampaignError):
    """Attempts exhausted. Only logged; delivery is asynchronous."""

    def __init__(self, message: str = "", message_id: str = "", attempts: int = 0):
        self.message_id = message_id
        self.attempts = attempts
        super().__init__(message)


class InternalError(CampaignError):
    """Store unavailable or misconfigured: aborts the current batch/request."""
    status_code = 500
    public_message = "internal error"
