"""Shared-secret checks for the cron trigger and provider webhooks."""
from __future__ import annotations

import hmac
from typing import Mapping, Optional

from core.errors import AuthError


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison. An unset expected secret never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_secret(provided: Optional[str], expected: Optional[str]) -> None:
    if not secrets_match(provided, expected):
        raise AuthError("shared secret missing or mismatched")


def webhook_key(headers: Mapping[str, str]) -> str:
    return headers.get("apikey") or headers.get("x-api-key") or ""


def cron_secret(headers: Mapping[str, str], query: Mapping[str, str]) -> str:
    return headers.get("x-cron-secret") or query.get("secret") or ""
