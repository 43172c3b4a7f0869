"""
Configuration loader for the campaign dispatch service.
Reads settings from YAML file with environment variable substitution.

Settings are loaded once at startup and handed to each component; nothing
below keeps a process-wide copy.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./campaign.db"       # postgresql:// | sqlite://
    echo: bool = False
    create_tables: bool = False        # development and tests; migrate_db.py otherwise


@dataclass
class DispatchConfig:
    """Worker policy: batch size, pacing, retry and housekeeping."""
    batch_ceiling: int = 10
    min_delay_ms: int = 800            # pacing between sends (anti-abuse)
    max_delay_ms: int = 3000
    max_attempts: int = 3
    backoff_base_seconds: int = 30     # 30s, 60s, 120s, ... capped
    backoff_cap_seconds: int = 900
    retention_days: int = 7            # purge sent/failed rows older than this
    stale_sending_minutes: int = 10    # "sending" older than this is re-queued
    gateway_timeout_seconds: float = 15.0
    dedupe_window_seconds: int = 300


@dataclass
class GatewayConfig:
    provider: str = "console"          # "evolution" | "console"
    base_url: str = ""
    api_key: str = ""
    instance: str = ""
    default_country_code: str = "55"


@dataclass
class SecurityConfig:
    cron_secret: str = ""
    webhook_secret: str = ""


@dataclass
class RateLimitPolicy:
    max_attempts: int
    window_ms: int


def _default_policies() -> dict[str, RateLimitPolicy]:
    return {
        "login_per_identifier": RateLimitPolicy(5, 15 * 60 * 1000),
        "otp_verify_per_identifier": RateLimitPolicy(5, 15 * 60 * 1000),
        "otp_request_per_ip": RateLimitPolicy(20, 15 * 60 * 1000),
        "registration_per_ip": RateLimitPolicy(3, 60 * 60 * 1000),
    }


@dataclass
class RateLimitConfig:
    backend: str = "sql"               # "sql" | "memory"
    policies: dict[str, RateLimitPolicy] = field(default_factory=_default_policies)


@dataclass
class CityConfig:
    name: str
    state: str = ""
    limit: int = 200
    variants: list[str] = field(default_factory=list)


@dataclass
class CampaignConfig:
    name: str = "campaign"
    strict_admission: bool = False
    cities: dict[str, CityConfig] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "campaign-dispatch"
    environment: str = "development"
    debug: bool = False
    queue_backend: str = "sql"         # "sql" | "memory"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    campaign: CampaignConfig = field(default_factory=CampaignConfig)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_dataclass(cls, data: dict[str, Any]):
    known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed mapping (YAML or tests)."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.environment = raw.get("environment") or settings.environment
    settings.debug = bool(raw.get("debug", settings.debug))
    settings.queue_backend = raw.get("queue_backend", settings.queue_backend)

    if "database" in raw:
        settings.database = _build_dataclass(DatabaseConfig, raw["database"])
        if not settings.database.url:
            settings.database.url = DatabaseConfig().url
    if "dispatch" in raw:
        settings.dispatch = _build_dataclass(DispatchConfig, raw["dispatch"])
    if "gateway" in raw:
        settings.gateway = _build_dataclass(GatewayConfig, raw["gateway"])
    if "security" in raw:
        settings.security = _build_dataclass(SecurityConfig, raw["security"])

    if "rate_limits" in raw:
        rl = raw["rate_limits"] or {}
        policies = _default_policies()
        for name, p in (rl.get("policies") or {}).items():
            policies[name] = RateLimitPolicy(
                max_attempts=int(p["max_attempts"]),
                window_ms=int(p["window_ms"]),
            )
        settings.rate_limits = RateLimitConfig(
            backend=rl.get("backend", "sql"),
            policies=policies,
        )

    if "campaign" in raw:
        c = raw["campaign"] or {}
        cities = {
            key: CityConfig(
                name=city.get("name", key),
                state=city.get("state", ""),
                limit=int(city.get("limit", 200)),
                variants=list(city.get("variants", [])),
            )
            for key, city in (c.get("cities") or {}).items()
        }
        settings.campaign = CampaignConfig(
            name=c.get("name", "campaign"),
            strict_admission=bool(c.get("strict_admission", False)),
            cities=cities,
        )

    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    d = settings.dispatch
    if d.batch_ceiling < 1:
        raise ValueError("dispatch.batch_ceiling must be >= 1")
    if d.min_delay_ms < 0 or d.max_delay_ms < d.min_delay_ms:
        raise ValueError("dispatch delays must satisfy 0 <= min_delay_ms <= max_delay_ms")
    if d.max_attempts < 1:
        raise ValueError("dispatch.max_attempts must be >= 1")
    for key, city in settings.campaign.cities.items():
        if city.limit < 0:
            raise ValueError(f"campaign.cities.{key}.limit must be >= 0")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file. Missing file means defaults."""
    if config_path is None:
        config_path = os.environ.get(
            "CAMPAIGN_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    return settings_from_dict(raw)
