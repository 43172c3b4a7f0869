"""Tests for YAML settings loading and validation."""
import pytest

from config.settings import Settings, load_settings, settings_from_dict

from tests.conftest import make_raw_settings


def test_defaults():
    settings = Settings()
    assert settings.dispatch.batch_ceiling == 10
    assert settings.dispatch.min_delay_ms == 800
    assert settings.dispatch.max_delay_ms == 3000
    assert settings.dispatch.max_attempts == 3
    assert settings.rate_limits.policies["otp_verify_per_identifier"].max_attempts == 5
    assert settings.security.cron_secret == ""


def test_env_substitution(monkeypatch, tmp_path):
    monkeypatch.setenv("CRON_SECRET", "from-env")
    raw = make_raw_settings(str(tmp_path / "x.db"), security={"cron_secret": "${CRON_SECRET}"})
    settings = settings_from_dict(raw)
    assert settings.security.cron_secret == "from-env"


def test_missing_env_var_becomes_empty(monkeypatch, tmp_path):
    monkeypatch.delenv("EVOLUTION_API_KEY", raising=False)
    raw = make_raw_settings(str(tmp_path / "x.db"), gateway={"api_key": "${EVOLUTION_API_KEY}"})
    assert settings_from_dict(raw).gateway.api_key == ""


def test_load_from_yaml(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "environment: staging\n"
        "dispatch:\n"
        "  batch_ceiling: 25\n"
        "  min_delay_ms: 100\n"
        "  max_delay_ms: 200\n"
        "rate_limits:\n"
        "  backend: memory\n"
        "  policies:\n"
        "    registration_per_ip: {max_attempts: 10, window_ms: 60000}\n"
        "campaign:\n"
        "  name: Castra+MG\n"
        "  cities:\n"
        "    barbacena: {name: Barbacena, state: MG, limit: 150}\n",
        encoding="utf-8",
    )
    settings = load_settings(str(path))

    assert settings.environment == "staging"
    assert settings.dispatch.batch_ceiling == 25
    assert settings.rate_limits.backend == "memory"
    assert settings.rate_limits.policies["registration_per_ip"].max_attempts == 10
    assert settings.rate_limits.policies["login_per_identifier"].max_attempts == 5
    assert settings.campaign.cities["barbacena"].limit == 150


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings.environment == "development"


def test_shipped_settings_file_loads():
    settings = load_settings()
    assert settings.campaign.cities


@pytest.mark.parametrize("dispatch", [
    {"min_delay_ms": 500, "max_delay_ms": 100},
    {"batch_ceiling": 0},
    {"max_attempts": 0},
])
def test_invalid_dispatch_rejected(tmp_path, dispatch):
    with pytest.raises(ValueError):
        settings_from_dict(make_raw_settings(str(tmp_path / "x.db"), dispatch=dispatch))
