import pytest

from flipper.config import ConfigError, env_bool, env_int, load_settings


def test_missing_database_url_is_fatal(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(ConfigError, match="DATABASE_URL"):
        load_settings()


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///flipper.db")
    monkeypatch.setenv("LATEST_MAX_RETRIES", "5")
    monkeypatch.setenv("TREND_AUDIT", "yes")
    monkeypatch.setenv("FULL_REFRESH_RATIO", "3")
    monkeypatch.setenv("FEED_BASE_URL", "http://localhost:9000/api/")

    settings = load_settings()

    assert settings.database_url == "sqlite:///flipper.db"
    assert settings.latest_max_retries == 5
    assert settings.trend_audit is True
    assert settings.full_refresh_ratio == 1.0
    assert settings.feed_base_url == "http://localhost:9000/api"
    assert settings.chain_max_retries == 12


def test_env_helpers_fall_back(monkeypatch):
    monkeypatch.setenv("PORT", "not-a-number")
    assert env_int("PORT", 5003) == 5003
    monkeypatch.setenv("SCHEDULER_ENABLED", "off")
    assert env_bool("SCHEDULER_ENABLED", True) is False
