from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigError(RuntimeError):
    pass


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str = "INFO"
    port: int = 5003
    lock_dir: str = ".locks"
    trend_audit: bool = False
    feed_base_url: str = "https://prices.runescape.wiki/api/v1/osrs"
    feed_user_agent: str = "flipper-canonical/0.1 (price summary pipeline)"
    feed_timeout_seconds: float = 30.0
    feed_max_retries: int = 3
    latest_interval_seconds: int = 60
    latest_max_retries: int = 3
    latest_retry_delay_seconds: float = 5.0
    chain_max_retries: int = 12
    chain_retry_delay_seconds: float = 10.0
    full_refresh_ratio: float = 0.8
    scheduler_enabled: bool = True
    backfill_delay_ms: int = 250


def load_settings() -> Settings:
    """Read process settings from the environment.

    DATABASE_URL is the only required value; everything else falls back to
    the production defaults.
    """
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        raise ConfigError("DATABASE_URL is missing. Set it in env or .env.")

    return Settings(
        database_url=database_url,
        log_level=env_str("LOG_LEVEL", "INFO").upper(),
        port=env_int("PORT", 5003),
        lock_dir=env_str("LOCK_DIR", ".locks"),
        trend_audit=env_bool("TREND_AUDIT", False),
        feed_base_url=env_str("FEED_BASE_URL", Settings.feed_base_url).rstrip("/"),
        feed_user_agent=env_str("FEED_USER_AGENT", Settings.feed_user_agent),
        feed_timeout_seconds=max(env_float("FEED_TIMEOUT_SECONDS", 30.0), 1.0),
        feed_max_retries=max(env_int("FEED_MAX_RETRIES", 3), 1),
        latest_interval_seconds=max(env_int("LATEST_INTERVAL_SECONDS", 60), 5),
        latest_max_retries=max(env_int("LATEST_MAX_RETRIES", 3), 1),
        latest_retry_delay_seconds=max(env_float("LATEST_RETRY_DELAY_SECONDS", 5.0), 0.0),
        chain_max_retries=max(env_int("CHAIN_MAX_RETRIES", 12), 1),
        chain_retry_delay_seconds=max(env_float("CHAIN_RETRY_DELAY_SECONDS", 10.0), 0.0),
        full_refresh_ratio=min(max(env_float("FULL_REFRESH_RATIO", 0.8), 0.0), 1.0),
        scheduler_enabled=env_bool("SCHEDULER_ENABLED", True),
        backfill_delay_ms=max(env_int("BACKFILL_DELAY_MS", 250), 0),
    )
