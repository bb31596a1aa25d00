from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    eventsub_secret: str
    webhook_timeout_seconds: float
    webhook_max_retries: int
    webhook_retry_backoff_seconds: float
    webhook_max_concurrency: int
    bot_connect_timeout_seconds: float
    bot_max_consecutive_failures: int
    bot_backoff_base_seconds: float
    bot_backoff_max_seconds: float
    chat_host: str
    chat_port: int
    realtime_queue_size: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/counterhub.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    backoff_base = max(0.01, _float_env("BOT_BACKOFF_BASE_SECONDS", 1.0))
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        eventsub_secret=os.getenv("EVENTSUB_SECRET", "").strip(),
        webhook_timeout_seconds=max(0.1, min(60.0, _float_env("WEBHOOK_TIMEOUT_SECONDS", 10.0))),
        webhook_max_retries=max(1, _int_env("WEBHOOK_MAX_RETRIES", 3)),
        webhook_retry_backoff_seconds=max(0.0, _float_env("WEBHOOK_RETRY_BACKOFF_SECONDS", 2.0)),
        webhook_max_concurrency=max(1, _int_env("WEBHOOK_MAX_CONCURRENCY", 8)),
        bot_connect_timeout_seconds=max(0.1, _float_env("BOT_CONNECT_TIMEOUT_SECONDS", 10.0)),
        bot_max_consecutive_failures=max(1, _int_env("BOT_MAX_CONSECUTIVE_FAILURES", 5)),
        bot_backoff_base_seconds=backoff_base,
        bot_backoff_max_seconds=max(backoff_base, _float_env("BOT_BACKOFF_MAX_SECONDS", 60.0)),
        chat_host=os.getenv("CHAT_HOST", "irc.chat.twitch.tv").strip(),
        chat_port=_int_env("CHAT_PORT", 6697),
        realtime_queue_size=max(1, min(10_000, _int_env("REALTIME_QUEUE_SIZE", 100))),
    )
