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
    store_timeout_seconds: int
    sms_webhook_secret: str
    default_country_code: str
    dedup_cache_ttl_seconds: int
    store_dedup_window_seconds: int
    identity_lookback_hours: int
    history_dedup_window_seconds: int
    dedup_recovery_file: str
    dedup_recovery_max_entries: int
    dedup_lock_timeout_seconds: int
    fuzzy_candidate_limit: int
    sms_events_enabled: bool
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/sms_inbox.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    country_code = "".join(ch for ch in os.getenv("DEFAULT_COUNTRY_CODE", "44") if ch.isdigit())
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        store_timeout_seconds=max(1, min(30, _int_env("STORE_TIMEOUT_SECONDS", 5))),
        sms_webhook_secret=os.getenv("SMS_WEBHOOK_SECRET", "").strip(),
        default_country_code=country_code or "44",
        dedup_cache_ttl_seconds=max(60, _int_env("DEDUP_CACHE_TTL_SECONDS", 900)),
        store_dedup_window_seconds=max(60, _int_env("STORE_DEDUP_WINDOW_SECONDS", 600)),
        identity_lookback_hours=max(1, min(24 * 30, _int_env("IDENTITY_LOOKBACK_HOURS", 24))),
        history_dedup_window_seconds=max(60, _int_env("HISTORY_DEDUP_WINDOW_SECONDS", 600)),
        dedup_recovery_file=os.getenv(
            "DEDUP_RECOVERY_FILE", "data/processed_sms_messages.json"
        ).strip(),
        dedup_recovery_max_entries=max(10, _int_env("DEDUP_RECOVERY_MAX_ENTRIES", 500)),
        dedup_lock_timeout_seconds=max(1, min(30, _int_env("DEDUP_LOCK_TIMEOUT_SECONDS", 5))),
        fuzzy_candidate_limit=max(1, min(20, _int_env("FUZZY_CANDIDATE_LIMIT", 5))),
        sms_events_enabled=_bool_env("SMS_EVENTS_ENABLED", True),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
