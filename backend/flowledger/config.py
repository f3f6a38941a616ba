# backend/flowledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the process by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///flowledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("FLOWLEDGER_LOG_LEVEL", "INFO")

    # Remote sync collaborator
    SYNC_ENDPOINT_URL = os.environ.get("FLOWLEDGER_SYNC_URL", "http://127.0.0.1:5002/api")
    SYNC_TIMEOUT_SECONDS = float(os.environ.get("FLOWLEDGER_SYNC_TIMEOUT", "10"))
    SYNC_MAX_RETRIES = int(os.environ.get("FLOWLEDGER_SYNC_MAX_RETRIES", "3"))
    SYNC_BACKOFF_BASE_SECONDS = float(os.environ.get("FLOWLEDGER_SYNC_BACKOFF_BASE", "30"))
    SYNC_BACKOFF_MAX_SECONDS = float(os.environ.get("FLOWLEDGER_SYNC_BACKOFF_MAX", "900"))
    SYNC_START_ONLINE = _env_bool("FLOWLEDGER_START_ONLINE", False)
    SYNC_POLL_INTERVAL_SECONDS = float(os.environ.get("FLOWLEDGER_SYNC_POLL_INTERVAL", "30"))
    # A `syncing` claim older than this is treated as abandoned by a crashed drain
    SYNC_CLAIM_TIMEOUT_SECONDS = float(os.environ.get("FLOWLEDGER_SYNC_CLAIM_TIMEOUT", "300"))

    # Notification retention: hard cap on create, degraded cap when storage is full
    NOTIFICATION_RETENTION = 100
    NOTIFICATION_DEGRADED_RETENTION = 50
    NOTIFICATION_CLEAR_DAYS = 30

    ANALYTICS_DEFAULT_DAYS = 30

    # Per-key size limit for the key-value store (browser storage quota analog)
    STORAGE_MAX_VALUE_BYTES = int(os.environ.get("FLOWLEDGER_STORAGE_MAX_BYTES", str(5 * 1024 * 1024)))
