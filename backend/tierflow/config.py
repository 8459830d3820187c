# backend/tierflow/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tierflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tierflow.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Calendar used for "today", "this month" and explicit month/year filters
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "UTC")

    # Header carrying the authenticated principal's node id (set by the auth proxy)
    PRINCIPAL_HEADER = os.environ.get("PRINCIPAL_HEADER", "X-Principal-Id")

    # Sync/notification polling
    SYNC_SCHEDULER_ENABLED = _env_bool("SYNC_SCHEDULER_ENABLED", True)
    SYNC_POLL_INTERVAL_SECONDS = float(os.environ.get("SYNC_POLL_INTERVAL_SECONDS", "5"))
    SYNC_EVENT_QUEUE_SIZE = int(os.environ.get("SYNC_EVENT_QUEUE_SIZE", "100"))
    # Sessions not drained or acted on for this long are ended (0 disables)
    SYNC_SESSION_IDLE_SECONDS = float(os.environ.get("SYNC_SESSION_IDLE_SECONDS", "300"))

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if origin.strip()
    }
