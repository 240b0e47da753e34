# backend/liquor_pos/config.py
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

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///liquor_pos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Business day boundaries are decided in the store's zone, not the server's
    STORE_TIMEZONE = os.environ.get("STORE_TIMEZONE", "Asia/Kolkata")

    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "10"))
    CONTINUITY_WINDOW_DAYS = int(os.environ.get("CONTINUITY_WINDOW_DAYS", "7"))

    DEFAULT_QUERY_LIMIT = int(os.environ.get("DEFAULT_QUERY_LIMIT", "100"))
    MAX_QUERY_LIMIT = int(os.environ.get("MAX_QUERY_LIMIT", "1000"))
    RECONCILIATION_LIST_LIMIT = int(os.environ.get("RECONCILIATION_LIST_LIMIT", "50"))

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_CAPACITY = int(os.environ.get("RATE_LIMIT_CAPACITY", "100"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "900"))

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))

    # Actor recorded on rows written by scheduled jobs
    SYSTEM_USERNAME = os.environ.get("SYSTEM_USERNAME", "system")
