from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from flask import current_app


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def business_today() -> date:
    """Current calendar day in the store's configured timezone."""
    zone = ZoneInfo(current_app.config.get("STORE_TIMEZONE", "UTC"))
    return datetime.now(zone).date()


def normalize_day(value: date | datetime | str | None) -> date:
    """
    Reduce a day-ish value to a calendar day (the ledger's key granularity).

    - None -> business_today()
    - datetime -> its date part (aware values are taken in their own zone)
    - date -> unchanged
    - str -> "YYYY-MM-DD" or any ISO-8601 datetime
    """
    if value is None:
        return business_today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("invalid date")
        try:
            return date.fromisoformat(s[:10]) if len(s) == 10 else parse_iso_datetime(s).date()
        except ValueError:
            raise ValueError(f"invalid date: {value!r}")
    raise ValueError(f"invalid date: {value!r}")


def day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """
    UTC-naive [start 00:00, end+1 00:00) bounds for timestamp filters.

    Midnight is taken in STORE_TIMEZONE so a query for a day covers the same
    hours as that day's ledger entry.
    """
    zone = ZoneInfo(current_app.config.get("STORE_TIMEZONE", "UTC"))

    def _midnight_utc(day: date) -> datetime:
        local = datetime.combine(day, datetime.min.time(), tzinfo=zone)
        return local.astimezone(timezone.utc).replace(tzinfo=None)

    return _midnight_utc(start), _midnight_utc(end + timedelta(days=1))
