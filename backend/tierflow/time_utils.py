from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from flask import current_app, has_app_context


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

    # Normalize to UTC-naive
    if dt.tzinfo is None:
        # interpret naive as UTC
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_date(value) -> Optional[date]:
    """
    Parse a calendar date ("YYYY-MM-DD"). A full datetime string is accepted
    and truncated to its date part. date objects pass through.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    if "T" in s or " " in s:
        return parse_iso_datetime(s).date()
    return date.fromisoformat(s)


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


def to_iso_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


# =============================================================================
# BUSINESS-CALENDAR HELPERS
# =============================================================================
# Stored timestamps are UTC-naive. Calendar questions ("today", "January 2024")
# are asked in the business timezone and converted back to UTC-naive bounds.


def business_tz(tz_name: str | None) -> ZoneInfo:
    return ZoneInfo(tz_name or "UTC")


def business_today(tz_name: str | None, *, now: datetime | None = None) -> date:
    """Current calendar date in the business timezone."""
    current = now or utcnow()
    return current.replace(tzinfo=timezone.utc).astimezone(business_tz(tz_name)).date()


def local_day_start_utc(day: date, tz_name: str | None) -> datetime:
    """UTC-naive instant at which `day` begins in the business timezone."""
    local = datetime.combine(day, time.min, tzinfo=business_tz(tz_name))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def local_range_utc(first_day: date, last_day: date, tz_name: str | None) -> tuple[datetime, datetime]:
    """
    Half-open UTC-naive range [start, end) covering first_day..last_day
    inclusive, both read as business-timezone calendar days.
    """
    start = local_day_start_utc(first_day, tz_name)
    end = local_day_start_utc(last_day + timedelta(days=1), tz_name)
    return start, end


def current_business_tz() -> str:
    """BUSINESS_TIMEZONE of the active Flask app (UTC outside an app context)."""
    if has_app_context():
        return current_app.config.get("BUSINESS_TIMEZONE") or "UTC"
    return "UTC"


def current_business_today() -> date:
    return business_today(current_business_tz())
