from __future__ import annotations

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def db_now() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return utc_now().replace(tzinfo=None)


def utc_today() -> date:
    return utc_now().date()
