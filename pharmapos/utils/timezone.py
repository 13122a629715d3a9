# FILE: pharmapos/utils/timezone.py
from __future__ import annotations

from datetime import datetime, date
from zoneinfo import ZoneInfo

from pharmapos.core.config import settings


def _local_tz() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def now_local() -> datetime:
    """
    Returns a *naive* datetime in the pharmacy's local time.
    DateTime columns are naive, so the tzinfo is dropped.
    """
    return datetime.now(_local_tz()).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()
