"""Helpers for working with the clinic's configured timezone."""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from .settings import get_settings


def clinic_zone() -> ZoneInfo:
    """Return the timezone the clinic records its timestamps in."""
    return ZoneInfo(get_settings().clinic_timezone)


def clinic_now() -> datetime:
    return datetime.now(clinic_zone())


def clinic_now_iso() -> str:
    """Return an ISO 8601 timestamp anchored to the clinic timezone."""
    return clinic_now().isoformat()


def clinic_day_bounds(moment: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return the UTC start and end of the clinic day containing ``moment``."""
    local = (moment or clinic_now()).astimezone(clinic_zone())
    start = datetime.combine(local.date(), time.min, tzinfo=clinic_zone())
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
