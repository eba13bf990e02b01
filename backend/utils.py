from datetime import datetime
from typing import Optional

import pytz

from config import TIMEZONE

LOCAL_TZ = pytz.timezone(TIMEZONE)


def to_local(dt: datetime, tz: Optional[pytz.BaseTzInfo] = None) -> datetime:
    """Convert a naive or aware datetime to a timezone-aware local datetime.
    If naive, assume it's already local time.
    """
    tz = tz or LOCAL_TZ
    if dt.tzinfo is None:
        return tz.localize(dt)
    return dt.astimezone(tz)


def to_local_naive(dt: datetime, tz: Optional[pytz.BaseTzInfo] = None) -> datetime:
    """Local wall-clock time without tzinfo, used for day bucketing."""
    if dt.tzinfo is None:
        return dt
    return to_local(dt, tz).replace(tzinfo=None)


def now_local(tz: Optional[pytz.BaseTzInfo] = None) -> datetime:
    """Get current time in the configured timezone."""
    return datetime.now(pytz.UTC).astimezone(tz or LOCAL_TZ)
