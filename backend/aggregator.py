"""
Activity aggregation: raw activity records to per-day, per-category series
"""

from datetime import date, timedelta
from typing import Iterable, Optional, Set

from errors import InvalidCategoryError
from logging_config import get_logger
from models import ActivityEvent, ActivityRecord, DailySeries

logger = get_logger(__name__)


def window_dates(window_days: int, today: date) -> list:
    """The window_days consecutive dates ending at today, oldest first"""
    if window_days < 1:
        raise ValueError("window_days must be at least 1")
    start = today - timedelta(days=window_days - 1)
    return [start + timedelta(days=i) for i in range(window_days)]


def _check_category(record: ActivityRecord, known: Optional[Set[str]]) -> None:
    if known is not None and record.category_id is not None and record.category_id not in known:
        raise InvalidCategoryError(record.category_id)


def aggregate(
    activities: Iterable[ActivityRecord],
    window_days: int,
    today: date,
    known_categories: Optional[Iterable[str]] = None,
) -> DailySeries:
    """
    Build the DailySeries for a lookback window.

    Records may be unsorted and may span more than the window; anything whose
    start date falls outside the window is discarded. Records without a
    category only feed the hour-of-day histogram and the event list. Records
    naming an unknown category are skipped.
    """
    dates = window_dates(window_days, today)
    start_date, end_date = dates[0], dates[-1]
    known = set(known_categories) if known_categories is not None else None

    kept = []
    for record in activities:
        day = record.start_time.date()
        if day < start_date or day > end_date:
            continue
        try:
            _check_category(record, known)
        except InvalidCategoryError as e:
            logger.warning("activity_skipped", activity_id=record.id, reason=str(e))
            continue
        kept.append(record)

    kept.sort(key=lambda r: (r.start_time, r.category_id or "", r.description or ""))

    categories = set(known or ())
    categories.update(r.category_id for r in kept if r.category_id is not None)
    categories = sorted(categories)

    hours = {d: {c: 0.0 for c in categories} for d in dates}
    counts = {d: {c: 0 for c in categories} for d in dates}
    daily_totals = {d: 0 for d in dates}
    hour_histogram = {h: 0 for h in range(24)}
    events = []

    for record in kept:
        day = record.start_time.date()
        hour = record.start_time.hour
        hour_histogram[hour] += 1
        daily_totals[day] += 1

        if record.category_id is not None:
            hours[day][record.category_id] += record.hours
            counts[day][record.category_id] += 1

        events.append(ActivityEvent(
            day=day,
            start_time=record.start_time,
            start_hour=hour,
            category_id=record.category_id,
            description=record.description,
            duration_minutes=record.duration_minutes or 0.0,
        ))

    return DailySeries(
        start_date=start_date,
        end_date=end_date,
        window_days=window_days,
        dates=dates,
        categories=categories,
        hours=hours,
        counts=counts,
        daily_totals=daily_totals,
        hour_histogram=hour_histogram,
        events=events,
    )
