"""Tests for backend/aggregator.py

The aggregator turns raw activity records into zero-filled per-day,
per-category series that every engine consumes.
"""

import random
from datetime import datetime, timedelta

import pytest

from aggregator import aggregate, window_dates
from conftest import TODAY, daily_activities, make_activity


# ─────────────────────────────────────────────────────────────────────────────
# Window Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestWindow:
    """Tests for the lookback window."""

    def test_window_ends_today_inclusive(self):
        """Should cover exactly window_days dates ending at today."""
        dates = window_dates(7, TODAY)

        assert len(dates) == 7
        assert dates[-1] == TODAY
        assert dates[0] == TODAY - timedelta(days=6)

    def test_rejects_empty_window(self):
        with pytest.raises(ValueError):
            window_dates(0, TODAY)

    def test_every_day_present_even_without_activity(self):
        """Inactive days appear as zero entries."""
        series = aggregate([], 30, TODAY, known_categories=["health"])

        assert len(series.dates) == 30
        assert series.category_hours("health") == [0.0] * 30
        assert series.total_counts() == [0] * 30


# ─────────────────────────────────────────────────────────────────────────────
# Bucketing Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestBucketing:
    """Tests for hours and counts per (date, category)."""

    def test_sums_hours_and_counts(self):
        morning = datetime.combine(TODAY, datetime.min.time()).replace(hour=7)
        activities = [
            make_activity("health", morning, minutes=30),
            make_activity("health", morning + timedelta(hours=5), minutes=90),
        ]

        series = aggregate(activities, 7, TODAY)

        assert series.hours[TODAY]["health"] == pytest.approx(2.0)
        assert series.counts[TODAY]["health"] == 2
        assert series.daily_totals[TODAY] == 2

    def test_discards_records_outside_window(self):
        old = datetime.combine(TODAY - timedelta(days=10), datetime.min.time())
        future = datetime.combine(TODAY + timedelta(days=1), datetime.min.time())
        activities = [make_activity("health", old), make_activity("health", future)]

        series = aggregate(activities, 7, TODAY)

        assert sum(series.category_counts("health")) == 0
        assert series.events == []

    def test_uncategorized_only_feeds_histogram_and_events(self):
        start = datetime.combine(TODAY, datetime.min.time()).replace(hour=9)
        series = aggregate([make_activity(None, start, description="Walk")], 7, TODAY)

        assert series.categories == []
        assert series.hour_histogram[9] == 1
        assert series.daily_totals[TODAY] == 1
        assert series.events[0].description == "Walk"

    def test_skips_unknown_category(self):
        """Records naming a category the user does not have are dropped, not fatal."""
        start = datetime.combine(TODAY, datetime.min.time()).replace(hour=9)
        activities = [make_activity("ghost", start), make_activity("health", start)]

        series = aggregate(activities, 7, TODAY, known_categories=["health"])

        assert series.categories == ["health"]
        assert len(series.events) == 1

    def test_input_order_does_not_matter(self):
        activities = daily_activities("health", TODAY - timedelta(days=13), TODAY)
        activities += daily_activities("work", TODAY - timedelta(days=13), TODAY, hour=9)
        shuffled = list(activities)
        random.Random(7).shuffle(shuffled)

        assert aggregate(activities, 14, TODAY) == aggregate(shuffled, 14, TODAY)

    def test_events_are_chronological(self):
        activities = daily_activities("health", TODAY - timedelta(days=4), TODAY)
        series = aggregate(list(reversed(activities)), 5, TODAY)

        starts = [e.start_time for e in series.events]
        assert starts == sorted(starts)

    def test_daily_hours_match_durations(self):
        activities = daily_activities("health", TODAY - timedelta(days=6), TODAY, minutes=45)
        activities += daily_activities("work", TODAY - timedelta(days=6), TODAY, hour=9, minutes=150, every=2)

        series = aggregate(activities, 7, TODAY)

        for day in series.dates:
            expected = sum(a.duration_minutes / 60 for a in activities if a.start_time.date() == day)
            assert sum(series.hours[day].values()) == pytest.approx(expected)
