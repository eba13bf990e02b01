"""Tests for backend/pattern_engine.py detection

Covers time-of-day bands, weekday patterns, per-category frequency and
trend, sequence mining, insights and pattern strength.
"""

from datetime import datetime, time, timedelta

import pytest

from aggregator import aggregate
from conftest import FIXED_NOW, TODAY, daily_activities, make_activity
from models import PatternFrequency, Trend
from pattern_engine import PatternEngine, format_hour


@pytest.fixture
def engine(policy):
    return PatternEngine(policy)


@pytest.fixture
def morning_health_series():
    """Physical Health, 60 minutes at 07:00 on each of the last 30 days."""
    activities = daily_activities("health", TODAY - timedelta(days=29), TODAY)
    return aggregate(activities, 30, TODAY, known_categories=["health"])


# ─────────────────────────────────────────────────────────────────────────────
# Daily Habit Scenario
# ─────────────────────────────────────────────────────────────────────────────


class TestDailyHabit:
    """A perfectly regular morning habit."""

    def test_category_is_daily_and_stable(self, engine, morning_health_series):
        model = engine.detect_patterns(morning_health_series, {"health": "Physical Health"}, FIXED_NOW)
        pattern = model.category_patterns["health"]

        assert pattern.frequency == PatternFrequency.DAILY
        assert pattern.trend == Trend.STABLE
        assert pattern.avg_duration_minutes == pytest.approx(60.0)
        assert pattern.peak_hour == 7
        assert pattern.category_name == "Physical Health"

    def test_morning_band_is_fully_consistent(self, engine, morning_health_series):
        model = engine.detect_patterns(morning_health_series)
        morning = model.daily_patterns["morning"]

        assert morning.consistency == 1.0
        assert morning.peak_hours == [7]
        assert morning.preferred_categories == ["health"]

    def test_empty_bands(self, engine, morning_health_series):
        model = engine.detect_patterns(morning_health_series)

        assert model.daily_patterns["evening"].consistency == 0.0
        assert model.daily_patterns["evening"].peak_hours == []
        assert model.daily_patterns["evening"].preferred_categories == []

    def test_records_window_and_data_points(self, engine, morning_health_series):
        model = engine.detect_patterns(morning_health_series, analyzed_at=FIXED_NOW)

        assert model.window_days == 30
        assert model.data_points == 30
        assert model.last_analyzed == FIXED_NOW


# ─────────────────────────────────────────────────────────────────────────────
# Frequency & Trend Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestCategoryPatterns:
    """Tests for frequency classes and trends."""

    def test_weekly_frequency(self, engine):
        activities = daily_activities("music", TODAY - timedelta(days=29), TODAY, every=3)
        model = engine.detect_patterns(aggregate(activities, 30, TODAY))

        assert model.category_patterns["music"].frequency == PatternFrequency.WEEKLY

    def test_rare_frequency(self, engine):
        activities = daily_activities("music", TODAY - timedelta(days=1), TODAY)
        model = engine.detect_patterns(aggregate(activities, 30, TODAY))

        assert model.category_patterns["music"].frequency == PatternFrequency.RARE

    def test_inactive_category_has_no_pattern(self, engine):
        model = engine.detect_patterns(aggregate([], 30, TODAY, known_categories=["music"]))

        assert model.category_patterns == {}

    def test_increasing_when_only_recent(self, engine):
        activities = daily_activities("music", TODAY - timedelta(days=9), TODAY)
        model = engine.detect_patterns(aggregate(activities, 30, TODAY))

        assert model.category_patterns["music"].trend == Trend.INCREASING

    def test_decreasing_when_only_early(self, engine):
        activities = daily_activities("music", TODAY - timedelta(days=29), TODAY - timedelta(days=20))
        model = engine.detect_patterns(aggregate(activities, 30, TODAY))

        assert model.category_patterns["music"].trend == Trend.DECREASING

    def test_small_change_is_stable(self, engine):
        early = daily_activities("music", TODAY - timedelta(days=29), TODAY - timedelta(days=20), minutes=60)
        late = daily_activities("music", TODAY - timedelta(days=19), TODAY, minutes=65)
        model = engine.detect_patterns(aggregate(early + late, 30, TODAY))

        assert model.category_patterns["music"].trend == Trend.STABLE


# ─────────────────────────────────────────────────────────────────────────────
# Weekly Pattern Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestWeeklyPatterns:
    """Tests for weekday aggregates."""

    def test_no_activity_has_no_extremes(self, engine):
        weekly = engine.detect_patterns(aggregate([], 30, TODAY)).weekly_patterns

        assert weekly.most_active_day is None
        assert weekly.least_active_day is None
        assert weekly.weekday_avg == 0.0

    def test_monday_only_habit(self, engine):
        # TODAY is a Wednesday; two days back is a Monday
        activities = daily_activities("music", TODAY - timedelta(days=23), TODAY - timedelta(days=2), every=7)
        weekly = engine.detect_patterns(aggregate(activities, 28, TODAY)).weekly_patterns

        assert weekly.most_active_day == "Monday"
        assert weekly.weekend_avg == 0.0
        assert weekly.weekday_avg > 0.0
        monday = [p for p in weekly.category_weekdays if p.category_id == "music"]
        assert len(monday) == 1
        assert monday[0].weekday == "Monday"
        assert monday[0].frequency == 1.0
        assert monday[0].occurrences == 4


# ─────────────────────────────────────────────────────────────────────────────
# Sequence Mining Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestSequences:
    """Tests for same-day activity pairs."""

    def _routine(self, days):
        activities = []
        for offset in range(days):
            day = TODAY - timedelta(days=offset)
            activities.append(make_activity("food", datetime.combine(day, time(7, 0)), 15, "Coffee"))
            activities.append(make_activity("health", datetime.combine(day, time(7, 30)), 45, "Run"))
        return activities

    def test_detects_regular_pair(self, engine):
        model = engine.detect_patterns(aggregate(self._routine(10), 30, TODAY))

        assert len(model.habit_sequences) == 1
        sequence = model.habit_sequences[0]
        assert sequence.sequence == ["Coffee", "Run"]
        assert sequence.frequency == 1.0
        assert sequence.occurrences == 10
        assert sequence.category_id == "health"

    def test_requires_minimum_occurrences(self, engine):
        model = engine.detect_patterns(aggregate(self._routine(2), 30, TODAY))

        assert model.habit_sequences == []

    def test_identical_descriptions_are_not_a_sequence(self, engine):
        activities = []
        for offset in range(5):
            day = TODAY - timedelta(days=offset)
            activities.append(make_activity("health", datetime.combine(day, time(7, 0)), 20, "Stretch"))
            activities.append(make_activity("health", datetime.combine(day, time(8, 0)), 20, "Stretch"))

        model = engine.detect_patterns(aggregate(activities, 30, TODAY))

        assert model.habit_sequences == []


# ─────────────────────────────────────────────────────────────────────────────
# Insights & Strength Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestInsightsAndStrength:
    """Tests for dashboard summaries."""

    def test_format_hour(self):
        assert format_hour(0) == "12:00 AM"
        assert format_hour(7) == "7:00 AM"
        assert format_hour(12) == "12:00 PM"
        assert format_hour(18) == "6:00 PM"

    def test_insights_for_regular_habit(self, engine, morning_health_series):
        model = engine.detect_patterns(morning_health_series)
        insights = engine.pattern_insights(model, {"health": "Physical Health"})
        types = [i.type for i in insights]

        assert "consistent_habits" in types
        assert "peak_times" in types
        consistent = insights[types.index("consistent_habits")]
        assert "Physical Health" in consistent.message

    def test_strength_is_bounded(self, engine, morning_health_series):
        strength = engine.pattern_strength(engine.detect_patterns(morning_health_series))

        assert 0 <= strength.overall_strength <= 100
        # one fully consistent band, one daily stable category
        assert strength.overall_strength == 100

    def test_strength_without_activity_is_zero(self, engine):
        strength = engine.pattern_strength(engine.detect_patterns(aggregate([], 30, TODAY)))

        assert strength.overall_strength == 0


class TestIdempotence:
    """Same input, same model."""

    def test_detection_is_repeatable(self, engine, morning_health_series):
        first = engine.detect_patterns(morning_health_series, analyzed_at=FIXED_NOW)
        second = engine.detect_patterns(morning_health_series, analyzed_at=FIXED_NOW)

        assert first.model_dump_json() == second.model_dump_json()
