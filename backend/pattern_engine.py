"""
Behavioral pattern recognition and proactive suggestions
"""

from collections import Counter, defaultdict
from datetime import datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from config import AnalysisPolicy
from logging_config import get_logger
from models import (
    ActionType, ActivityRecord, CategoryPattern, DailyPattern, DailySeries,
    DeviationType, HabitSequence, PatternDeviation, PatternFrequency,
    PatternInsight, PatternModel, PatternStrength, Priority, Suggestion,
    SuggestionStats, SuggestionTiming, SuggestionType, Trend,
    WeekdayCategoryPattern, WeeklyPatterns,
)
from utils import to_local_naive

logger = get_logger(__name__)

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

PRIORITY_ORDER = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


def format_hour(hour: int) -> str:
    period = "PM" if hour >= 12 else "AM"
    display_hour = 12 if hour % 12 == 0 else hour % 12
    return f"{display_hour}:00 {period}"


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _logged_today(activities: Iterable[ActivityRecord], now: datetime) -> List[ActivityRecord]:
    return [a for a in activities if a.start_time.date() == now.date() and a.start_time <= now]


def _percent(part: int, total: int) -> int:
    return int(round(100 * part / total)) if total else 0


class PatternEngine:
    """
    Mines temporal regularities from a DailySeries and turns them into
    time-sensitive suggestions.

    Produces:
    - time-of-day band patterns (preferred categories, peak hours, consistency)
    - weekday patterns
    - per-category frequency, duration and trend
    - same-day activity sequences
    """

    def __init__(self, policy: Optional[AnalysisPolicy] = None):
        self.policy = policy or AnalysisPolicy()

    # ==================== PATTERN DETECTION ====================

    def detect_patterns(
        self,
        series: DailySeries,
        category_names: Optional[Dict[str, str]] = None,
        analyzed_at: Optional[datetime] = None,
    ) -> PatternModel:
        """Build a complete PatternModel from the aggregated series."""
        model = PatternModel(
            daily_patterns=self.daily_patterns(series),
            weekly_patterns=self.weekly_patterns(series),
            category_patterns=self.category_patterns(series, category_names),
            habit_sequences=self.habit_sequences(series),
            window_days=series.window_days,
            data_points=len(series.events),
            last_analyzed=analyzed_at or datetime.now(),
        )
        logger.debug(
            "patterns_detected",
            categories=len(model.category_patterns),
            sequences=len(model.habit_sequences),
            window_days=series.window_days,
        )
        return model

    def daily_patterns(self, series: DailySeries) -> Dict[str, DailyPattern]:
        """
        Partition the day into bands and describe each one.

        peak_hours are band hours whose activity count reaches peak_hour_ratio
        of the band maximum; consistency is the share of window days with at
        least one activity starting inside the band.
        """
        patterns = {}
        for period, (first_hour, last_hour) in self.policy.day_periods.items():
            band = range(first_hour, last_hour + 1)
            band_events = [e for e in series.events if e.start_hour in band]

            hours_by_category = defaultdict(float)
            for event in band_events:
                if event.category_id is not None:
                    hours_by_category[event.category_id] += event.duration_minutes / 60
            ranked = sorted(
                (c for c, h in hours_by_category.items() if h > 0),
                key=lambda c: (-hours_by_category[c], c),
            )

            band_counts = {h: series.hour_histogram.get(h, 0) for h in band}
            band_max = max(band_counts.values(), default=0)
            peak_hours = []
            if band_max > 0:
                peak_hours = [h for h in band if band_counts[h] >= self.policy.peak_hour_ratio * band_max]

            active_days = {e.day for e in band_events}
            patterns[period] = DailyPattern(
                preferred_categories=ranked[:self.policy.preferred_categories_top_n],
                peak_hours=peak_hours,
                consistency=round(len(active_days) / series.window_days, 4),
            )
        return patterns

    def weekly_patterns(self, series: DailySeries) -> WeeklyPatterns:
        totals_by_weekday = defaultdict(list)
        for d in series.dates:
            totals_by_weekday[d.weekday()].append(series.daily_totals[d])

        day_averages = {
            WEEKDAYS[i]: round(_mean(totals_by_weekday[i]), 4)
            for i in sorted(totals_by_weekday)
        }

        weekday_counts = [series.daily_totals[d] for d in series.dates if d.weekday() < 5]
        weekend_counts = [series.daily_totals[d] for d in series.dates if d.weekday() >= 5]

        most_active = least_active = None
        if sum(series.total_counts()) > 0:
            # max/min keep the first (Monday-first) day on ties
            most_active = max(day_averages.items(), key=lambda kv: kv[1])[0]
            least_active = min(day_averages.items(), key=lambda kv: kv[1])[0]

        return WeeklyPatterns(
            most_active_day=most_active,
            least_active_day=least_active,
            weekday_avg=round(_mean(weekday_counts), 4),
            weekend_avg=round(_mean(weekend_counts), 4),
            day_averages=day_averages,
            category_weekdays=self._category_weekdays(series),
        )

    def _category_weekdays(self, series: DailySeries) -> List[WeekdayCategoryPattern]:
        dates_by_weekday = defaultdict(list)
        for d in series.dates:
            dates_by_weekday[d.weekday()].append(d)

        patterns = []
        for category_id in series.categories:
            for weekday, dates in sorted(dates_by_weekday.items()):
                occurrences = sum(1 for d in dates if series.counts[d].get(category_id, 0) > 0)
                if occurrences < self.policy.min_pattern_occurrences:
                    continue
                patterns.append(WeekdayCategoryPattern(
                    category_id=category_id,
                    weekday=WEEKDAYS[weekday],
                    occurrences=occurrences,
                    frequency=round(occurrences / len(dates), 4),
                ))

        patterns.sort(key=lambda p: (-p.frequency, p.category_id, WEEKDAYS.index(p.weekday)))
        return patterns

    def category_patterns(
        self,
        series: DailySeries,
        category_names: Optional[Dict[str, str]] = None,
    ) -> Dict[str, CategoryPattern]:
        names = category_names or {}
        patterns = {}
        for category_id in series.categories:
            active_days = series.active_days(category_id)
            if not active_days:
                continue

            events = series.category_events(category_id)
            ratio = len(active_days) / series.window_days
            if ratio >= self.policy.daily_frequency_ratio:
                frequency = PatternFrequency.DAILY
            elif ratio >= self.policy.weekly_frequency_ratio:
                frequency = PatternFrequency.WEEKLY
            else:
                frequency = PatternFrequency.RARE

            hour_counts = Counter(e.start_hour for e in events)
            peak_hour = min(hour_counts, key=lambda h: (-hour_counts[h], h))

            patterns[category_id] = CategoryPattern(
                category_id=category_id,
                category_name=names.get(category_id),
                frequency=frequency,
                avg_duration_minutes=round(_mean([e.duration_minutes for e in events]), 2),
                trend=self.trend(series.category_hours(category_id)),
                consistency=round(ratio, 4),
                active_days=len(active_days),
                peak_hour=peak_hour,
            )
        return patterns

    def trend(self, values: List[float]) -> Trend:
        """Compare the most recent third of a daily series against the earliest third."""
        third = len(values) // 3
        if third == 0:
            return Trend.STABLE

        earliest = _mean(values[:third])
        recent = _mean(values[-third:])
        if earliest == 0:
            return Trend.INCREASING if recent > 0 else Trend.STABLE

        change = (recent - earliest) / earliest
        if change >= self.policy.trend_change_ratio:
            return Trend.INCREASING
        if change <= -self.policy.trend_change_ratio:
            return Trend.DECREASING
        return Trend.STABLE

    def habit_sequences(self, series: DailySeries) -> List[HabitSequence]:
        """
        Count adjacent same-day activity pairs keyed by description.

        frequency = occurrences of (X, Y) / number of days on which X occurred.
        """
        by_day = defaultdict(list)
        for event in series.events:
            by_day[event.day].append(event)

        pair_counts = Counter()
        successor_category = {}
        days_with = defaultdict(set)

        for day in sorted(by_day):
            day_events = by_day[day]
            for event in day_events:
                if event.description:
                    days_with[event.description].add(day)
            for current, following in zip(day_events, day_events[1:]):
                if not current.description or not following.description:
                    continue
                if current.description == following.description:
                    continue
                key = (current.description, following.description)
                pair_counts[key] += 1
                successor_category[key] = following.category_id

        sequences = []
        for key, occurrences in pair_counts.items():
            frequency = min(occurrences / len(days_with[key[0]]), 1.0)
            if frequency < self.policy.min_sequence_frequency:
                continue
            if occurrences < self.policy.min_pattern_occurrences:
                continue
            sequences.append(HabitSequence(
                sequence=list(key),
                frequency=round(frequency, 4),
                occurrences=occurrences,
                category_id=successor_category[key],
            ))

        sequences.sort(key=lambda s: (-s.frequency, -s.occurrences, s.sequence))
        return sequences

    # ==================== SUGGESTIONS ====================

    def _priority(self, confidence: float) -> Priority:
        if confidence >= self.policy.high_priority_confidence:
            return Priority.HIGH
        if confidence >= self.policy.medium_priority_confidence:
            return Priority.MEDIUM
        return Priority.LOW

    def _suggestion(
        self,
        type_: SuggestionType,
        category_id: Optional[str],
        title: str,
        message: str,
        confidence: float,
        timing: SuggestionTiming,
        action_type: ActionType,
        now: datetime,
    ) -> Suggestion:
        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        expiry_hours = self.policy.suggestion_expiry_hours.get(timing.value, 8)
        return Suggestion(
            category_id=category_id,
            type=type_,
            title=title,
            message=message,
            priority=self._priority(confidence),
            confidence=confidence,
            timing=timing,
            action_type=action_type,
            created_at=now,
            expires_at=now + timedelta(hours=expiry_hours),
        )

    def generate_suggestions(
        self,
        model: PatternModel,
        now: datetime,
        todays_activities: Iterable[ActivityRecord],
        existing: Iterable[Suggestion] = (),
        category_names: Optional[Dict[str, str]] = None,
    ) -> List[Suggestion]:
        """
        Derive time-sensitive suggestions for the current moment.

        todays_activities may contain anything recent; only what was logged
        today before now is considered. Existing unexpired, unread suggestions
        block new ones of the same (type, category).
        """
        now = to_local_naive(now)
        today = _logged_today(todays_activities, now)
        logged_categories = {a.category_id for a in today if a.category_id is not None}
        names = category_names or {}

        def name_of(category_id: Optional[str]) -> str:
            if category_id is None:
                return "activity"
            pattern = model.category_patterns.get(category_id)
            return names.get(category_id) or (pattern.category_name if pattern else None) or category_id

        candidates = []

        for seq in model.habit_sequences:
            first, second = seq.sequence[0], seq.sequence[1]
            predecessor_times = [a.start_time for a in today if a.description == first]
            if not predecessor_times:
                continue
            last_predecessor = max(predecessor_times)
            if any(a.description == second and a.start_time >= last_predecessor for a in today):
                continue
            candidates.append(self._suggestion(
                SuggestionType.SEQUENCE_SUGGESTION,
                seq.category_id,
                f"Next up: {second}?",
                f"After {first}, you often do {second}. Ready for the next activity?",
                seq.frequency,
                SuggestionTiming.SEQUENCE,
                ActionType.LOG_ACTIVITY,
                now,
            ))

        lead = timedelta(minutes=self.policy.upcoming_lead_minutes)
        grace = timedelta(minutes=self.policy.resumption_grace_minutes)
        for category_id in sorted(model.category_patterns):
            pattern = model.category_patterns[category_id]
            if pattern.frequency != PatternFrequency.DAILY or pattern.peak_hour is None:
                continue
            if category_id in logged_categories:
                continue

            name = name_of(category_id)
            peak_start = datetime.combine(now.date(), time(hour=pattern.peak_hour))
            until_peak = peak_start - now
            if timedelta(0) < until_peak <= lead:
                minutes = int(until_peak.total_seconds() // 60)
                candidates.append(self._suggestion(
                    SuggestionType.UPCOMING_HABIT,
                    category_id,
                    f"Upcoming: {name}",
                    f"You usually do {name.lower()} around {format_hour(pattern.peak_hour)}, "
                    f"about {minutes} minutes from now. Want to prepare?",
                    pattern.consistency,
                    SuggestionTiming.UPCOMING,
                    ActionType.PREPARE_ACTIVITY,
                    now,
                ))
            elif now >= peak_start + grace:
                candidates.append(self._suggestion(
                    SuggestionType.HABIT_RESUMPTION,
                    category_id,
                    f"Time for {name}?",
                    f"You usually do {name.lower()} around {format_hour(pattern.peak_hour)}. "
                    f"Would you like to log this activity now?",
                    pattern.consistency,
                    SuggestionTiming.IMMEDIATE,
                    ActionType.LOG_ACTIVITY,
                    now,
                ))

        weekday = WEEKDAYS[now.weekday()]
        for weekly in model.weekly_patterns.category_weekdays:
            if weekly.weekday != weekday or weekly.category_id in logged_categories:
                continue
            pattern = model.category_patterns.get(weekly.category_id)
            if pattern is not None and pattern.frequency == PatternFrequency.DAILY:
                continue
            name = name_of(weekly.category_id)
            candidates.append(self._suggestion(
                SuggestionType.WEEKLY_HABIT,
                weekly.category_id,
                f"{weekday} {name}",
                f"You often do {name.lower()} on {weekday}s. Don't forget!",
                weekly.frequency,
                SuggestionTiming.WEEKLY,
                ActionType.REMINDER,
                now,
            ))

        taken = {(s.type, s.category_id) for s in existing if s.is_active(now)}
        suggestions = []
        for suggestion in candidates:
            key = (suggestion.type, suggestion.category_id)
            if key in taken:
                continue
            taken.add(key)
            suggestions.append(suggestion)

        suggestions.sort(key=lambda s: (PRIORITY_ORDER[s.priority], -s.confidence))
        return suggestions[:self.policy.max_suggestions]

    @staticmethod
    def suggestion_stats(suggestions: Iterable[Suggestion], now: datetime, days: int = 7) -> SuggestionStats:
        """Acted-on and dismissed shares of the suggestions created in the last days"""
        since = now - timedelta(days=days)
        recent = [s for s in suggestions if s.created_at >= since]
        acted_on = sum(1 for s in recent if s.acted_on)
        dismissed = sum(1 for s in recent if s.read and not s.acted_on)
        return SuggestionStats(
            total=len(recent),
            acted_on=acted_on,
            dismissed=dismissed,
            action_rate=_percent(acted_on, len(recent)),
            dismissal_rate=_percent(dismissed, len(recent)),
            days=days,
        )

    # ==================== DEVIATIONS ====================

    def detect_deviations(
        self,
        model: PatternModel,
        now: datetime,
        todays_activities: Iterable[ActivityRecord],
        category_names: Optional[Dict[str, str]] = None,
    ) -> List[PatternDeviation]:
        """
        Compare what was logged today against the established habits.

        missed_pattern: a daily habit whose peak hour ended more than the
        resumption grace ago with nothing logged near it today.
        unusual_timing: an activity logged more than deviation_window_hours
        away from its category's usual hour. Rare categories have no usual hour.
        """
        now = to_local_naive(now)
        today = _logged_today(todays_activities, now)
        names = category_names or {}
        window = self.policy.deviation_window_hours
        grace = timedelta(minutes=self.policy.resumption_grace_minutes)

        deviations = []
        for category_id in sorted(model.category_patterns):
            pattern = model.category_patterns[category_id]
            if pattern.frequency != PatternFrequency.DAILY or pattern.peak_hour is None:
                continue
            peak_start = datetime.combine(now.date(), time(hour=pattern.peak_hour))
            if now < peak_start + grace:
                continue
            if any(a.category_id == category_id and abs(a.start_time.hour - pattern.peak_hour) <= window
                   for a in today):
                continue
            name = names.get(category_id) or pattern.category_name or category_id
            deviations.append(PatternDeviation(
                type=DeviationType.MISSED_PATTERN,
                category_id=category_id,
                category_name=name,
                expected_hour=pattern.peak_hour,
                confidence=pattern.consistency,
                message=f"You usually do {name.lower()} around {format_hour(pattern.peak_hour)}",
            ))

        for activity in today:
            pattern = model.category_patterns.get(activity.category_id) if activity.category_id else None
            if pattern is None or pattern.peak_hour is None or pattern.frequency == PatternFrequency.RARE:
                continue
            hour = activity.start_time.hour
            if abs(hour - pattern.peak_hour) <= window:
                continue
            name = names.get(pattern.category_id) or pattern.category_name or pattern.category_id
            deviations.append(PatternDeviation(
                type=DeviationType.UNUSUAL_TIMING,
                category_id=pattern.category_id,
                category_name=name,
                expected_hour=pattern.peak_hour,
                actual_hour=hour,
                confidence=pattern.consistency,
                message=(f"Unusual time for {name.lower()} - you typically do this around "
                         f"{format_hour(pattern.peak_hour)}"),
            ))

        return deviations

    # ==================== INSIGHTS ====================

    def pattern_insights(
        self,
        model: PatternModel,
        category_names: Optional[Dict[str, str]] = None,
    ) -> List[PatternInsight]:
        """Dashboard-level summaries of the stored pattern model"""
        names = category_names or {}
        insights = []

        consistent = sorted(
            (p for p in model.category_patterns.values() if p.consistency > 0.5),
            key=lambda p: (-p.consistency, p.category_id),
        )[:3]
        if consistent:
            labels = [names.get(p.category_id) or p.category_name or p.category_id for p in consistent]
            insights.append(PatternInsight(
                type="consistent_habits",
                title="Your Most Consistent Habits",
                message=f"You're most consistent with {', '.join(labels)}",
                data=[p.model_dump(mode="json") for p in consistent],
            ))

        peak_hours = []
        for period, pattern in model.daily_patterns.items():
            for hour in pattern.peak_hours:
                peak_hours.append({"period": period, "hour": hour})
        if peak_hours:
            shown = peak_hours[:3]
            insights.append(PatternInsight(
                type="peak_times",
                title="Your Peak Activity Times",
                message=f"You're most active around {', '.join(format_hour(p['hour']) for p in shown)}",
                data=peak_hours,
            ))

        top_sequences = model.habit_sequences[:3]
        if top_sequences:
            first, second = top_sequences[0].sequence
            insights.append(PatternInsight(
                type="activity_sequences",
                title="Your Activity Patterns",
                message=f"You often follow {first} with {second}",
                data=[s.model_dump(mode="json") for s in top_sequences],
            ))

        return insights

    def pattern_strength(self, model: PatternModel) -> PatternStrength:
        """
        overall_strength (0-100) weighs band consistency, category consistency
        and how many categories are holding steady or growing.
        """
        active_bands = [p.consistency for p in model.daily_patterns.values() if p.consistency > 0]
        categories = list(model.category_patterns.values())

        band_consistency = _mean(active_bands)
        category_consistency = _mean([p.consistency for p in categories])
        trend_stability = 0.0
        if categories:
            trend_stability = sum(1 for p in categories if p.trend != Trend.DECREASING) / len(categories)

        score = (
            self.policy.strength_band_weight * band_consistency
            + self.policy.strength_category_weight * category_consistency
            + self.policy.strength_stability_weight * trend_stability
        )
        return PatternStrength(
            overall_strength=int(round(min(max(score, 0.0), 1.0) * 100)),
            band_consistency=round(band_consistency, 4),
            category_consistency=round(category_consistency, 4),
            trend_stability=round(trend_stability, 4),
        )
