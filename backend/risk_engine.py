"""
Habit degradation risk scoring and the alert lifecycle
"""

from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from config import AnalysisPolicy
from errors import InsufficientDataError, InvalidAlertError
from logging_config import get_logger
from models import (
    Alert, AlertActionData, AlertStats, AlertType, Category, DailySeries,
    InterventionStep, Priority, RiskLevel, RiskPrediction, RiskSummary,
)

logger = get_logger(__name__)

ALERT_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)
RECENT_ALERT_DAYS = 7


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(max(value, low), high)


def percent_change(earlier: float, recent: float) -> float:
    if earlier == 0:
        return 100.0 if recent > 0 else 0.0
    return round((recent - earlier) / earlier * 100, 1)


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class RiskEngine:
    """
    Scores each category for the risk of a habit breaking.

    The window is split into an earlier and a recent half; the score combines
    the drop in frequency and duration, missed days in the recent half and
    the time since the last session.
    """

    def __init__(self, policy: Optional[AnalysisPolicy] = None):
        self.policy = policy or AnalysisPolicy()

    # ==================== SCORING ====================

    def assess_risk(self, series: DailySeries, category: Category, today: date) -> RiskPrediction:
        half = len(series.dates) // 2
        if half == 0:
            raise InsufficientDataError("window too short to compare halves")

        # Odd windows drop the oldest day so both halves are equal
        recent_dates = series.dates[-half:]
        earlier_dates = series.dates[-2 * half:-half]

        total = sum(series.category_counts(category.id))
        if total < self.policy.min_activities_for_risk:
            raise InsufficientDataError(
                f"{category.name} has {total} activities, need {self.policy.min_activities_for_risk}"
            )

        earlier_count = sum(series.counts[d].get(category.id, 0) for d in earlier_dates)
        recent_count = sum(series.counts[d].get(category.id, 0) for d in recent_dates)
        frequency_trend = percent_change(earlier_count, recent_count)

        earlier_set, recent_set = set(earlier_dates), set(recent_dates)
        events = series.category_events(category.id)
        earlier_duration = _mean([e.duration_minutes for e in events if e.day in earlier_set])
        recent_duration = _mean([e.duration_minutes for e in events if e.day in recent_set])
        duration_trend = None
        if earlier_duration is not None and recent_duration is not None:
            duration_trend = percent_change(earlier_duration, recent_duration)

        active_recent = sum(1 for d in recent_dates if series.counts[d].get(category.id, 0) > 0)
        consistency = int(round(100 * active_recent / half))

        last_active = max(series.active_days(category.id))
        days_since = max((today - last_active).days, 0)

        terms = self._score_terms(frequency_trend, duration_trend, consistency, days_since)
        risk_score = int(round(_clamp(sum(terms.values()))))
        risk_level = self.risk_level(risk_score)

        return RiskPrediction(
            category_id=category.id,
            category_name=category.name,
            frequency_trend_pct=frequency_trend,
            duration_trend_pct=duration_trend,
            consistency_score=consistency,
            days_since_last_activity=days_since,
            risk_score=risk_score,
            risk_level=risk_level,
            recommendations=self.recommendations(category.name, risk_level, terms),
            message=self.message(category.name, frequency_trend, days_since, risk_score),
        )

    def _score_terms(
        self,
        frequency_trend: float,
        duration_trend: Optional[float],
        consistency: int,
        days_since: int,
    ) -> dict:
        weights = self.policy.risk_weights
        return {
            "frequency": weights["frequency"] * _clamp(-frequency_trend),
            "duration": weights["duration"] * _clamp(-(duration_trend or 0.0)),
            "consistency": weights["consistency"] * _clamp(100 - consistency),
            "recency": weights["recency"] * _clamp(days_since * self.policy.recency_points_per_day),
        }

    def risk_level(self, risk_score: int) -> RiskLevel:
        if risk_score >= self.policy.critical_risk_score:
            return RiskLevel.CRITICAL
        if risk_score >= self.policy.high_risk_score:
            return RiskLevel.HIGH
        if risk_score >= self.policy.medium_risk_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def assess_all(self, series: DailySeries, categories: Iterable[Category], today: date) -> List[RiskPrediction]:
        """Assess each category on its own; categories without enough data are skipped"""
        predictions = []
        for category in categories:
            try:
                predictions.append(self.assess_risk(series, category, today))
            except InsufficientDataError as e:
                logger.debug("risk_skipped", category_id=category.id, reason=str(e))
        predictions.sort(key=lambda p: (-p.risk_score, p.category_id))
        return predictions

    def recommendations(self, category_name: str, risk_level: RiskLevel, terms: dict) -> List[str]:
        name = category_name.lower()
        catalog = {
            "recency": f"Schedule a {name} session today",
            "frequency": f"Pick a fixed time slot for {name} and protect it this week",
            "duration": "Rebuild your session length gradually, starting shorter than before",
            "consistency": f"Anchor {name} to a routine you already keep every day",
        }
        dominant = sorted((t for t, v in terms.items() if v > 0), key=lambda t: -terms[t])

        recommendations = [catalog[t] for t in dominant[:3]]
        if risk_level == RiskLevel.CRITICAL:
            recommendations.append("Start with just 10-15 minutes to rebuild momentum")
            recommendations.append("Set a daily reminder for this habit")
        if not recommendations:
            recommendations.append(f"Keep up your {name} routine")
        return recommendations

    @staticmethod
    def message(category_name: str, frequency_trend: float, days_since: int, risk_score: int) -> str:
        message = f"Your {category_name.lower()} activity "
        if frequency_trend < -30:
            message += f"has dropped significantly ({abs(frequency_trend):.0f}%) "
        elif frequency_trend < -15:
            message += f"has decreased ({abs(frequency_trend):.0f}%) "
        else:
            message += "shows concerning patterns "
        if days_since > 1:
            message += f"and it's been {days_since} days since your last session. "
        message += f"Habit break risk: {risk_score}%."
        return message

    @staticmethod
    def risk_summary(predictions: List[RiskPrediction]) -> RiskSummary:
        average = sum(p.risk_score for p in predictions) / len(predictions) if predictions else 0.0
        return RiskSummary(
            total_categories=len(predictions),
            critical_risk=sum(1 for p in predictions if p.risk_level == RiskLevel.CRITICAL),
            high_risk=sum(1 for p in predictions if p.risk_level == RiskLevel.HIGH),
            medium_risk=sum(1 for p in predictions if p.risk_level == RiskLevel.MEDIUM),
            average_risk_score=round(average, 1),
        )

    # ==================== ALERTS ====================

    @staticmethod
    def build_alert(prediction: RiskPrediction, now: datetime) -> Alert:
        return Alert(
            type=AlertType.HABIT_DEGRADATION,
            category_id=prediction.category_id,
            title=f"{prediction.category_name} Habit at Risk",
            message=prediction.message,
            action_data=AlertActionData(**prediction.model_dump()),
            created_at=now,
        )

    def sync_alerts(
        self,
        predictions: Iterable[RiskPrediction],
        existing: Iterable[Alert],
        now: datetime,
    ) -> List[Alert]:
        """
        New alerts for high and critical predictions.

        At most one unread alert exists per (type, category); a category that
        already has one gets nothing new.
        """
        open_keys = {(a.type, a.category_id) for a in existing if not a.read}
        alerts = []
        for prediction in predictions:
            if prediction.risk_level not in ALERT_LEVELS:
                continue
            key = (AlertType.HABIT_DEGRADATION, prediction.category_id)
            if key in open_keys:
                continue
            open_keys.add(key)
            alerts.append(self.build_alert(prediction, now))
        return alerts

    @staticmethod
    def mark_read(alert: Alert) -> Alert:
        if alert.read:
            return alert
        return alert.model_copy(update={"read": True})

    @staticmethod
    def interventions(category_name: str, risk_level: RiskLevel, recommendations: List[str]) -> List[InterventionStep]:
        name = category_name.lower()
        steps = [
            InterventionStep(type="immediate", title="Quick Win",
                             description=f"Do just 5 minutes of {name} right now", priority=Priority.HIGH),
            InterventionStep(type="schedule", title="Schedule It",
                             description=f"Block time in your calendar for {name} this week", priority=Priority.MEDIUM),
            InterventionStep(type="environment", title="Prepare Your Space",
                             description=f"Set up your environment to make {name} easier", priority=Priority.MEDIUM),
        ]

        if risk_level == RiskLevel.CRITICAL:
            steps += [
                InterventionStep(type="accountability", title="Get Support",
                                 description="Tell someone about your commitment to restart this habit",
                                 priority=Priority.HIGH),
                InterventionStep(type="reduce_friction", title="Make It Easier",
                                 description="Identify and remove barriers that are preventing you from starting",
                                 priority=Priority.HIGH),
            ]
        elif risk_level == RiskLevel.HIGH:
            steps += [
                InterventionStep(type="habit_stack", title="Habit Stacking",
                                 description=f"Link {name} to an existing strong habit", priority=Priority.MEDIUM),
                InterventionStep(type="reminder", title="Set Reminders",
                                 description="Create visual or digital reminders for this habit",
                                 priority=Priority.MEDIUM),
            ]
        elif risk_level == RiskLevel.MEDIUM:
            steps += [
                InterventionStep(type="review", title="Review Your Why",
                                 description=f"Reconnect with why {name} is important to you", priority=Priority.LOW),
                InterventionStep(type="adjust", title="Adjust Expectations",
                                 description="Consider if your current approach needs modification",
                                 priority=Priority.LOW),
            ]

        for recommendation in recommendations:
            steps.append(InterventionStep(type="recommendation", title="Recommended",
                                          description=recommendation, priority=Priority.MEDIUM))
        return steps

    def trigger_intervention(self, alert: Alert, now: datetime) -> Tuple[Alert, List[InterventionStep]]:
        """
        Attach intervention steps to a degradation alert.

        Triggering twice returns the steps stored the first time. Read state
        is left alone.
        """
        if alert.type != AlertType.HABIT_DEGRADATION or alert.action_data is None:
            raise InvalidAlertError(f"Alert {alert.id} does not support interventions")

        if alert.action_data.intervention_triggered:
            return alert, alert.action_data.intervention_steps

        data = alert.action_data
        steps = self.interventions(data.category_name, data.risk_level, data.recommendations)
        updated = alert.model_copy(update={
            "action_data": data.model_copy(update={
                "intervention_triggered": True,
                "intervention_steps": steps,
                "intervention_date": now,
            }),
        })
        return updated, steps

    @staticmethod
    def alert_stats(alerts: List[Alert], now: datetime) -> AlertStats:
        recent_since = now - timedelta(days=RECENT_ALERT_DAYS)
        return AlertStats(
            total=len(alerts),
            unread=sum(1 for a in alerts if not a.read),
            habit_alerts=sum(1 for a in alerts if a.type == AlertType.HABIT_DEGRADATION),
            recent_alerts=sum(1 for a in alerts if a.created_at >= recent_since),
        )
