"""
Analysis orchestration: runs the engines for a user and exposes the query
surface the API is built on.
"""

import threading
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional

from aggregator import aggregate
from config import AnalysisPolicy
from correlation_engine import (
    CorrelationEngine, category_correlations, correlation_matrix, correlation_summary,
)
from errors import AlertNotFoundError, ConflictError, InvalidCategoryError
from logging_config import get_logger
from models import (
    ActivityRecord, Alert, AlertStats, AlertType, AnalysisRunResult, Correlation,
    CorrelationAnalysis, CorrelationInsight, CorrelationPrediction, CorrelationSummary,
    InterventionStep, PatternDeviations, PatternInsight, PatternModel, PatternStrength,
    RiskAnalysis, RiskLevel, RiskPrediction, Suggestion, SuggestionStats, SuggestionType,
)
from pattern_engine import PatternEngine
from risk_engine import RiskEngine
from store import AnalyticsStore
from utils import now_local

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 3
RECENT_ALERTS_SHOWN = 5


def local_clock() -> datetime:
    return now_local().replace(tzinfo=None)


class AnalysisService:
    """
    Runs pattern, correlation and risk analysis for one user at a time.

    Runs for the same user are serialized; different users run concurrently.
    A failure in one engine leaves that engine's previous snapshot in place
    and does not stop the others.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        policy: Optional[AnalysisPolicy] = None,
        clock: Callable[[], datetime] = local_clock,
    ):
        self.store = store
        self.policy = policy or AnalysisPolicy()
        self.clock = clock

        self.patterns = PatternEngine(self.policy)
        self.correlations = CorrelationEngine(self.policy)
        self.risk = RiskEngine(self.policy)

        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            if user_id not in self._locks:
                self._locks[user_id] = threading.Lock()
            return self._locks[user_id]

    def _snapshot(self, user_id: str, now: datetime):
        categories = self.store.list_categories(user_id)
        longest = max(
            self.policy.pattern_window_days,
            self.policy.correlation_window_days,
            self.policy.risk_window_days,
        )
        since = datetime.combine(now.date() - timedelta(days=longest - 1), time.min)
        activities = self.store.list_activities(user_id, since)
        return categories, activities

    # ==================== FULL RUN ====================

    def run_analysis(self, user_id: str) -> AnalysisRunResult:
        """Run every engine over one snapshot of the user's activity"""
        with self._user_lock(user_id):
            now = self.clock()
            categories, activities = self._snapshot(user_id, now)
            names = {c.id: c.name for c in categories}
            result = AnalysisRunResult(user_id=user_id, started_at=now)

            logger.info(
                "analysis_started",
                user_id=user_id,
                activities=len(activities),
                categories=len(categories),
            )

            try:
                result.pattern_model = self._run_patterns(user_id, activities, names, now)
            except Exception as e:
                logger.exception("engine_failed", engine="patterns", user_id=user_id)
                result.errors["patterns"] = str(e)

            if result.pattern_model is not None:
                try:
                    result.suggestions_created = self._run_suggestions(
                        user_id, result.pattern_model, activities, names, now
                    )
                except Exception as e:
                    logger.exception("engine_failed", engine="suggestions", user_id=user_id)
                    result.errors["suggestions"] = str(e)

            try:
                result.correlation_analysis = self._run_correlations(user_id, activities, names, now)
            except Exception as e:
                logger.exception("engine_failed", engine="correlations", user_id=user_id)
                result.errors["correlations"] = str(e)

            try:
                predictions = self._assess(categories, activities, now)
                result.risk_predictions = predictions
                result.alerts_created = self._sync_alerts(user_id, predictions, now)
            except Exception as e:
                logger.exception("engine_failed", engine="risk", user_id=user_id)
                result.errors["risk"] = str(e)

            logger.info(
                "analysis_finished",
                user_id=user_id,
                suggestions=result.suggestions_created,
                alerts=result.alerts_created,
                failed_engines=sorted(result.errors),
            )
            return result

    def _run_patterns(self, user_id: str, activities: List[ActivityRecord], names: Dict[str, str],
                      now: datetime) -> PatternModel:
        series = aggregate(activities, self.policy.pattern_window_days, now.date(), names.keys())
        model = self.patterns.detect_patterns(series, names, now)
        self.store.save_pattern_model(user_id, model)
        return model

    def _run_suggestions(self, user_id: str, model: PatternModel, activities: List[ActivityRecord],
                         names: Dict[str, str], now: datetime) -> int:
        self.store.delete_expired_suggestions(user_id, now)
        existing = self.store.list_suggestions(user_id, read=False, now=now)
        suggestions = self.patterns.generate_suggestions(model, now, activities, existing, names)
        return len(self.store.upsert_suggestions(user_id, suggestions, now))

    def _run_correlations(self, user_id: str, activities: List[ActivityRecord], names: Dict[str, str],
                          now: datetime) -> CorrelationAnalysis:
        series = aggregate(activities, self.policy.correlation_window_days, now.date(), names.keys())
        analysis = self.correlations.analyze(series, activities, now, names)
        self.store.save_correlation_analysis(user_id, analysis)
        return analysis

    def _assess(self, categories, activities: List[ActivityRecord], now: datetime) -> List[RiskPrediction]:
        series = aggregate(activities, self.policy.risk_window_days, now.date(), [c.id for c in categories])
        return self.risk.assess_all(series, categories, now.date())

    def _sync_alerts(self, user_id: str, predictions: List[RiskPrediction], now: datetime) -> int:
        open_alerts = self.store.list_alerts(user_id, read=False)
        created = 0
        for alert in self.risk.sync_alerts(predictions, open_alerts, now):
            if self.store.upsert_alert(user_id, alert) is not None:
                created += 1
        return created

    # ==================== PATTERNS ====================

    def analyze_patterns(self, user_id: str) -> PatternModel:
        """Recompute and store the pattern model"""
        with self._user_lock(user_id):
            now = self.clock()
            categories, activities = self._snapshot(user_id, now)
            return self._run_patterns(user_id, activities, {c.id: c.name for c in categories}, now)

    def pattern_model(self, user_id: str) -> PatternModel:
        return self.store.get_pattern_model(user_id) or self.analyze_patterns(user_id)

    def pattern_insights(self, user_id: str) -> List[PatternInsight]:
        names = {c.id: c.name for c in self.store.list_categories(user_id)}
        return self.patterns.pattern_insights(self.pattern_model(user_id), names)

    def pattern_strength(self, user_id: str) -> PatternStrength:
        return self.patterns.pattern_strength(self.pattern_model(user_id))

    def pattern_deviations(self, user_id: str) -> PatternDeviations:
        """Missed habits and off-hours activity so far today"""
        model = self.pattern_model(user_id)
        now = self.clock()
        names = {c.id: c.name for c in self.store.list_categories(user_id)}
        today = self.store.list_activities(user_id, datetime.combine(now.date(), time.min))
        return PatternDeviations(
            deviations=self.patterns.detect_deviations(model, now, today, names),
            pattern_count=len(model.category_patterns),
            last_analyzed=model.last_analyzed,
        )

    def suggestion_stats(self, user_id: str, days: int = 7) -> SuggestionStats:
        return self.patterns.suggestion_stats(self.store.list_suggestions(user_id), self.clock(), days)

    def suggestions(self, user_id: str, read: Optional[bool] = None,
                    type: Optional[SuggestionType] = None) -> List[Suggestion]:
        return self.store.list_suggestions(user_id, read=read, type=type, now=self.clock())

    def act_on_suggestion(self, user_id: str, suggestion_id: str) -> Suggestion:
        suggestion = self.store.get_suggestion(user_id, suggestion_id)
        if suggestion.acted_on and suggestion.read:
            return suggestion
        return self.store.update_suggestion(
            user_id, suggestion.model_copy(update={"acted_on": True, "read": True})
        )

    def dismiss_suggestion(self, user_id: str, suggestion_id: str) -> Suggestion:
        suggestion = self.store.get_suggestion(user_id, suggestion_id)
        if suggestion.read:
            return suggestion
        return self.store.update_suggestion(user_id, suggestion.model_copy(update={"read": True}))

    # ==================== CORRELATIONS ====================

    def analyze_correlations(self, user_id: str) -> CorrelationAnalysis:
        with self._user_lock(user_id):
            now = self.clock()
            categories, activities = self._snapshot(user_id, now)
            return self._run_correlations(user_id, activities, {c.id: c.name for c in categories}, now)

    def correlation_analysis(self, user_id: str) -> CorrelationAnalysis:
        return self.store.get_correlation_analysis(user_id) or self.analyze_correlations(user_id)

    def correlation_summary(self, user_id: str) -> CorrelationSummary:
        return correlation_summary(self.store.get_correlation_analysis(user_id))

    def correlation_matrix(self, user_id: str, full: bool = False) -> Dict[str, Dict[str, float]]:
        """
        Category x category coefficients. The full view recomputes every pair
        with no threshold; otherwise the stored analysis is used.
        """
        categories = self.store.list_categories(user_id)
        category_ids = [c.id for c in categories]
        if not full:
            return correlation_matrix(self.correlation_analysis(user_id).correlations, category_ids)

        now = self.clock()
        _, activities = self._snapshot(user_id, now)
        series = aggregate(activities, self.policy.correlation_window_days, now.date(), category_ids)
        names = {c.id: c.name for c in categories}
        correlations = self.correlations.compute_correlations(series, names, min_abs_coefficient=0.0)
        return correlation_matrix(correlations, category_ids)

    def correlation_insights(self, user_id: str) -> List[CorrelationInsight]:
        return self.correlation_analysis(user_id).insights

    def correlation_predictions(self, user_id: str) -> List[CorrelationPrediction]:
        return self.correlation_analysis(user_id).predictions

    def category_correlations(self, user_id: str, category_id: str) -> List[Correlation]:
        if category_id not in {c.id for c in self.store.list_categories(user_id)}:
            raise InvalidCategoryError(category_id)
        return category_correlations(self.correlation_analysis(user_id), category_id)

    # ==================== RISK ====================

    def risk_predictions(self, user_id: str) -> List[RiskPrediction]:
        now = self.clock()
        categories, activities = self._snapshot(user_id, now)
        return self._assess(categories, activities, now)

    def habit_predictions(self, user_id: str) -> List[RiskPrediction]:
        """Categories with at least medium risk"""
        return [p for p in self.risk_predictions(user_id) if p.risk_level != RiskLevel.LOW]

    def risk_analysis(self, user_id: str) -> RiskAnalysis:
        predictions = self.risk_predictions(user_id)
        recent = self.store.list_alerts(user_id, type=AlertType.HABIT_DEGRADATION)[:RECENT_ALERTS_SHOWN]
        return RiskAnalysis(
            predictions=predictions,
            recent_alerts=recent,
            risk_summary=self.risk.risk_summary(predictions),
            last_analyzed=self.clock(),
        )

    # ==================== ALERTS ====================

    def alerts(self, user_id: str, type: Optional[AlertType] = None, read: Optional[bool] = None) -> List[Alert]:
        return self.store.list_alerts(user_id, type=type, read=read)

    def alert_stats(self, user_id: str) -> AlertStats:
        return self.risk.alert_stats(self.store.list_alerts(user_id), self.clock())

    def create_alert(self, user_id: str, title: str, message: str, category_id: Optional[str] = None) -> Alert:
        """User-created note; several unread custom alerts may coexist"""
        alert = Alert(
            type=AlertType.CUSTOM,
            category_id=category_id,
            title=title,
            message=message,
            created_at=self.clock(),
        )
        return self.store.add_alert(user_id, alert)

    def _mutate_alert(self, user_id: str, alert_id: str, change: Callable[[Alert], Alert]) -> Alert:
        """
        Apply change to the current alert and write it back. The write is
        checked against the version that was read; when another writer got
        there first the alert is re-read and the change applied again, so the
        last writer wins without undoing the other write. A concurrent dismiss
        surfaces as AlertNotFoundError.
        """
        for attempt in range(MAX_CONFLICT_RETRIES):
            alert = self.store.get_alert(user_id, alert_id)
            updated = change(alert)
            if updated is alert:
                return alert
            try:
                return self.store.update_alert(user_id, updated)
            except ConflictError:
                logger.info("alert_update_conflict", alert_id=alert_id, attempt=attempt + 1)
        raise ConflictError(f"Alert {alert_id} kept changing during update")

    def mark_alert_read(self, user_id: str, alert_id: str) -> Alert:
        return self._mutate_alert(user_id, alert_id, self.risk.mark_read)

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        for alert in self.store.list_alerts(user_id, read=False):
            try:
                self._mutate_alert(user_id, alert.id, self.risk.mark_read)
            except AlertNotFoundError:
                continue
            count += 1
        return count

    def dismiss_alert(self, user_id: str, alert_id: str) -> None:
        self.store.delete_alert(user_id, alert_id)
        logger.debug("alert_dismissed", alert_id=alert_id, user_id=user_id)

    def trigger_intervention(self, user_id: str, alert_id: str) -> List[InterventionStep]:
        now = self.clock()
        alert = self._mutate_alert(
            user_id, alert_id, lambda a: self.risk.trigger_intervention(a, now)[0]
        )
        return alert.action_data.intervention_steps
