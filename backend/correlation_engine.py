"""
Cross-category correlation analysis

Finds pairs of categories whose daily hours move together (or against each
other) and derives insights and short-term predictions from them.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from itertools import combinations
from typing import Dict, Iterable, List, Optional

import numpy as np

from config import AnalysisPolicy
from errors import InsufficientDataError
from logging_config import get_logger
from models import (
    ActivityRecord, Correlation, CorrelationAnalysis, CorrelationDirection,
    CorrelationInsight, CorrelationPrediction, CorrelationStrength,
    CorrelationSummary, DailySeries,
)
from utils import to_local_naive

logger = get_logger(__name__)

STRENGTH_ORDER = [
    CorrelationStrength.VERY_WEAK,
    CorrelationStrength.WEAK,
    CorrelationStrength.MODERATE,
    CorrelationStrength.STRONG,
    CorrelationStrength.VERY_STRONG,
]


def classify_strength(coefficient: float, policy: Optional[AnalysisPolicy] = None) -> CorrelationStrength:
    """Band |r| by the policy's strength cutoffs"""
    cutoffs = (policy or AnalysisPolicy()).strength_cutoffs
    magnitude = abs(coefficient)
    strength = CorrelationStrength.VERY_WEAK
    for candidate in STRENGTH_ORDER[1:]:
        if magnitude >= cutoffs[candidate.value]:
            strength = candidate
    return strength


def _label(strength: CorrelationStrength) -> str:
    return strength.value.replace("_", " ")


def describe_relationship(
    name_a: str,
    name_b: str,
    coefficient: float,
    strength: Optional[CorrelationStrength] = None,
) -> str:
    label = _label(strength or classify_strength(coefficient)).capitalize()
    if coefficient >= 0:
        return (f"{label} positive relationship: when {name_a} activity increases, "
                f"{name_b} activity tends to increase as well")
    return (f"{label} negative relationship: when {name_a} activity increases, "
            f"{name_b} activity tends to decrease")


def correlation_matrix(correlations: Iterable[Correlation], category_ids: Iterable[str]) -> Dict[str, Dict[str, float]]:
    """Symmetric category x category matrix; diagonal is 1, omitted pairs are 0"""
    ids = list(category_ids)
    matrix = {a: {b: (1.0 if a == b else 0.0) for b in ids} for a in ids}
    for c in correlations:
        if c.category_a in matrix and c.category_b in matrix:
            matrix[c.category_a][c.category_b] = c.coefficient
            matrix[c.category_b][c.category_a] = c.coefficient
    return matrix


def correlation_summary(analysis: Optional[CorrelationAnalysis]) -> CorrelationSummary:
    if analysis is None:
        return CorrelationSummary(
            total_correlations=0,
            strong_correlations=0,
            insights=0,
            predictions=0,
            data_points=0,
        )

    strong = [c for c in analysis.correlations
              if c.strength in (CorrelationStrength.STRONG, CorrelationStrength.VERY_STRONG)]
    top = max(analysis.correlations, key=lambda c: abs(c.coefficient), default=None)
    return CorrelationSummary(
        total_correlations=len(analysis.correlations),
        strong_correlations=len(strong),
        top_correlation=top,
        insights=len(analysis.insights),
        predictions=len(analysis.predictions),
        data_points=analysis.data_points,
        last_analyzed=analysis.last_analyzed,
    )


def category_correlations(analysis: Optional[CorrelationAnalysis], category_id: str) -> List[Correlation]:
    """Correlations from the stored snapshot that involve one category"""
    if analysis is None:
        return []
    return [c for c in analysis.correlations if category_id in (c.category_a, c.category_b)]


class CorrelationEngine:
    """Pairwise Pearson correlation over zero-filled daily category hours"""

    def __init__(self, policy: Optional[AnalysisPolicy] = None):
        self.policy = policy or AnalysisPolicy()

    def analyze(
        self,
        series: DailySeries,
        recent_activities: Iterable[ActivityRecord],
        now: datetime,
        category_names: Optional[Dict[str, str]] = None,
    ) -> CorrelationAnalysis:
        correlations = self.compute_correlations(series, category_names)
        return CorrelationAnalysis(
            correlations=correlations,
            insights=self.derive_insights(correlations),
            predictions=self.derive_predictions(correlations, recent_activities, now),
            data_points=len(series.events),
            window_days=series.window_days,
            last_analyzed=now,
        )

    # ==================== COEFFICIENTS ====================

    def compute_correlations(
        self,
        series: DailySeries,
        category_names: Optional[Dict[str, str]] = None,
        min_abs_coefficient: Optional[float] = None,
    ) -> List[Correlation]:
        """
        Correlate every unordered category pair in the series.

        Pairs without enough data are skipped rather than given a made-up
        coefficient. Results are sorted by |r| descending.
        """
        threshold = self.policy.min_abs_coefficient if min_abs_coefficient is None else min_abs_coefficient
        names = category_names or {}

        correlations = []
        for category_a, category_b in combinations(sorted(series.categories), 2):
            try:
                correlation = self.correlate_pair(series, category_a, category_b, names)
            except InsufficientDataError as e:
                logger.debug("pair_skipped", category_a=category_a, category_b=category_b, reason=str(e))
                continue
            if abs(correlation.coefficient) >= threshold:
                correlations.append(correlation)

        correlations.sort(key=lambda c: (-abs(c.coefficient), c.category_a, c.category_b))
        return correlations

    def correlate_pair(
        self,
        series: DailySeries,
        category_a: str,
        category_b: str,
        category_names: Optional[Dict[str, str]] = None,
    ) -> Correlation:
        names = category_names or {}
        x = np.array(series.category_hours(category_a), dtype=float)
        y = np.array(series.category_hours(category_b), dtype=float)

        days_with_data = int(np.count_nonzero((x > 0) | (y > 0)))
        if days_with_data < self.policy.min_days_with_data:
            raise InsufficientDataError(
                f"only {days_with_data} days with data, need {self.policy.min_days_with_data}"
            )
        if np.std(x) == 0 or np.std(y) == 0:
            raise InsufficientDataError("constant series has no correlation")

        r = float(np.corrcoef(x, y)[0, 1])
        if not np.isfinite(r):
            raise InsufficientDataError("correlation is undefined for this pair")
        r = round(min(max(r, -1.0), 1.0), 4)
        strength = classify_strength(r, self.policy)

        name_a = names.get(category_a) or category_a
        name_b = names.get(category_b) or category_b
        return Correlation(
            category_a=category_a,
            category_b=category_b,
            category_a_name=names.get(category_a),
            category_b_name=names.get(category_b),
            coefficient=r,
            strength=strength,
            direction=CorrelationDirection.POSITIVE if r >= 0 else CorrelationDirection.NEGATIVE,
            significance=self.significance(r, days_with_data),
            data_points=len(x),
            days_with_data=days_with_data,
            average_a=round(float(x.mean()), 4),
            average_b=round(float(y.mean()), 4),
            relationship=describe_relationship(name_a, name_b, r, strength),
        )

    def significance(self, coefficient: float, sample_size: int) -> str:
        strength = classify_strength(coefficient, self.policy)
        gate = CorrelationStrength(self.policy.significance_min_strength)
        if STRENGTH_ORDER.index(strength) < STRENGTH_ORDER.index(gate):
            return "weak evidence"
        if sample_size >= self.policy.notable_sample_size:
            return "statistically notable"
        return "preliminary"

    # ==================== INSIGHTS ====================

    def _matches(self, correlation: Correlation, keywords: List[str]) -> bool:
        for name in (correlation.category_a_name or correlation.category_a,
                     correlation.category_b_name or correlation.category_b):
            lowered = name.lower()
            if any(keyword in lowered for keyword in keywords):
                return True
        return False

    def derive_insights(self, correlations: List[Correlation]) -> List[CorrelationInsight]:
        buckets = [
            (
                "strong_positive_correlations",
                "Strong Positive Correlations",
                "Activities that tend to increase together",
                [c for c in correlations if c.coefficient >= self.policy.strong_coefficient],
            ),
            (
                "strong_negative_correlations",
                "Strong Negative Correlations",
                "Activities that tend to compete with each other",
                [c for c in correlations if c.coefficient <= -self.policy.strong_coefficient],
            ),
            (
                "health_correlations",
                "Health & Wellness Connections",
                "How health activities relate to other behaviors",
                [c for c in correlations if self._matches(c, self.policy.health_keywords)],
            ),
            (
                "productivity_correlations",
                "Productivity Patterns",
                "How work and study activities connect to other habits",
                [c for c in correlations if self._matches(c, self.policy.career_keywords)],
            ),
        ]

        insights = []
        for type_, title, description, members in buckets:
            if not members:
                continue
            insights.append(CorrelationInsight(
                type=type_,
                title=title,
                description=description,
                correlations=members,
                actionable=any(abs(c.coefficient) >= self.policy.actionable_coefficient for c in members),
            ))
        return insights

    # ==================== PREDICTIONS ====================

    def derive_predictions(
        self,
        correlations: List[Correlation],
        recent_activities: Iterable[ActivityRecord],
        now: datetime,
    ) -> List[CorrelationPrediction]:
        """
        Predict movement in one category from activity logged in a correlated
        category during the lookback period.
        """
        now = to_local_naive(now)
        since = now - timedelta(hours=self.policy.prediction_lookback_hours)

        recent_hours = defaultdict(float)
        for activity in recent_activities:
            if activity.category_id is None:
                continue
            if since <= activity.start_time <= now:
                recent_hours[activity.category_id] += activity.hours

        predictions = []
        for c in correlations:
            if abs(c.coefficient) < self.policy.prediction_coefficient:
                continue
            sides = (
                (c.category_a, c.category_b, c.category_a_name, c.category_b_name),
                (c.category_b, c.category_a, c.category_b_name, c.category_a_name),
            )
            for trigger, predicted, trigger_name, predicted_name in sides:
                if trigger not in recent_hours:
                    continue
                trigger_label = trigger_name or trigger
                predicted_label = predicted_name or predicted
                direction = "increase" if c.coefficient > 0 else "decrease"
                confidence = min(abs(c.coefficient) + self.policy.prediction_confidence_boost,
                                 self.policy.prediction_confidence_cap)
                if c.coefficient > 0:
                    recommendation = (f"Consider maintaining your {trigger_label} routine to "
                                      f"naturally boost {predicted_label} activity.")
                else:
                    recommendation = (f"Be mindful that increased {trigger_label} might reduce "
                                      f"{predicted_label} time. Plan accordingly.")
                predictions.append(CorrelationPrediction(
                    trigger_category=trigger,
                    predicted_category=predicted,
                    trigger_category_name=trigger_name,
                    predicted_category_name=predicted_name,
                    direction=direction,
                    coefficient=c.coefficient,
                    confidence=round(confidence, 4),
                    message=(f"Based on your recent {trigger_label} activity "
                             f"({recent_hours[trigger]:.1f}h), you're likely to {direction} "
                             f"{predicted_label} activity. This is a {_label(c.strength)} correlation."),
                    recommendation=recommendation,
                ))

        predictions.sort(key=lambda p: (-p.confidence, p.trigger_category, p.predicted_category))
        return predictions[:self.policy.max_predictions]
