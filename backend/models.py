"""
Data models for the Habit Insights analytics engine
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from utils import to_local_naive


def _new_id() -> str:
    return str(uuid4())


class PatternFrequency(str, Enum):
    """How often a category shows up across the window"""
    DAILY = "daily"
    WEEKLY = "weekly"
    RARE = "rare"


class Trend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class SuggestionType(str, Enum):
    HABIT_RESUMPTION = "habit_resumption"
    UPCOMING_HABIT = "upcoming_habit"
    SEQUENCE_SUGGESTION = "sequence_suggestion"
    WEEKLY_HABIT = "weekly_habit"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SuggestionTiming(str, Enum):
    IMMEDIATE = "immediate"
    UPCOMING = "upcoming"
    SEQUENCE = "sequence"
    WEEKLY = "weekly"


class ActionType(str, Enum):
    LOG_ACTIVITY = "log_activity"
    PREPARE_ACTIVITY = "prepare_activity"
    REMINDER = "reminder"


class CorrelationStrength(str, Enum):
    VERY_WEAK = "very_weak"
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"
    VERY_STRONG = "very_strong"


class CorrelationDirection(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    HABIT_DEGRADATION = "habit_degradation_alert"
    CUSTOM = "custom"


# ==================== INPUT RECORDS ====================

class Category(BaseModel):
    """Life category an activity is logged against"""
    id: str
    name: str


class ActivityRecord(BaseModel):
    """Logged activity as provided by the activity store"""
    id: Optional[str] = None
    category_id: Optional[str] = None
    description: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[float] = Field(default=None, ge=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def to_wall_clock(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Day bucketing happens on the user's local calendar
        return to_local_naive(v) if v is not None else v

    @model_validator(mode="after")
    def fill_duration(self) -> "ActivityRecord":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.duration_minutes is None:
            if self.end_time is not None:
                self.duration_minutes = (self.end_time - self.start_time).total_seconds() / 60
            else:
                self.duration_minutes = 0.0
        return self

    @property
    def hours(self) -> float:
        return (self.duration_minutes or 0.0) / 60


# ==================== AGGREGATED SERIES ====================

class ActivityEvent(BaseModel):
    """One activity inside the analysis window, in chronological order"""
    day: date
    start_time: datetime
    start_hour: int = Field(ge=0, le=23)
    category_id: Optional[str] = None
    description: Optional[str] = None
    duration_minutes: float = 0.0


class DailySeries(BaseModel):
    """
    Per-day, per-category activity series for one user and one window.
    Every date of the window is present; inactive days hold zeros.
    """
    start_date: date
    end_date: date
    window_days: int
    dates: List[date]
    categories: List[str]
    hours: Dict[date, Dict[str, float]]
    counts: Dict[date, Dict[str, int]]
    daily_totals: Dict[date, int]
    hour_histogram: Dict[int, int]
    events: List[ActivityEvent]

    def category_hours(self, category_id: str) -> List[float]:
        return [self.hours[d].get(category_id, 0.0) for d in self.dates]

    def category_counts(self, category_id: str) -> List[int]:
        return [self.counts[d].get(category_id, 0) for d in self.dates]

    def active_days(self, category_id: str) -> List[date]:
        return [d for d in self.dates if self.counts[d].get(category_id, 0) > 0]

    def total_counts(self) -> List[int]:
        return [self.daily_totals[d] for d in self.dates]

    def category_events(self, category_id: str) -> List[ActivityEvent]:
        return [e for e in self.events if e.category_id == category_id]


# ==================== PATTERNS ====================

class DailyPattern(BaseModel):
    """Time-of-day regularity for one band (morning/afternoon/evening)"""
    preferred_categories: List[str] = []
    peak_hours: List[int] = []
    consistency: float = Field(default=0.0, ge=0, le=1)


class WeekdayCategoryPattern(BaseModel):
    category_id: str
    weekday: str
    occurrences: int
    frequency: float = Field(ge=0, le=1)


class WeeklyPatterns(BaseModel):
    most_active_day: Optional[str] = None
    least_active_day: Optional[str] = None
    weekday_avg: float = 0.0
    weekend_avg: float = 0.0
    day_averages: Dict[str, float] = {}
    category_weekdays: List[WeekdayCategoryPattern] = []


class CategoryPattern(BaseModel):
    category_id: str
    category_name: Optional[str] = None
    frequency: PatternFrequency
    avg_duration_minutes: float
    trend: Trend
    consistency: float = Field(ge=0, le=1)
    active_days: int
    peak_hour: Optional[int] = None


class HabitSequence(BaseModel):
    """Two activities that tend to follow each other on the same day"""
    sequence: List[str]
    frequency: float = Field(ge=0, le=1)
    occurrences: int
    category_id: Optional[str] = None


class PatternModel(BaseModel):
    daily_patterns: Dict[str, DailyPattern]
    weekly_patterns: WeeklyPatterns
    category_patterns: Dict[str, CategoryPattern]
    habit_sequences: List[HabitSequence]
    window_days: int
    data_points: int
    last_analyzed: datetime


class PatternInsight(BaseModel):
    type: str
    title: str
    message: str
    data: List[dict] = []


class PatternStrength(BaseModel):
    overall_strength: int = Field(ge=0, le=100)
    band_consistency: float
    category_consistency: float
    trend_stability: float


class Suggestion(BaseModel):
    """Proactive, time-sensitive nudge derived from the pattern model"""
    id: str = Field(default_factory=_new_id)
    category_id: Optional[str] = None
    type: SuggestionType
    title: str
    message: str
    priority: Priority
    confidence: float = Field(ge=0, le=1)
    timing: SuggestionTiming
    action_type: ActionType
    read: bool = False
    acted_on: bool = False
    created_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        """Unread and not yet expired"""
        return not self.read and self.expires_at > now


class SuggestionStats(BaseModel):
    """How the user responded to suggestions created in the last `days` days"""
    total: int
    acted_on: int
    dismissed: int
    action_rate: int = Field(ge=0, le=100)
    dismissal_rate: int = Field(ge=0, le=100)
    days: int


class DeviationType(str, Enum):
    MISSED_PATTERN = "missed_pattern"
    UNUSUAL_TIMING = "unusual_timing"


class PatternDeviation(BaseModel):
    """Today's log departing from an established daily habit"""
    type: DeviationType
    category_id: str
    category_name: Optional[str] = None
    expected_hour: int = Field(ge=0, le=23)
    actual_hour: Optional[int] = Field(default=None, ge=0, le=23)
    confidence: float = Field(ge=0, le=1)
    message: str


class PatternDeviations(BaseModel):
    deviations: List[PatternDeviation]
    pattern_count: int
    last_analyzed: datetime


# ==================== CORRELATIONS ====================

class Correlation(BaseModel):
    category_a: str
    category_b: str
    category_a_name: Optional[str] = None
    category_b_name: Optional[str] = None
    coefficient: float = Field(ge=-1, le=1)
    strength: CorrelationStrength
    direction: CorrelationDirection
    significance: str
    data_points: int
    days_with_data: int
    average_a: float
    average_b: float
    relationship: str = ""


class CorrelationInsight(BaseModel):
    type: str
    title: str
    description: str
    correlations: List[Correlation]
    actionable: bool


class CorrelationPrediction(BaseModel):
    trigger_category: str
    predicted_category: str
    trigger_category_name: Optional[str] = None
    predicted_category_name: Optional[str] = None
    direction: str  # 'increase' or 'decrease'
    coefficient: float
    confidence: float = Field(ge=0, le=1)
    timeframe: str = "today/tomorrow"
    message: str
    recommendation: str


class CorrelationAnalysis(BaseModel):
    correlations: List[Correlation] = []
    insights: List[CorrelationInsight] = []
    predictions: List[CorrelationPrediction] = []
    data_points: int = 0
    window_days: int = 0
    last_analyzed: datetime


class CorrelationSummary(BaseModel):
    total_correlations: int
    strong_correlations: int
    top_correlation: Optional[Correlation] = None
    insights: int
    predictions: int
    data_points: int
    last_analyzed: Optional[datetime] = None


# ==================== RISK & ALERTS ====================

class RiskPrediction(BaseModel):
    category_id: str
    category_name: str
    frequency_trend_pct: float
    duration_trend_pct: Optional[float] = None
    consistency_score: int = Field(ge=0, le=100)
    days_since_last_activity: int = Field(ge=0)
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    recommendations: List[str] = []
    message: str = ""


class InterventionStep(BaseModel):
    type: str
    title: str
    description: str
    priority: Priority


class AlertActionData(RiskPrediction):
    """Risk payload carried by a habit degradation alert"""
    intervention_triggered: bool = False
    intervention_steps: List[InterventionStep] = []
    intervention_date: Optional[datetime] = None


class Alert(BaseModel):
    id: str = Field(default_factory=_new_id)
    type: AlertType = AlertType.HABIT_DEGRADATION
    category_id: Optional[str] = None
    title: str
    message: str
    action_data: Optional[AlertActionData] = None
    read: bool = False
    created_at: datetime
    # Row version this copy was read at; writes from an older copy are rejected
    version: int = 1

    @property
    def intervention_triggered(self) -> bool:
        return bool(self.action_data and self.action_data.intervention_triggered)


class CustomAlertCreate(BaseModel):
    """Request body for a user-created alert"""
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    category_id: Optional[str] = None


class AlertStats(BaseModel):
    total: int
    unread: int
    habit_alerts: int
    recent_alerts: int


class RiskSummary(BaseModel):
    total_categories: int
    critical_risk: int
    high_risk: int
    medium_risk: int
    average_risk_score: float


class RiskAnalysis(BaseModel):
    predictions: List[RiskPrediction]
    recent_alerts: List[Alert]
    risk_summary: RiskSummary
    last_analyzed: datetime


class AnalysisRunResult(BaseModel):
    """Outcome of one full analysis pass for a user"""
    user_id: str
    started_at: datetime
    pattern_model: Optional[PatternModel] = None
    correlation_analysis: Optional[CorrelationAnalysis] = None
    risk_predictions: List[RiskPrediction] = []
    suggestions_created: int = 0
    alerts_created: int = 0
    errors: Dict[str, str] = {}
