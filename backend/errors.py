"""
Error taxonomy for the analytics engines
"""


class AnalyticsError(Exception):
    """Base exception for analytics errors"""
    pass


class InsufficientDataError(AnalyticsError):
    """The window holds too little data for a statistic; the statistic is omitted"""
    pass


class InvalidCategoryError(AnalyticsError):
    """A record references a category the user does not have"""

    def __init__(self, category_id: str):
        super().__init__(f"Unknown category {category_id}")
        self.category_id = category_id


class ConflictError(AnalyticsError):
    """A concurrent mutation changed or removed the record being written"""
    pass


class AlertNotFoundError(AnalyticsError):
    def __init__(self, alert_id: str):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class SuggestionNotFoundError(AnalyticsError):
    def __init__(self, suggestion_id: str):
        super().__init__(f"Suggestion {suggestion_id} not found")
        self.suggestion_id = suggestion_id


class InvalidAlertError(AnalyticsError):
    """Raised when an action does not apply to the given alert type"""
    pass
