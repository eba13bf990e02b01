"""
Storage boundary for the analytics engines
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm.exc import StaleDataError

from database import (
    ActivityDB, AlertDB, CategoryDB, CorrelationAnalysisDB, PatternModelDB,
    SessionLocal, SuggestionDB,
)
from errors import AlertNotFoundError, ConflictError, SuggestionNotFoundError
from logging_config import get_logger
from models import (
    ActivityRecord, Alert, AlertActionData, AlertType, Category,
    CorrelationAnalysis, PatternModel, Suggestion, SuggestionType,
)

logger = get_logger(__name__)


class AnalyticsStore(ABC):
    """Abstract base class for analytics storage implementations"""

    # Activity store, read-only for the analytics side

    @abstractmethod
    def list_activities(self, user_id: str, since: datetime) -> List[ActivityRecord]:
        """Activities starting at or after since, oldest first"""
        pass

    @abstractmethod
    def list_categories(self, user_id: str) -> List[Category]:
        pass

    # Snapshots

    @abstractmethod
    def save_pattern_model(self, user_id: str, model: PatternModel) -> None:
        """Replace the user's pattern model"""
        pass

    @abstractmethod
    def get_pattern_model(self, user_id: str) -> Optional[PatternModel]:
        pass

    @abstractmethod
    def save_correlation_analysis(self, user_id: str, analysis: CorrelationAnalysis) -> None:
        pass

    @abstractmethod
    def get_correlation_analysis(self, user_id: str) -> Optional[CorrelationAnalysis]:
        pass

    # Suggestions

    @abstractmethod
    def upsert_suggestions(self, user_id: str, suggestions: Iterable[Suggestion], now: datetime) -> List[Suggestion]:
        """
        Store suggestions unless an unexpired unread one of the same
        (type, category) exists.
        Returns: the suggestions actually stored
        """
        pass

    @abstractmethod
    def list_suggestions(
        self,
        user_id: str,
        read: Optional[bool] = None,
        type: Optional[SuggestionType] = None,
        now: Optional[datetime] = None,
    ) -> List[Suggestion]:
        """Newest first; when now is given, expired suggestions are left out"""
        pass

    @abstractmethod
    def get_suggestion(self, user_id: str, suggestion_id: str) -> Suggestion:
        pass

    @abstractmethod
    def update_suggestion(self, user_id: str, suggestion: Suggestion) -> Suggestion:
        pass

    @abstractmethod
    def delete_expired_suggestions(self, user_id: str, now: datetime) -> int:
        pass

    # Alerts

    @abstractmethod
    def upsert_alert(self, user_id: str, alert: Alert) -> Optional[Alert]:
        """
        Store an alert unless an unread one of the same (type, category)
        exists.
        Returns: the stored alert, or None when it was a duplicate
        """
        pass

    @abstractmethod
    def add_alert(self, user_id: str, alert: Alert) -> Alert:
        """Store an alert without the unread dedup, for user-created alerts"""
        pass

    @abstractmethod
    def list_alerts(
        self,
        user_id: str,
        type: Optional[AlertType] = None,
        read: Optional[bool] = None,
    ) -> List[Alert]:
        pass

    @abstractmethod
    def get_alert(self, user_id: str, alert_id: str) -> Alert:
        pass

    @abstractmethod
    def update_alert(self, user_id: str, alert: Alert) -> Alert:
        """Raises ConflictError when the row changed or vanished underneath"""
        pass

    @abstractmethod
    def delete_alert(self, user_id: str, alert_id: str) -> None:
        pass


def _suggestion_from_row(row: SuggestionDB) -> Suggestion:
    return Suggestion(
        id=row.id,
        category_id=row.category_id,
        type=row.type,
        title=row.title,
        message=row.message,
        priority=row.priority,
        confidence=row.confidence,
        timing=row.timing,
        action_type=row.action_type,
        read=row.read,
        acted_on=row.acted_on,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _alert_from_row(row: AlertDB) -> Alert:
    return Alert(
        id=row.id,
        type=row.type,
        category_id=row.category_id,
        title=row.title,
        message=row.message,
        action_data=AlertActionData.model_validate(row.action_data) if row.action_data else None,
        read=row.read,
        created_at=row.created_at,
        version=row.version,
    )


def _action_data_json(alert: Alert) -> Optional[dict]:
    return alert.action_data.model_dump(mode="json") if alert.action_data else None


INTERVENTION_FIELDS = ("intervention_triggered", "intervention_steps", "intervention_date")


def _merge_action_data(stored: Optional[dict], incoming: Optional[dict]) -> Optional[dict]:
    """A triggered intervention stays triggered with its original steps"""
    if not stored or not stored.get("intervention_triggered"):
        return incoming
    if incoming is None:
        return stored
    if incoming.get("intervention_triggered"):
        return incoming
    return {**incoming, **{key: stored.get(key) for key in INTERVENTION_FIELDS}}


class SQLAlchemyAnalyticsStore(AnalyticsStore):
    """AnalyticsStore backed by the tables in database.py"""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except StaleDataError as e:
            db.rollback()
            raise ConflictError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ==================== ACTIVITIES ====================

    def list_activities(self, user_id: str, since: datetime) -> List[ActivityRecord]:
        with self._session() as db:
            rows = db.query(ActivityDB).filter(
                ActivityDB.user_id == user_id,
                ActivityDB.start_time >= since,
            ).order_by(ActivityDB.start_time.asc()).all()
            return [
                ActivityRecord(
                    id=r.id,
                    category_id=r.category_id,
                    description=r.description,
                    start_time=r.start_time,
                    end_time=r.end_time,
                    duration_minutes=r.duration_minutes,
                )
                for r in rows
            ]

    def list_categories(self, user_id: str) -> List[Category]:
        with self._session() as db:
            rows = db.query(CategoryDB).filter(CategoryDB.user_id == user_id).order_by(CategoryDB.id).all()
            return [Category(id=r.id, name=r.name) for r in rows]

    # ==================== SNAPSHOTS ====================

    def save_pattern_model(self, user_id: str, model: PatternModel) -> None:
        with self._session() as db:
            db.merge(PatternModelDB(
                user_id=user_id,
                payload=model.model_dump(mode="json"),
                last_analyzed=model.last_analyzed,
            ))

    def get_pattern_model(self, user_id: str) -> Optional[PatternModel]:
        with self._session() as db:
            row = db.get(PatternModelDB, user_id)
            return PatternModel.model_validate(row.payload) if row else None

    def save_correlation_analysis(self, user_id: str, analysis: CorrelationAnalysis) -> None:
        with self._session() as db:
            db.merge(CorrelationAnalysisDB(
                user_id=user_id,
                payload=analysis.model_dump(mode="json"),
                last_analyzed=analysis.last_analyzed,
            ))

    def get_correlation_analysis(self, user_id: str) -> Optional[CorrelationAnalysis]:
        with self._session() as db:
            row = db.get(CorrelationAnalysisDB, user_id)
            return CorrelationAnalysis.model_validate(row.payload) if row else None

    # ==================== SUGGESTIONS ====================

    def upsert_suggestions(self, user_id: str, suggestions: Iterable[Suggestion], now: datetime) -> List[Suggestion]:
        stored = []
        with self._session() as db:
            active = db.query(SuggestionDB).filter(
                SuggestionDB.user_id == user_id,
                SuggestionDB.read.is_(False),
                SuggestionDB.expires_at > now,
            ).all()
            taken = {(r.type, r.category_id) for r in active}

            for suggestion in suggestions:
                key = (suggestion.type.value, suggestion.category_id)
                if key in taken:
                    logger.debug("suggestion_duplicate", user_id=user_id, type=key[0], category_id=key[1])
                    continue
                taken.add(key)
                db.add(SuggestionDB(
                    id=suggestion.id,
                    user_id=user_id,
                    category_id=suggestion.category_id,
                    type=suggestion.type.value,
                    title=suggestion.title,
                    message=suggestion.message,
                    priority=suggestion.priority.value,
                    confidence=suggestion.confidence,
                    timing=suggestion.timing.value,
                    action_type=suggestion.action_type.value,
                    read=suggestion.read,
                    acted_on=suggestion.acted_on,
                    created_at=suggestion.created_at,
                    expires_at=suggestion.expires_at,
                ))
                stored.append(suggestion)
        return stored

    def list_suggestions(
        self,
        user_id: str,
        read: Optional[bool] = None,
        type: Optional[SuggestionType] = None,
        now: Optional[datetime] = None,
    ) -> List[Suggestion]:
        with self._session() as db:
            query = db.query(SuggestionDB).filter(SuggestionDB.user_id == user_id)
            if read is not None:
                query = query.filter(SuggestionDB.read.is_(read))
            if type is not None:
                query = query.filter(SuggestionDB.type == SuggestionType(type).value)
            if now is not None:
                query = query.filter(SuggestionDB.expires_at > now)
            rows = query.order_by(SuggestionDB.created_at.desc(), SuggestionDB.id).all()
            return [_suggestion_from_row(r) for r in rows]

    def _suggestion_row(self, db, user_id: str, suggestion_id: str) -> SuggestionDB:
        row = db.get(SuggestionDB, suggestion_id)
        if row is None or row.user_id != user_id:
            raise SuggestionNotFoundError(suggestion_id)
        return row

    def get_suggestion(self, user_id: str, suggestion_id: str) -> Suggestion:
        with self._session() as db:
            return _suggestion_from_row(self._suggestion_row(db, user_id, suggestion_id))

    def update_suggestion(self, user_id: str, suggestion: Suggestion) -> Suggestion:
        with self._session() as db:
            row = self._suggestion_row(db, user_id, suggestion.id)
            row.read = suggestion.read
            row.acted_on = suggestion.acted_on
            return suggestion

    def delete_expired_suggestions(self, user_id: str, now: datetime) -> int:
        with self._session() as db:
            return db.query(SuggestionDB).filter(
                SuggestionDB.user_id == user_id,
                SuggestionDB.expires_at <= now,
            ).delete(synchronize_session=False)

    # ==================== ALERTS ====================

    def upsert_alert(self, user_id: str, alert: Alert) -> Optional[Alert]:
        with self._session() as db:
            duplicate = db.query(AlertDB).filter(
                AlertDB.user_id == user_id,
                AlertDB.type == alert.type.value,
                AlertDB.category_id == alert.category_id,
                AlertDB.read.is_(False),
            ).first()
            if duplicate is not None:
                return None
            return self._insert_alert(db, user_id, alert)

    def add_alert(self, user_id: str, alert: Alert) -> Alert:
        with self._session() as db:
            return self._insert_alert(db, user_id, alert)

    @staticmethod
    def _insert_alert(db, user_id: str, alert: Alert) -> Alert:
        row = AlertDB(
            id=alert.id,
            user_id=user_id,
            type=alert.type.value,
            category_id=alert.category_id,
            title=alert.title,
            message=alert.message,
            action_data=_action_data_json(alert),
            read=alert.read,
            created_at=alert.created_at,
        )
        db.add(row)
        db.flush()
        return _alert_from_row(row)

    def list_alerts(
        self,
        user_id: str,
        type: Optional[AlertType] = None,
        read: Optional[bool] = None,
    ) -> List[Alert]:
        with self._session() as db:
            query = db.query(AlertDB).filter(AlertDB.user_id == user_id)
            if type is not None:
                query = query.filter(AlertDB.type == AlertType(type).value)
            if read is not None:
                query = query.filter(AlertDB.read.is_(read))
            rows = query.order_by(AlertDB.created_at.desc(), AlertDB.id).all()
            return [_alert_from_row(r) for r in rows]

    def _alert_row(self, db, user_id: str, alert_id: str) -> AlertDB:
        row = db.get(AlertDB, alert_id)
        if row is None or row.user_id != user_id:
            raise AlertNotFoundError(alert_id)
        return row

    def get_alert(self, user_id: str, alert_id: str) -> Alert:
        with self._session() as db:
            return _alert_from_row(self._alert_row(db, user_id, alert_id))

    def update_alert(self, user_id: str, alert: Alert) -> Alert:
        with self._session() as db:
            row = self._alert_row(db, user_id, alert.id)
            if row.version != alert.version:
                raise ConflictError(
                    f"Alert {alert.id} is at version {row.version}, update was based on {alert.version}"
                )
            row.read = alert.read
            row.title = alert.title
            row.message = alert.message
            row.action_data = _merge_action_data(row.action_data, _action_data_json(alert))
            # A write that slipped in since the load fails the versioned UPDATE
            db.flush()
            return _alert_from_row(row)

    def delete_alert(self, user_id: str, alert_id: str) -> None:
        with self._session() as db:
            db.delete(self._alert_row(db, user_id, alert_id))
