"""Shared test fixtures for Habit Insights tests.

This module provides common fixtures used across all test modules:
- A fixed clock so window arithmetic is reproducible
- An activity factory and series builders
- An in-memory SQLite store shared across threads
- The analysis service and a FastAPI TestClient wired to it

Usage:
    def test_something(service, seed):
        seed("user-1", {"health": "Physical Health"}, activities)
        ...
"""

import uuid
from collections.abc import Callable, Generator
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from analysis_service import AnalysisService
from config import AnalysisPolicy
from database import ActivityDB, Base, CategoryDB
from models import ActivityRecord
from store import SQLAlchemyAnalyticsStore


# ─────────────────────────────────────────────────────────────────────────────
# Clock Constants
# ─────────────────────────────────────────────────────────────────────────────

# Wednesday
FIXED_NOW = datetime(2026, 3, 18, 12, 0)
TODAY = FIXED_NOW.date()


# ─────────────────────────────────────────────────────────────────────────────
# Activity Builders
# ─────────────────────────────────────────────────────────────────────────────


def make_activity(
    category_id: Optional[str],
    start: datetime,
    minutes: float = 60,
    description: Optional[str] = None,
) -> ActivityRecord:
    """Build an ActivityRecord with an end time derived from its duration."""
    return ActivityRecord(
        id=str(uuid.uuid4()),
        category_id=category_id,
        description=description,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
    )


def daily_activities(
    category_id: str,
    first_day: date,
    last_day: date,
    hour: int = 7,
    minute: int = 0,
    minutes: float = 60,
    description: Optional[str] = None,
    every: int = 1,
) -> List[ActivityRecord]:
    """One activity per day (or every n-th day) between two dates inclusive."""
    activities = []
    day = first_day
    while day <= last_day:
        start = datetime.combine(day, time(hour, minute))
        activities.append(make_activity(category_id, start, minutes, description))
        day += timedelta(days=every)
    return activities


@pytest.fixture
def activity() -> Callable[..., ActivityRecord]:
    return make_activity


@pytest.fixture
def policy() -> AnalysisPolicy:
    return AnalysisPolicy()


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """In-memory SQLite database shared by every session of one test.

    Yields:
        sessionmaker bound to a fresh schema
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield factory

    engine.dispose()


@pytest.fixture
def store(session_factory) -> SQLAlchemyAnalyticsStore:
    return SQLAlchemyAnalyticsStore(session_factory)


@pytest.fixture
def seed(session_factory) -> Callable[..., None]:
    """Insert categories and activities the way the activity service would."""

    def _seed(user_id: str, categories: Dict[str, str], activities: Iterable[ActivityRecord] = ()) -> None:
        db = session_factory()
        try:
            for category_id, name in categories.items():
                db.merge(CategoryDB(id=category_id, user_id=user_id, name=name))
            for a in activities:
                db.add(ActivityDB(
                    id=a.id or str(uuid.uuid4()),
                    user_id=user_id,
                    category_id=a.category_id,
                    description=a.description,
                    start_time=a.start_time,
                    end_time=a.end_time,
                    duration_minutes=a.duration_minutes,
                ))
            db.commit()
        finally:
            db.close()

    return _seed


# ─────────────────────────────────────────────────────────────────────────────
# Service & API Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def service(store, policy) -> AnalysisService:
    return AnalysisService(store, policy, clock=lambda: FIXED_NOW)


@pytest.fixture
def client(service) -> Generator[TestClient, None, None]:
    """TestClient wired to the test service; lifespan is not started."""
    from main import app, get_service

    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_user_id() -> str:
    return "user-1"
