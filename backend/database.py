"""
Database setup and models for SQL storage
"""

from sqlalchemy import (
    create_engine, Column, Integer, Float, String, DateTime, Boolean, JSON, ForeignKey,
)
from sqlalchemy.orm import sessionmaker, declarative_base
from datetime import datetime

from config import DATABASE_URL
from logging_config import get_logger

logger = get_logger(__name__)


def make_engine(url: str = DATABASE_URL, **kwargs):
    """SQLAlchemy engine; SQLite connections may be shared across threads"""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


# Create engine and session
engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# ==================== ACTIVITY STORE (read-only here) ====================

class CategoryDB(Base):
    """Life category owned by a user"""
    __tablename__ = "categories"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)


class ActivityDB(Base):
    """Logged activity; written by the activity CRUD service"""
    __tablename__ = "activities"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    description = Column(String, nullable=True)
    start_time = Column(DateTime, index=True, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration_minutes = Column(Float, nullable=True)


# ==================== ANALYTICS SNAPSHOTS ====================

class PatternModelDB(Base):
    """Latest pattern model per user, replaced wholesale on each run"""
    __tablename__ = "pattern_models"

    user_id = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)
    last_analyzed = Column(DateTime, nullable=False)


class CorrelationAnalysisDB(Base):
    """Latest correlation analysis per user"""
    __tablename__ = "correlation_analyses"

    user_id = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)
    last_analyzed = Column(DateTime, nullable=False)


class SuggestionDB(Base):
    __tablename__ = "suggestions"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    category_id = Column(String, nullable=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    priority = Column(String, nullable=False)
    confidence = Column(Float, nullable=False)
    timing = Column(String, nullable=False)
    action_type = Column(String, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    acted_on = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, index=True, nullable=False)


class AlertDB(Base):
    """Habit alerts; version counter detects concurrent writes"""
    __tablename__ = "alerts"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    type = Column(String, nullable=False)
    category_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    action_data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


def init_db(bind=None):
    """Initialize the database - create all tables"""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("database_initialized")


if __name__ == "__main__":
    # Run this file directly to initialize the database
    init_db()
