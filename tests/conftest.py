"""
Shared test fixtures for all test modules.

Provides:
- session_factory: in-memory SQLite database with all tables, per test
- Test environment setup (TESTING=true, mock provider, no real API key)
- Fake categorization providers
- Helpers for creating users and feedback rows
"""

import os
from datetime import datetime
from typing import Dict, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# =============================================================================
# Test Environment Configuration
# =============================================================================

# Set before any feedback_rewards import reads settings
os.environ['TESTING'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['CATEGORIZATION_PROVIDER'] = 'mock'
os.environ['CELERY_BROKER_URL'] = 'memory://'
os.environ['CELERY_RESULT_BACKEND'] = 'cache+memory://'
os.environ['OPENAI_API_KEY'] = os.environ.get('OPENAI_API_KEY', 'sk-test-key')

from feedback_rewards.db_models import Base, DBFeedback, DBUser  # noqa: E402
from feedback_rewards.exceptions import ProviderError  # noqa: E402
from feedback_rewards.llm_providers import CategorizationProvider  # noqa: E402


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def session_factory():
    """
    Session factory bound to a fresh in-memory SQLite database.

    StaticPool keeps the single in-memory connection alive across sessions
    so every session in a test sees the same tables and rows.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield factory

    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    """Create a user row and return its id."""
    def _make_user(referred_by: Optional[int] = None, email: Optional[str] = None) -> int:
        db = session_factory()
        try:
            user = DBUser(email=email, referred_by_user_id=referred_by)
            db.add(user)
            db.commit()
            return user.id
        finally:
            db.close()
    return _make_user


@pytest.fixture
def make_feedback(session_factory):
    """Create a feedback row and return its id."""
    def _make_feedback(
        user_id: Optional[int] = None,
        comment: Optional[str] = "Great course",
        approved: bool = True
    ) -> int:
        db = session_factory()
        try:
            feedback = DBFeedback(
                user_id=user_id,
                comment=comment,
                approved_at=datetime.utcnow() if approved else None,
            )
            db.add(feedback)
            db.commit()
            return feedback.id
        finally:
            db.close()
    return _make_feedback


@pytest.fixture
def set_approval(session_factory):
    """Approve or unapprove an existing feedback row."""
    def _set_approval(feedback_id: int, approved: bool) -> None:
        db = session_factory()
        try:
            feedback = db.get(DBFeedback, feedback_id)
            feedback.approved_at = datetime.utcnow() if approved else None
            db.commit()
        finally:
            db.close()
    return _set_approval


# =============================================================================
# Provider Fixtures
# =============================================================================

ALL_CATEGORIES = {"hasTeaching": True, "hasAssessment": True, "hasMaterials": True, "hasTips": True}
NO_CATEGORIES = {"hasTeaching": False, "hasAssessment": False, "hasMaterials": False, "hasTips": False}


class FakeProvider(CategorizationProvider):
    """Counts calls and returns a configurable payload, or fails on demand."""

    name = "fake"

    def __init__(self, payload: Dict = None, fail: bool = False):
        self.payload = payload if payload is not None else dict(NO_CATEGORIES, hasTeaching=True)
        self.fail = fail
        self.calls = 0
        self.comments = []

    async def categorize(self, comment: str) -> Dict:
        self.calls += 1
        self.comments.append(comment)
        if self.fail:
            raise ProviderError(self.name, "simulated outage")
        return dict(self.payload)


@pytest.fixture
def fake_provider():
    """Provider returning hasTeaching only."""
    return FakeProvider()


@pytest.fixture
def failing_provider():
    """Provider that always raises ProviderError."""
    return FakeProvider(fail=True)
