"""
Read-only interfaces onto records owned by the surrounding application.

The scoring services only ever need a feedback item's author, comment and
approval state, and a user's referrer. The SQL implementations below issue
single-table queries; other hosts can plug in their own readers.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .database import get_db_context
from .db_models import DBFeedback, DBUser
from .models import FeedbackRecord, UserRecord


class FeedbackReader(ABC):
    """Abstract access to feedback records."""

    @abstractmethod
    def get_feedback(self, feedback_id: int) -> Optional[FeedbackRecord]:
        """
        Get a feedback record by ID.

        Returns:
            FeedbackRecord or None if not found
        """
        pass

    @abstractmethod
    def list_feedback(self) -> List[FeedbackRecord]:
        """All feedback records, oldest first."""
        pass

    @abstractmethod
    def list_approved_feedback(self) -> List[FeedbackRecord]:
        """Approved feedback that has an author, oldest first."""
        pass


class UserReader(ABC):
    """Abstract access to user records."""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[UserRecord]:
        """
        Get a user record by ID.

        Returns:
            UserRecord or None if not found
        """
        pass


class SQLFeedbackReader(FeedbackReader):
    """FeedbackReader over the application's feedback table."""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def get_feedback(self, feedback_id: int) -> Optional[FeedbackRecord]:
        with get_db_context(self.session_factory) as db:
            row = db.get(DBFeedback, feedback_id)
            return FeedbackRecord.model_validate(row) if row else None

    def list_feedback(self) -> List[FeedbackRecord]:
        with get_db_context(self.session_factory) as db:
            rows = db.query(DBFeedback).order_by(DBFeedback.id).all()
            return [FeedbackRecord.model_validate(row) for row in rows]

    def list_approved_feedback(self) -> List[FeedbackRecord]:
        with get_db_context(self.session_factory) as db:
            rows = (
                db.query(DBFeedback)
                .filter(DBFeedback.approved_at.isnot(None), DBFeedback.user_id.isnot(None))
                .order_by(DBFeedback.id)
                .all()
            )
            return [FeedbackRecord.model_validate(row) for row in rows]


class SQLUserReader(UserReader):
    """UserReader over the application's users table."""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with get_db_context(self.session_factory) as db:
            row = db.get(DBUser, user_id)
            return UserRecord.model_validate(row) if row else None
