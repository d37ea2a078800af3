"""
Point ledger.

Each grant lives in exactly one row keyed by (user, source type, reference).
Rows are never deleted: unapproval zeroes the amount and re-approval restores
it, so the ledger keeps its history and every write can be repeated safely.

All writes are check-then-insert-or-update. When a concurrent writer inserts
the same key between our check and our insert, the unique constraint rejects
our row and the write is retried once as an update.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import get_db_context
from .db_models import (
    DBFeedbackAnalysis,
    DBPointLedgerEntry,
    POINT_SOURCE_SUBMIT_FEEDBACK,
    POINT_SOURCE_TYPES,
)
from .exceptions import LedgerConflictError, log_consistency_warning
from .models import Classification, FeedbackAnalysis, LedgerEntry

logger = logging.getLogger(__name__)

BASE_FEEDBACK_POINTS = 1
POINTS_PER_CATEGORY = 4
ALL_CATEGORIES_BONUS = 3
CATEGORY_TOTAL = 4


def calculate_feedback_points(analysis: Classification) -> int:
    """
    Points for a feedback item given its analysis.

    1 base point, 4 per category discussed, and a 3 point bonus when all four
    are covered: 0 -> 1, 1 -> 5, 2 -> 9, 3 -> 13, 4 -> 20.
    """
    categories = analysis.category_count
    points = BASE_FEEDBACK_POINTS + POINTS_PER_CATEGORY * categories
    if categories == CATEGORY_TOTAL:
        points += ALL_CATEGORIES_BONUS
    return points


class PointLedger:
    """Reads and writes point grants."""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    calculate_feedback_points = staticmethod(calculate_feedback_points)

    # =============================================================================
    # Feedback awards
    # =============================================================================

    def upsert_feedback_award(
        self,
        user_id: int,
        feedback_id: int,
        approved: bool,
        analysis: Classification
    ) -> int:
        """
        Set the feedback award to what the current state is worth.

        Unapproved feedback is worth 0 regardless of its categories. Safe to
        call any number of times; the entry converges on the current amount.

        Returns:
            The amount now recorded
        """
        points = calculate_feedback_points(analysis) if approved else 0
        comment = (
            f"Awarded {points} points for feedback #{feedback_id}"
            if approved else f"Feedback #{feedback_id} not approved"
        )
        created = self._write_entry(user_id, POINT_SOURCE_SUBMIT_FEEDBACK, feedback_id, points, comment)
        logger.info(
            f"{'Created' if created else 'Updated'} feedback award: user={user_id}, "
            f"feedback={feedback_id}, points={points}, approved={approved}"
        )
        return points

    def zero_out(self, user_id: int, feedback_id: int, reason: str) -> bool:
        """
        Set a feedback award to 0 and record why. The row stays.

        Returns:
            False if the user had no award for this feedback
        """
        with get_db_context(self.session_factory) as db:
            entry = self._find_entry(db, user_id, POINT_SOURCE_SUBMIT_FEEDBACK, feedback_id)
            if entry is None:
                logger.info(f"No award to zero out for user={user_id}, feedback={feedback_id}")
                return False
            entry.amount = 0
            entry.comment = reason
            entry.updated_at = datetime.utcnow()

        logger.info(f"Zeroed feedback award: user={user_id}, feedback={feedback_id}, reason='{reason}'")
        return True

    def restore(self, user_id: int, feedback_id: int) -> int:
        """
        Recalculate a feedback award from the stored analysis (re-approval).

        A missing analysis is a data-integrity problem: it is logged and 0 is
        returned, the ledger is left untouched.

        Returns:
            The restored amount
        """
        with get_db_context(self.session_factory) as db:
            row = db.get(DBFeedbackAnalysis, feedback_id)
            analysis = FeedbackAnalysis.model_validate(row) if row else None

        if analysis is None:
            log_consistency_warning(
                logger,
                f"No analysis found for feedback {feedback_id}, cannot restore points",
                feedback_id=feedback_id,
                user_id=user_id,
            )
            return 0

        points = calculate_feedback_points(analysis)
        self._write_entry(
            user_id,
            POINT_SOURCE_SUBMIT_FEEDBACK,
            feedback_id,
            points,
            "Points restored after re-approval",
        )
        logger.info(f"Restored feedback award: user={user_id}, feedback={feedback_id}, points={points}")
        return points

    # =============================================================================
    # Generic entry access
    # =============================================================================

    def insert_award(
        self,
        db: Session,
        user_id: int,
        source_type: str,
        reference_id: int,
        amount: int,
        comment: str
    ) -> DBPointLedgerEntry:
        """
        Insert a new entry inside the caller's transaction.

        The caller's transaction is unusable after a conflict and must be
        rolled back (get_db_context does this when the error propagates).

        Raises:
            LedgerConflictError: If an entry for the key already exists
        """
        self._check_source_type(source_type)
        now = datetime.utcnow()
        entry = DBPointLedgerEntry(
            user_id=user_id,
            source_type=source_type,
            reference_id=reference_id,
            amount=amount,
            comment=comment,
            created_at=now,
            updated_at=now,
        )
        db.add(entry)
        try:
            db.flush()
        except IntegrityError as e:
            raise LedgerConflictError(user_id, source_type, reference_id) from e
        return entry

    def has_award(self, user_id: int, source_type: str, reference_id: int) -> bool:
        """
        Check whether an entry exists for the key.

        Lookup failures answer False. A wrong False cannot lead to a double
        award because the ledger key is unique.
        """
        try:
            with get_db_context(self.session_factory) as db:
                return self._find_entry(db, user_id, source_type, reference_id) is not None
        except SQLAlchemyError as e:
            logger.warning(
                f"Award lookup failed for user={user_id}, source={source_type}, "
                f"reference={reference_id}: {e}"
            )
            return False

    def get_entry(self, user_id: int, source_type: str, reference_id: int) -> Optional[LedgerEntry]:
        with get_db_context(self.session_factory) as db:
            entry = self._find_entry(db, user_id, source_type, reference_id)
            return LedgerEntry.model_validate(entry) if entry else None

    def points_for_entry(self, user_id: Optional[int], source_type: str, reference_id: int) -> Optional[int]:
        """Amount recorded for the key, or None if there is no entry."""
        if not user_id:
            return None
        entry = self.get_entry(user_id, source_type, reference_id)
        return entry.amount if entry else None

    def total_points(self, user_id: int) -> int:
        """Sum of all of a user's entries (0 for unknown users)."""
        with get_db_context(self.session_factory) as db:
            total = (
                db.query(func.coalesce(func.sum(DBPointLedgerEntry.amount), 0))
                .filter(DBPointLedgerEntry.user_id == user_id)
                .scalar()
            )
            return int(total or 0)

    def count_entries(self, user_id: int, source_type: str) -> int:
        with get_db_context(self.session_factory) as db:
            return self.count_entries_in(db, user_id, source_type)

    @staticmethod
    def count_entries_in(db: Session, user_id: int, source_type: str) -> int:
        return (
            db.query(func.count(DBPointLedgerEntry.id))
            .filter(
                DBPointLedgerEntry.user_id == user_id,
                DBPointLedgerEntry.source_type == source_type,
            )
            .scalar()
        ) or 0

    # =============================================================================
    # Internals
    # =============================================================================

    def _write_entry(
        self,
        user_id: int,
        source_type: str,
        reference_id: int,
        amount: int,
        comment: str
    ) -> bool:
        """
        Update the entry for the key in place, or insert it.

        Returns:
            True if a new entry was inserted
        """
        self._check_source_type(source_type)
        for attempt in range(2):
            try:
                with get_db_context(self.session_factory) as db:
                    now = datetime.utcnow()
                    entry = self._find_entry(db, user_id, source_type, reference_id)
                    if entry is not None:
                        entry.amount = amount
                        entry.comment = comment
                        entry.updated_at = now
                        return False
                    db.add(DBPointLedgerEntry(
                        user_id=user_id,
                        source_type=source_type,
                        reference_id=reference_id,
                        amount=amount,
                        comment=comment,
                        created_at=now,
                        updated_at=now,
                    ))
                    db.flush()
                    return True
            except IntegrityError:
                if attempt:
                    raise
                logger.info(
                    f"Ledger entry for user={user_id}, source={source_type}, reference={reference_id} "
                    f"was written concurrently, retrying as update"
                )
        return False

    def _find_entry(
        self,
        db: Session,
        user_id: int,
        source_type: str,
        reference_id: int
    ) -> Optional[DBPointLedgerEntry]:
        return (
            db.query(DBPointLedgerEntry)
            .filter(
                DBPointLedgerEntry.user_id == user_id,
                DBPointLedgerEntry.source_type == source_type,
                DBPointLedgerEntry.reference_id == reference_id,
            )
            .first()
        )

    @staticmethod
    def _check_source_type(source_type: str) -> None:
        if source_type not in POINT_SOURCE_TYPES:
            raise ValueError(f"Unknown point source type: {source_type}. Supported: {', '.join(POINT_SOURCE_TYPES)}")
