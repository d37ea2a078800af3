"""
Per-feedback analysis storage.

One row per feedback item, created the first time analysis is requested and
mutated in place afterwards. Creation never fails because of the AI provider:
an unavailable provider yields an all-false analysis with a real word count.

The async methods run their database calls in a worker thread.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .categorizer import Categorizer
from .content_hashing import count_words
from .database import get_db_context
from .db_models import DBFeedbackAnalysis
from .models import Classification, FeedbackAnalysis

logger = logging.getLogger(__name__)


class AnalysisStore:
    """Creates, reads and corrects FeedbackAnalysis rows."""

    def __init__(self, categorizer: Categorizer, session_factory: sessionmaker = None):
        self.categorizer = categorizer
        self.session_factory = session_factory

    def get(self, feedback_id: int) -> Optional[FeedbackAnalysis]:
        """Get the analysis for a feedback item, or None."""
        with get_db_context(self.session_factory) as db:
            row = db.get(DBFeedbackAnalysis, feedback_id)
            return FeedbackAnalysis.model_validate(row) if row else None

    def exists(self, feedback_id: int) -> bool:
        return self.get(feedback_id) is not None

    async def get_or_create(self, feedback_id: int, comment: Optional[str]) -> FeedbackAnalysis:
        """
        Return the existing analysis or create the first one.

        Args:
            feedback_id: Feedback item ID
            comment: Feedback comment (None or blank means nothing to classify)

        Returns:
            The persisted analysis. If two callers race on the first creation,
            both get the row that won.
        """
        existing = await asyncio.to_thread(self.get, feedback_id)
        if existing is not None:
            return existing

        classification, word_count = await self._classify(comment)

        created = await asyncio.to_thread(self._insert, feedback_id, classification, word_count)
        if created is not None:
            logger.info(
                f"Created analysis for feedback {feedback_id}: "
                f"{classification.category_count} categories, {word_count} words"
            )
            return created

        logger.info(f"Analysis for feedback {feedback_id} was created concurrently, using stored row")
        return await asyncio.to_thread(self.get, feedback_id)

    async def reanalyze(self, feedback_id: int, comment: Optional[str]) -> FeedbackAnalysis:
        """
        Classify an edited comment again and overwrite the stored analysis.

        The flags and word count are replaced and reviewed_at is cleared, since
        a moderator review applied to the old text. Creates the row if the
        feedback had none.
        """
        classification, word_count = await self._classify(comment)

        updated = await asyncio.to_thread(
            self.update, feedback_id, classification, word_count, clear_review=True
        )
        if updated is None:
            created = await asyncio.to_thread(self._insert, feedback_id, classification, word_count)
            if created is not None:
                updated = created
            else:
                updated = await asyncio.to_thread(
                    self.update, feedback_id, classification, word_count, clear_review=True
                )

        logger.info(
            f"Re-analyzed feedback {feedback_id}: "
            f"{classification.category_count} categories, {word_count} words"
        )
        return updated

    def update(
        self,
        feedback_id: int,
        classification: Classification,
        word_count: Optional[int] = None,
        reviewed_at: Optional[datetime] = None,
        clear_review: bool = False
    ) -> Optional[FeedbackAnalysis]:
        """
        Overwrite the category flags of an existing analysis.

        word_count and reviewed_at are only changed when passed. clear_review
        resets reviewed_at to NULL and takes precedence over reviewed_at.

        Returns:
            Updated analysis, or None if the feedback has no analysis
        """
        with get_db_context(self.session_factory) as db:
            row = db.get(DBFeedbackAnalysis, feedback_id)
            if row is None:
                return None
            self._apply(row, classification)
            if word_count is not None:
                row.word_count = word_count
            if clear_review:
                row.reviewed_at = None
            elif reviewed_at is not None:
                row.reviewed_at = reviewed_at
            row.updated_at = datetime.utcnow()
            db.flush()
            return FeedbackAnalysis.model_validate(row)

    def save_review(
        self,
        feedback_id: int,
        classification: Classification,
        comment: Optional[str]
    ) -> Tuple[FeedbackAnalysis, bool]:
        """
        Store a moderator's classification.

        Word count is recomputed from the comment. reviewed_at is set the first
        time a moderator touches the analysis and kept afterwards.

        Returns:
            (analysis, created) where created is True if no row existed before
        """
        now = datetime.utcnow()
        word_count = count_words(comment)

        current = self.get(feedback_id)
        if current is not None:
            reviewed_at = now if current.reviewed_at is None else None
            return self.update(feedback_id, classification, word_count, reviewed_at), False

        created = self._insert(feedback_id, classification, word_count, reviewed_at=now)
        if created is not None:
            return created, True

        # Someone created it between our read and insert; apply the review on top
        current = self.get(feedback_id)
        reviewed_at = now if current.reviewed_at is None else None
        return self.update(feedback_id, classification, word_count, reviewed_at), False

    def _insert(
        self,
        feedback_id: int,
        classification: Classification,
        word_count: int,
        reviewed_at: Optional[datetime] = None
    ) -> Optional[FeedbackAnalysis]:
        """Insert the first analysis row; None if one was inserted concurrently."""
        now = datetime.utcnow()
        try:
            with get_db_context(self.session_factory) as db:
                row = DBFeedbackAnalysis(
                    feedback_id=feedback_id,
                    word_count=word_count,
                    created_at=now,
                    updated_at=now,
                    reviewed_at=reviewed_at,
                )
                self._apply(row, classification)
                db.add(row)
                db.flush()
                return FeedbackAnalysis.model_validate(row)
        except IntegrityError:
            # Only a duplicate key is a lost race; anything else (e.g. unknown feedback) propagates
            if self.get(feedback_id) is None:
                raise
            return None

    async def _classify(self, comment: Optional[str]) -> Tuple[Classification, int]:
        if comment and comment.strip():
            return await self.categorizer.classify_or_default(comment), count_words(comment)
        return Classification.empty(), 0

    @staticmethod
    def _apply(row: DBFeedbackAnalysis, classification: Classification) -> None:
        row.has_teaching = classification.has_teaching
        row.has_assessment = classification.has_assessment
        row.has_materials = classification.has_materials
        row.has_tips = classification.has_tips
