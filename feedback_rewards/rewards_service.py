"""
Feedback Rewards Service.

Entry points the feedback-submission and moderation workflows call:
- Feedback submitted: analyze, award, pay the referrer
- Comment edited: re-analyze, clear the review, re-derive the award
- Feedback approved / unapproved: restore or zero the award
- Analysis corrected by a moderator: store it, re-award if approved
- Orphaned feedback linked to a new account: pay the referrer
- Batch jobs: create missing analyses, recalculate all awards

Scoring is never allowed to break the surrounding operation. Every entry
point logs failures and returns a neutral result instead of raising.
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from .analysis_store import AnalysisStore
from .categorization_cache import CategorizationCache, CacheUsageRecorder
from .categorizer import Categorizer
from .config import settings
from .db_models import POINT_SOURCE_SUBMIT_FEEDBACK
from .llm_providers import CategorizationProvider
from .models import (
    AnalysisReviewResult,
    Classification,
    PopulateSummary,
    RecalculationSummary,
)
from .point_ledger import PointLedger, calculate_feedback_points
from .readers import FeedbackReader, SQLFeedbackReader, SQLUserReader, UserReader
from .referral_rewarder import ReferralRewarder

logger = logging.getLogger(__name__)

UNAPPROVED_REASON = "Feedback unapproved by admin"


class FeedbackRewardsService:
    """Wires categorization, analysis and the ledger into the platform's triggers."""

    def __init__(
        self,
        analysis_store: AnalysisStore,
        ledger: PointLedger,
        referrals: ReferralRewarder,
        feedback_reader: FeedbackReader
    ):
        self.analysis_store = analysis_store
        self.ledger = ledger
        self.referrals = referrals
        self.feedback_reader = feedback_reader

    @classmethod
    def create(
        cls,
        session_factory: sessionmaker = None,
        provider: CategorizationProvider = None,
        feedback_reader: FeedbackReader = None,
        user_reader: UserReader = None,
        usage_recorder: Optional[CacheUsageRecorder] = None
    ) -> "FeedbackRewardsService":
        """Build the service with SQL-backed readers unless others are given."""
        cache = CategorizationCache(session_factory)
        if usage_recorder is None:
            usage_recorder = CacheUsageRecorder(cache, max_pending=settings.usage_queue_size)
        categorizer = Categorizer(cache, provider=provider, usage_recorder=usage_recorder)
        ledger = PointLedger(session_factory)
        return cls(
            analysis_store=AnalysisStore(categorizer, session_factory),
            ledger=ledger,
            referrals=ReferralRewarder(ledger, user_reader or SQLUserReader(session_factory), session_factory),
            feedback_reader=feedback_reader or SQLFeedbackReader(session_factory),
        )

    @property
    def categorizer(self) -> Categorizer:
        return self.analysis_store.categorizer

    # =============================================================================
    # Submission & moderation triggers
    # =============================================================================

    async def on_feedback_submitted(self, feedback_id: int) -> int:
        """
        Analyze new feedback, award its author and pay their referrer.

        Returns:
            Points now recorded for the feedback (0 for anonymous feedback or
            on failure)
        """
        try:
            feedback = self.feedback_reader.get_feedback(feedback_id)
            if feedback is None:
                logger.warning(f"Feedback {feedback_id} not found, skipping scoring")
                return 0

            analysis = await self.analysis_store.get_or_create(feedback_id, feedback.comment)

            if feedback.user_id is None:
                logger.info(f"Feedback {feedback_id} is anonymous - skipping point award")
                return 0

            points = self.ledger.upsert_feedback_award(
                feedback.user_id, feedback_id, feedback.is_approved, analysis
            )
        except Exception as e:
            logger.error(f"Failed to award points for feedback {feedback_id}: {e}")
            return 0

        self.on_account_linked(feedback.user_id)
        return points

    async def on_feedback_edited(self, feedback_id: int, previous_comment: Optional[str] = None) -> int:
        """
        Re-analyze feedback whose comment was edited and re-derive its award.

        Call after the new comment is stored. If previous_comment is given and
        matches the stored comment, nothing is re-analyzed.

        Returns:
            Points now recorded for the feedback (0 for anonymous feedback or
            on failure)
        """
        try:
            feedback = self.feedback_reader.get_feedback(feedback_id)
            if feedback is None:
                logger.warning(f"Feedback {feedback_id} not found, skipping re-analysis")
                return 0

            if previous_comment is not None and previous_comment == feedback.comment:
                existing = self.ledger.points_for_entry(feedback.user_id, POINT_SOURCE_SUBMIT_FEEDBACK, feedback_id)
                return existing or 0

            analysis = await self.analysis_store.reanalyze(feedback_id, feedback.comment)

            if feedback.user_id is None:
                return 0

            points = self.ledger.upsert_feedback_award(
                feedback.user_id, feedback_id, feedback.is_approved, analysis
            )
        except Exception as e:
            logger.error(f"Failed to re-analyze feedback {feedback_id}: {e}")
            return 0

        logger.info(f"Feedback {feedback_id} edited, award now {points} points")
        return points

    def on_feedback_approved(self, feedback_id: int) -> int:
        """Restore the award after (re-)approval. Returns the restored amount."""
        try:
            user_id = self._author_of(feedback_id)
            if user_id is None:
                logger.info(f"Feedback {feedback_id} has no author - skipping point restoration")
                return 0
            return self.ledger.restore(user_id, feedback_id)
        except Exception as e:
            logger.error(f"Failed to restore points for feedback {feedback_id}: {e}")
            return 0

    def on_feedback_unapproved(self, feedback_id: int) -> bool:
        """Zero the award of unapproved feedback. Returns True if an award was zeroed."""
        try:
            user_id = self._author_of(feedback_id)
            if user_id is None:
                return False
            return self.ledger.zero_out(user_id, feedback_id, UNAPPROVED_REASON)
        except Exception as e:
            logger.error(f"Failed to zero out points for feedback {feedback_id}: {e}")
            return False

    def on_analysis_reviewed(
        self,
        feedback_id: int,
        classification: Classification
    ) -> Optional[AnalysisReviewResult]:
        """
        Store a moderator's classification and re-derive the award.

        Returns:
            The stored analysis with old and new points, or None if the
            feedback does not exist or the analysis could not be saved
        """
        try:
            feedback = self.feedback_reader.get_feedback(feedback_id)
            if feedback is None:
                logger.warning(f"Feedback {feedback_id} not found, cannot review analysis")
                return None
            old_points = self.ledger.points_for_entry(feedback.user_id, POINT_SOURCE_SUBMIT_FEEDBACK, feedback_id)
            analysis, created = self.analysis_store.save_review(feedback_id, classification, feedback.comment)
        except Exception as e:
            logger.error(f"Failed to save analysis review for feedback {feedback_id}: {e}")
            return None

        new_points = None
        if feedback.is_approved and feedback.user_id:
            try:
                new_points = self.ledger.upsert_feedback_award(feedback.user_id, feedback_id, True, analysis)
            except Exception as e:
                # Analysis update succeeded; points can be fixed by recalculation
                logger.error(f"Failed to update points for feedback {feedback_id}: {e}")

        logger.info(
            f"Analysis for feedback {feedback_id} {'created' if created else 'updated'} by moderator "
            f"(points {old_points} -> {new_points})"
        )
        return AnalysisReviewResult(
            feedback_id=feedback_id,
            analysis=analysis,
            created=created,
            old_points=old_points,
            new_points=new_points,
        )

    def on_account_linked(self, user_id: int) -> bool:
        """Pay the user's referrer if they have not been paid for this user yet."""
        try:
            return self.referrals.check_and_award(user_id)
        except Exception as e:
            logger.error(f"Failed to award referral points for user {user_id}: {e}")
            return False

    async def categorize_preview(self, comment: str) -> Classification:
        """
        Classify a comment without storing an analysis (preview while typing).

        Raises:
            ProviderError: If the provider is unavailable
        """
        return await self.categorizer.classify(comment)

    # =============================================================================
    # Batch jobs
    # =============================================================================

    async def populate_missing_analyses(self) -> PopulateSummary:
        """
        Create analysis rows for every feedback item that lacks one.

        Cache hits during the batch are recorded through the usage recorder,
        which is started for the run if the host has not started it.
        """
        try:
            missing = [fb for fb in self.feedback_reader.list_feedback() if not self.analysis_store.exists(fb.id)]
        except Exception as e:
            logger.error(f"Failed to list feedback for analysis: {e}")
            return PopulateSummary(message=f"Could not read feedback: {e}")

        if not missing:
            return PopulateSummary(message="All feedback already has analysis records")

        logger.info(f"Processing {len(missing)} feedback items for AI categorization...")
        summary = PopulateSummary()
        recorder = self.categorizer.usage_recorder
        started_here = recorder is not None and not recorder.running
        if started_here:
            recorder.start()
        try:
            for feedback in missing:
                try:
                    await self.analysis_store.get_or_create(feedback.id, feedback.comment)
                    summary.created += 1
                except Exception as e:
                    summary.failed += 1
                    logger.error(f"Failed to analyze feedback {feedback.id}: {e}")
        finally:
            if started_here:
                await recorder.stop()

        plural = "" if summary.created == 1 else "s"
        summary.message = f"Created {summary.created} analysis record{plural}"
        if summary.failed:
            summary.message += f" ({summary.failed} failed)"
        return summary

    def recalculate_points(self) -> RecalculationSummary:
        """
        Re-derive awards for approved feedback that has an analysis.

        Creates missing entries, updates changed ones, leaves matching ones.
        """
        summary = RecalculationSummary()
        try:
            approved = self.feedback_reader.list_approved_feedback()
        except Exception as e:
            logger.error(f"Failed to list approved feedback: {e}")
            summary.message = f"Could not read feedback: {e}"
            return summary

        for feedback in approved:
            try:
                analysis = self.analysis_store.get(feedback.id)
                if analysis is None:
                    continue

                existing = self.ledger.points_for_entry(feedback.user_id, POINT_SOURCE_SUBMIT_FEEDBACK, feedback.id)
                new_points = calculate_feedback_points(analysis)
                if existing == new_points:
                    summary.unchanged += 1
                    continue

                self.ledger.upsert_feedback_award(feedback.user_id, feedback.id, True, analysis)
                if existing is None:
                    summary.created += 1
                else:
                    summary.updated += 1
                    logger.info(f"Updated feedback {feedback.id}: {existing} -> {new_points} points")
            except Exception as e:
                summary.failed += 1
                logger.error(f"Failed to recalculate points for feedback {feedback.id}: {e}")

        parts = []
        if summary.created:
            parts.append(f"{summary.created} created")
        if summary.updated:
            parts.append(f"{summary.updated} updated")
        if summary.unchanged:
            parts.append(f"{summary.unchanged} unchanged")
        if summary.failed:
            parts.append(f"{summary.failed} failed")
        summary.message = f"Points recalculated: {', '.join(parts)}" if parts else "No feedback to process"
        return summary

    def _author_of(self, feedback_id: int) -> Optional[int]:
        feedback = self.feedback_reader.get_feedback(feedback_id)
        if feedback is None:
            logger.warning(f"Feedback {feedback_id} not found")
            return None
        return feedback.user_id
