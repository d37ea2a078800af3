"""
Tests for per-feedback analysis storage.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from feedback_rewards.analysis_store import AnalysisStore
from feedback_rewards.categorization_cache import CategorizationCache
from feedback_rewards.categorizer import Categorizer
from feedback_rewards.db_models import DBFeedbackAnalysis
from feedback_rewards.models import Classification
from tests.conftest import ALL_CATEGORIES, FakeProvider


def _store(session_factory, provider):
    categorizer = Categorizer(CategorizationCache(session_factory), provider=provider)
    return AnalysisStore(categorizer, session_factory)


def _analysis_rows(session_factory, feedback_id):
    db = session_factory()
    try:
        return db.query(DBFeedbackAnalysis).filter(DBFeedbackAnalysis.feedback_id == feedback_id).count()
    finally:
        db.close()


# =============================================================================
# GET OR CREATE
# =============================================================================

class TestGetOrCreate:
    """First analysis creation."""

    @pytest.mark.asyncio
    async def test_creates_analysis_with_word_count(self, session_factory, make_feedback):
        feedback_id = make_feedback(comment="Great lectures and fair exams overall")
        store = _store(session_factory, FakeProvider(ALL_CATEGORIES))

        analysis = await store.get_or_create(feedback_id, "Great lectures and fair exams overall")

        assert analysis.feedback_id == feedback_id
        assert analysis.category_count == 4
        assert analysis.word_count == 6
        assert analysis.reviewed_at is None

    @pytest.mark.asyncio
    async def test_second_call_returns_stored_row(self, session_factory, make_feedback):
        """Existing analysis is returned as-is without classifying again."""
        feedback_id = make_feedback()
        provider = FakeProvider()
        store = _store(session_factory, provider)

        first = await store.get_or_create(feedback_id, "Great course")
        provider.payload = ALL_CATEGORIES
        second = await store.get_or_create(feedback_id, "Completely different text")

        assert second.classification == first.classification
        assert provider.calls == 1
        assert _analysis_rows(session_factory, feedback_id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("comment", [None, "", "   "])
    async def test_blank_comment_gets_empty_analysis(self, session_factory, make_feedback, comment):
        feedback_id = make_feedback(comment=comment)
        provider = FakeProvider(ALL_CATEGORIES)
        store = _store(session_factory, provider)

        analysis = await store.get_or_create(feedback_id, comment)

        assert analysis.category_count == 0
        assert analysis.word_count == 0
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_provider_failure_degrades_to_empty_analysis(self, session_factory, make_feedback, failing_provider):
        """An unavailable provider still yields a row with a real word count."""
        feedback_id = make_feedback(comment="The professor was great")
        store = _store(session_factory, failing_provider)

        analysis = await store.get_or_create(feedback_id, "The professor was great")

        assert analysis.category_count == 0
        assert analysis.word_count == 4
        assert store.exists(feedback_id)

    @pytest.mark.asyncio
    async def test_lost_insert_race_returns_winning_row(self, session_factory, make_feedback, monkeypatch):
        """If another writer inserts first, the stored row is returned and no duplicate exists."""
        feedback_id = make_feedback()
        store = _store(session_factory, FakeProvider(ALL_CATEGORIES))
        winner = Classification(has_tips=True)

        original_get = store.get
        calls = {"n": 0}

        def racing_get(fid):
            # First read sees nothing; meanwhile a concurrent writer creates the row
            calls["n"] += 1
            if calls["n"] == 1:
                store._insert(fid, winner, 2)
                return None
            return original_get(fid)

        monkeypatch.setattr(store, "get", racing_get)

        analysis = await store.get_or_create(feedback_id, "Great course")

        assert analysis.classification == winner
        assert _analysis_rows(session_factory, feedback_id) == 1

    @pytest.mark.asyncio
    async def test_unknown_feedback_is_not_swallowed(self, session_factory, fake_provider):
        """Foreign key violations are not mistaken for a lost race."""
        store = _store(session_factory, fake_provider)

        with pytest.raises(IntegrityError):
            await store.get_or_create(9999, "Great course")


# =============================================================================
# UPDATE / MODERATOR REVIEW
# =============================================================================

class TestUpdates:
    """In-place mutation of stored analyses."""

    @pytest.mark.asyncio
    async def test_update_overwrites_flags(self, session_factory, make_feedback, fake_provider):
        feedback_id = make_feedback()
        store = _store(session_factory, fake_provider)
        await store.get_or_create(feedback_id, "Great course")

        updated = store.update(feedback_id, Classification(has_assessment=True, has_tips=True))

        assert updated.classification == Classification(has_assessment=True, has_tips=True)
        assert store.get(feedback_id).classification == updated.classification

    def test_update_missing_analysis_returns_none(self, session_factory, fake_provider):
        store = _store(session_factory, fake_provider)
        assert store.update(12345, Classification()) is None

    @pytest.mark.asyncio
    async def test_save_review_on_existing_analysis(self, session_factory, make_feedback, fake_provider):
        """First review stamps reviewed_at; later reviews keep it."""
        feedback_id = make_feedback(comment="Nice")
        store = _store(session_factory, fake_provider)
        await store.get_or_create(feedback_id, "Nice")

        analysis, created = store.save_review(feedback_id, Classification(has_tips=True), "Nice and helpful")
        assert created is False
        assert analysis.has_tips is True
        assert analysis.word_count == 3
        first_review = analysis.reviewed_at
        assert first_review is not None

        again, _ = store.save_review(feedback_id, Classification(has_materials=True), "Nice and helpful")
        assert again.reviewed_at == first_review
        assert again.classification == Classification(has_materials=True)

    def test_save_review_creates_missing_analysis(self, session_factory, make_feedback, fake_provider):
        feedback_id = make_feedback(comment="Good slides")
        store = _store(session_factory, fake_provider)

        analysis, created = store.save_review(feedback_id, Classification(has_materials=True), "Good slides")

        assert created is True
        assert analysis.reviewed_at is not None
        assert analysis.word_count == 2
        assert fake_provider.calls == 0

    def test_plain_update_keeps_reviewed_at(self, session_factory, make_feedback, fake_provider):
        """Only save_review and clear_review touch reviewed_at."""
        feedback_id = make_feedback(comment="Good slides")
        store = _store(session_factory, fake_provider)
        reviewed, _ = store.save_review(feedback_id, Classification(has_materials=True), "Good slides")

        updated = store.update(feedback_id, Classification(has_tips=True), word_count=5)

        assert updated.reviewed_at == reviewed.reviewed_at
        assert store.get(feedback_id).reviewed_at == reviewed.reviewed_at

    def test_update_can_clear_review(self, session_factory, make_feedback, fake_provider):
        feedback_id = make_feedback(comment="Good slides")
        store = _store(session_factory, fake_provider)
        store.save_review(feedback_id, Classification(has_materials=True), "Good slides")

        updated = store.update(feedback_id, Classification(), clear_review=True)

        assert updated.reviewed_at is None


# =============================================================================
# RE-ANALYSIS AFTER EDIT
# =============================================================================

class TestReanalyze:
    """Edited comments are classified again."""

    @pytest.mark.asyncio
    async def test_reanalyze_overwrites_flags_and_clears_review(self, session_factory, make_feedback):
        feedback_id = make_feedback(comment="Nice")
        provider = FakeProvider()
        store = _store(session_factory, provider)
        await store.get_or_create(feedback_id, "Nice")
        store.save_review(feedback_id, Classification(has_tips=True), "Nice")

        provider.payload = ALL_CATEGORIES
        analysis = await store.reanalyze(feedback_id, "Clear lectures, fair exams, good slides, start early")

        assert analysis.classification == Classification(
            has_teaching=True, has_assessment=True, has_materials=True, has_tips=True
        )
        assert analysis.word_count == 8
        assert analysis.reviewed_at is None
        assert provider.calls == 2
        assert _analysis_rows(session_factory, feedback_id) == 1

    @pytest.mark.asyncio
    async def test_reanalyze_provider_failure_resets_flags(self, session_factory, make_feedback, failing_provider):
        """A failed classification of the new text falls back to all-false, not the old flags."""
        feedback_id = make_feedback(comment="Good slides")
        store = _store(session_factory, failing_provider)
        store.save_review(feedback_id, Classification(has_materials=True), "Good slides")

        analysis = await store.reanalyze(feedback_id, "Good slides and clear notes")

        assert analysis.category_count == 0
        assert analysis.word_count == 5
        assert analysis.reviewed_at is None

    @pytest.mark.asyncio
    async def test_reanalyze_blank_comment(self, session_factory, make_feedback, fake_provider):
        feedback_id = make_feedback(comment="Good slides")
        store = _store(session_factory, fake_provider)
        await store.get_or_create(feedback_id, "Good slides")

        analysis = await store.reanalyze(feedback_id, "  ")

        assert analysis.category_count == 0
        assert analysis.word_count == 0
        assert fake_provider.calls == 1

    @pytest.mark.asyncio
    async def test_reanalyze_creates_missing_analysis(self, session_factory, make_feedback, fake_provider):
        feedback_id = make_feedback(comment="Great course")
        store = _store(session_factory, fake_provider)

        analysis = await store.reanalyze(feedback_id, "Great course")

        assert analysis.has_teaching is True
        assert analysis.word_count == 2
        assert store.exists(feedback_id)
