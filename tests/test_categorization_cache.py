"""
Tests for the categorization cache and the usage recorder.

Covers insert-if-absent semantics, hit bookkeeping, eviction (idle TTL and
LRU trimming) and the recorder's queue behavior.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from feedback_rewards.categorization_cache import CacheUsageRecorder, CategorizationCache
from feedback_rewards.content_hashing import hash_comment
from feedback_rewards.db_models import DBCategorizationCache
from feedback_rewards.exceptions import CacheError
from feedback_rewards.models import Classification


@pytest.fixture
def cache(session_factory):
    return CategorizationCache(session_factory)


def _set_last_accessed(session_factory, comment_hash, when):
    db = session_factory()
    try:
        db.get(DBCategorizationCache, comment_hash).last_accessed_at = when
        db.commit()
    finally:
        db.close()


def _hit_count(session_factory, comment_hash):
    db = session_factory()
    try:
        return db.get(DBCategorizationCache, comment_hash).hit_count
    finally:
        db.close()


# =============================================================================
# GET / PUT
# =============================================================================

class TestGetPut:
    """Lookup and insert-if-absent."""

    def test_miss_returns_none(self, cache):
        assert cache.get(hash_comment("never seen")) is None

    def test_put_then_get(self, cache):
        """Stored flags come back unchanged."""
        key = hash_comment("Great professor")
        classification = Classification(has_teaching=True, has_tips=True)

        assert cache.put(key, classification) is True
        assert cache.get(key) == classification

    def test_put_does_not_overwrite_existing_entry(self, cache):
        """First writer wins; a second put for the same hash is a no-op."""
        key = hash_comment("Great professor")
        cache.put(key, Classification(has_teaching=True))

        assert cache.put(key, Classification(has_assessment=True)) is False
        assert cache.get(key) == Classification(has_teaching=True)

    def test_new_entry_starts_with_zero_hits(self, cache, session_factory):
        key = hash_comment("Great professor")
        cache.put(key, Classification())
        assert _hit_count(session_factory, key) == 0

    def test_storage_failure_raises_cache_error(self):
        """Database errors surface as CacheError, not SQLAlchemy exceptions."""
        broken_factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
        cache = CategorizationCache(broken_factory)

        with pytest.raises(CacheError):
            cache.get(hash_comment("anything"))


# =============================================================================
# HIT BOOKKEEPING
# =============================================================================

class TestRecordHit:
    """hit_count and last_accessed_at updates."""

    def test_record_hit_increments_and_refreshes_access_time(self, cache, session_factory):
        key = hash_comment("Great professor")
        cache.put(key, Classification())
        old = datetime.utcnow() - timedelta(days=3)
        _set_last_accessed(session_factory, key, old)

        assert cache.record_hit(key) is True
        assert cache.record_hit(key) is True

        db = session_factory()
        try:
            row = db.get(DBCategorizationCache, key)
            assert row.hit_count == 2
            assert row.last_accessed_at > old
        finally:
            db.close()

    def test_record_hit_on_missing_entry(self, cache):
        """An entry evicted in the meantime is not recreated."""
        assert cache.record_hit(hash_comment("gone")) is False

    def test_stats(self, cache):
        first, second = hash_comment("one"), hash_comment("two")
        cache.put(first, Classification())
        cache.put(second, Classification())
        cache.record_hit(first)

        stats = cache.stats()
        assert stats.entries == 2
        assert stats.total_hits == 1


# =============================================================================
# EVICTION
# =============================================================================

class TestEviction:
    """Idle TTL and LRU trimming."""

    def test_idle_entries_are_evicted(self, cache, session_factory):
        fresh, stale = hash_comment("fresh"), hash_comment("stale")
        cache.put(fresh, Classification())
        cache.put(stale, Classification())
        _set_last_accessed(session_factory, stale, datetime.utcnow() - timedelta(days=200))

        assert cache.evict(max_idle_days=180) == 1
        assert cache.get(stale) is None
        assert cache.get(fresh) is not None

    def test_trim_removes_least_recently_used(self, cache, session_factory):
        """Overflow beyond max_entries is removed oldest access first."""
        now = datetime.utcnow()
        keys = [hash_comment(f"comment {i}") for i in range(4)]
        for age, key in enumerate(keys):
            cache.put(key, Classification())
            _set_last_accessed(session_factory, key, now - timedelta(hours=age))

        assert cache.evict(max_entries=2) == 2
        assert cache.get(keys[0]) is not None
        assert cache.get(keys[1]) is not None
        assert cache.get(keys[2]) is None
        assert cache.get(keys[3]) is None

    def test_evict_with_no_limits_deletes_nothing(self, cache):
        cache.put(hash_comment("keep"), Classification())
        assert cache.evict() == 0
        assert cache.stats().entries == 1

    def test_evict_under_capacity(self, cache):
        cache.put(hash_comment("keep"), Classification())
        assert cache.evict(max_entries=10, max_idle_days=30) == 0


# =============================================================================
# USAGE RECORDER
# =============================================================================

class TestCacheUsageRecorder:
    """Queue handoff of hit bookkeeping."""

    @pytest.mark.asyncio
    async def test_submitted_hits_are_applied(self, cache, session_factory):
        key = hash_comment("Great professor")
        cache.put(key, Classification())
        recorder = CacheUsageRecorder(cache)
        recorder.start()

        assert recorder.submit(key) is True
        assert recorder.submit(key) is True
        await recorder.stop()

        assert _hit_count(session_factory, key) == 2
        assert recorder.recorded == 2
        assert recorder.failed == 0

    def test_submit_when_not_running_counts_drop(self, cache):
        """A stopped recorder drops hits instead of raising."""
        recorder = CacheUsageRecorder(cache)
        assert recorder.submit(hash_comment("x")) is False
        assert recorder.dropped == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops_hits(self):
        """submit never blocks; overflow is counted as dropped."""
        blocker = asyncio.Event()
        cache = MagicMock()
        recorder = CacheUsageRecorder(cache, max_pending=1)

        async def stalled_run():
            await blocker.wait()

        recorder._queue = asyncio.Queue(maxsize=1)
        recorder._worker = asyncio.get_running_loop().create_task(stalled_run())

        assert recorder.submit("a" * 64) is True
        assert recorder.submit("b" * 64) is False
        assert recorder.dropped == 1

        blocker.set()
        await recorder._worker

    def test_apply_counts_failures(self):
        """A failing update is logged and counted, never raised."""
        cache = MagicMock()
        cache.record_hit.side_effect = CacheError("usage update", "a" * 64, "db down")
        recorder = CacheUsageRecorder(cache)

        recorder.apply("a" * 64)

        assert recorder.failed == 1
        assert recorder.recorded == 0

    @pytest.mark.asyncio
    async def test_stats_include_recorder_counters(self, cache):
        key = hash_comment("Great professor")
        cache.put(key, Classification())
        recorder = CacheUsageRecorder(cache)
        recorder.start()
        recorder.submit(key)
        await recorder.stop()
        recorder.submit(key)

        stats = recorder.stats()
        assert stats.entries == 1
        assert stats.total_hits == 1
        assert stats.recorded == 1
        assert stats.dropped == 1
