"""
Database-backed cache for AI categorization results.

Avoids a second provider call for comments whose normalized text was already
classified. Caching is an optimization, never a correctness dependency:
every failure surfaces as CacheError and callers carry on as on a miss.

Hit bookkeeping (hit_count, last_accessed_at) is handed to CacheUsageRecorder,
which applies it off the read path and keeps aggregate counters of what
succeeded, failed or was dropped.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .database import get_db_context
from .db_models import DBCategorizationCache
from .exceptions import CacheError
from .models import CacheStats, Classification

logger = logging.getLogger(__name__)


class CategorizationCache:
    """Content-addressed store of comment hash -> Classification."""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def get(self, comment_hash: str) -> Optional[Classification]:
        """
        Look up a cached classification.

        Returns:
            Cached Classification or None on a miss

        Raises:
            CacheError: If the lookup itself failed
        """
        try:
            with get_db_context(self.session_factory) as db:
                row = db.get(DBCategorizationCache, comment_hash)
                if row is None:
                    logger.debug(f"Cache MISS: {comment_hash[:12]}")
                    return None
                logger.debug(f"Cache HIT: {comment_hash[:12]} (hits={row.hit_count})")
                return Classification.model_validate(row)
        except SQLAlchemyError as e:
            raise CacheError("lookup", comment_hash, str(e)) from e

    def put(self, comment_hash: str, classification: Classification) -> bool:
        """
        Store a classification if no entry exists for the hash yet.

        A concurrent writer that got there first wins; this call then does
        nothing.

        Returns:
            True if a row was inserted, False if one already existed

        Raises:
            CacheError: On storage failures other than the duplicate key
        """
        try:
            with get_db_context(self.session_factory) as db:
                if db.get(DBCategorizationCache, comment_hash) is not None:
                    return False
                now = datetime.utcnow()
                db.add(DBCategorizationCache(
                    comment_hash=comment_hash,
                    has_teaching=classification.has_teaching,
                    has_assessment=classification.has_assessment,
                    has_materials=classification.has_materials,
                    has_tips=classification.has_tips,
                    hit_count=0,
                    created_at=now,
                    last_accessed_at=now,
                ))
            logger.debug(f"Cache SET: {comment_hash[:12]}")
            return True
        except IntegrityError:
            logger.debug(f"Cache SET skipped, entry written concurrently: {comment_hash[:12]}")
            return False
        except SQLAlchemyError as e:
            raise CacheError("write", comment_hash, str(e)) from e

    def record_hit(self, comment_hash: str) -> bool:
        """
        Increment hit_count and refresh last_accessed_at.

        Returns:
            False if the entry no longer exists (e.g. evicted meanwhile)

        Raises:
            CacheError: If the update failed
        """
        try:
            with get_db_context(self.session_factory) as db:
                updated = (
                    db.query(DBCategorizationCache)
                    .filter(DBCategorizationCache.comment_hash == comment_hash)
                    .update(
                        {
                            DBCategorizationCache.hit_count: DBCategorizationCache.hit_count + 1,
                            DBCategorizationCache.last_accessed_at: datetime.utcnow(),
                        },
                        synchronize_session=False,
                    )
                )
                return updated > 0
        except SQLAlchemyError as e:
            raise CacheError("usage update", comment_hash, str(e)) from e

    def evict(self, max_entries: Optional[int] = None, max_idle_days: Optional[int] = None) -> int:
        """
        Apply the eviction policy.

        Entries idle for more than max_idle_days go first (TTL on
        last_accessed_at), then the least recently used entries are trimmed
        until at most max_entries remain. Either limit may be None to skip it.

        Returns:
            Number of entries deleted

        Raises:
            CacheError: If the deletion failed
        """
        deleted = 0
        try:
            with get_db_context(self.session_factory) as db:
                if max_idle_days is not None:
                    cutoff = datetime.utcnow() - timedelta(days=max_idle_days)
                    deleted += (
                        db.query(DBCategorizationCache)
                        .filter(DBCategorizationCache.last_accessed_at < cutoff)
                        .delete(synchronize_session=False)
                    )

                if max_entries is not None:
                    total = db.query(func.count(DBCategorizationCache.comment_hash)).scalar() or 0
                    overflow = total - max_entries
                    if overflow > 0:
                        stale_hashes = [
                            row.comment_hash for row in (
                                db.query(DBCategorizationCache.comment_hash)
                                .order_by(
                                    DBCategorizationCache.last_accessed_at.asc(),
                                    DBCategorizationCache.comment_hash.asc(),
                                )
                                .limit(overflow)
                            )
                        ]
                        deleted += (
                            db.query(DBCategorizationCache)
                            .filter(DBCategorizationCache.comment_hash.in_(stale_hashes))
                            .delete(synchronize_session=False)
                        )
        except SQLAlchemyError as e:
            raise CacheError("eviction", reason=str(e)) from e

        if deleted:
            logger.info(f"Evicted {deleted} categorization cache entries")
        return deleted

    def stats(self) -> CacheStats:
        """Entry count and total recorded hits."""
        try:
            with get_db_context(self.session_factory) as db:
                entries, total_hits = db.query(
                    func.count(DBCategorizationCache.comment_hash),
                    func.coalesce(func.sum(DBCategorizationCache.hit_count), 0),
                ).one()
                return CacheStats(entries=entries or 0, total_hits=int(total_hits or 0))
        except SQLAlchemyError as e:
            raise CacheError("stats", reason=str(e)) from e


class CacheUsageRecorder:
    """
    Queue handoff for cache hit bookkeeping.

    submit() never blocks and never raises. A single worker task applies the
    updates; failures are logged and counted, never propagated.

    Usage:
        recorder = CacheUsageRecorder(cache)
        recorder.start()
        ...
        await recorder.stop()
    """

    def __init__(self, cache: CategorizationCache, max_pending: int = 1000):
        self.cache = cache
        self.max_pending = max_pending
        self.recorded = 0
        self.failed = 0
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker on the running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        self._worker = asyncio.get_running_loop().create_task(self._run())

    def submit(self, comment_hash: str) -> bool:
        """
        Queue a hit for recording.

        Returns:
            False if the hit was dropped (recorder stopped or queue full)
        """
        if not self.running:
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(comment_hash)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Cache usage queue full, dropping hit for {comment_hash[:12]}")
            return False

    def apply(self, comment_hash: str) -> None:
        """Record one hit synchronously, counting the outcome."""
        try:
            self.cache.record_hit(comment_hash)
            self.recorded += 1
        except CacheError as e:
            self.failed += 1
            logger.warning(f"Cache usage update failed: {e}")

    async def _run(self) -> None:
        while True:
            comment_hash = await self._queue.get()
            try:
                await asyncio.to_thread(self.apply, comment_hash)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued hit has been applied."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        """Drain pending hits and stop the worker."""
        if not self.running:
            return
        await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def stats(self) -> CacheStats:
        """Cache counters combined with this recorder's outcome counters."""
        try:
            base = self.cache.stats()
        except CacheError as e:
            logger.warning(f"Cache stats unavailable: {e}")
            base = CacheStats()
        return base.model_copy(update={
            "recorded": self.recorded,
            "failed": self.failed,
            "dropped": self.dropped,
        })
