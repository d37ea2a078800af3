"""
Celery Background Tasks for feedback rewards.

- populate_missing_analyses: categorize feedback that has no analysis yet
- recalculate_points: re-derive awards for approved feedback
- evict_categorization_cache: apply the cache TTL / size limits

Each task returns a JSON-serializable dict summary.
"""

import asyncio
import concurrent.futures
import logging
from typing import Dict

from celery import Task

from .categorization_cache import CategorizationCache
from .celery_app import celery_app
from .config import settings
from .rewards_service import FeedbackRewardsService

logger = logging.getLogger(__name__)

# Below the hard task time limit (1800s)
RUN_ASYNC_TIMEOUT = 1740


def run_async(coro):
    """
    Run an async coroutine from sync Celery context.

    Uses asyncio.run() when no loop is running, otherwise runs the coroutine
    on a fresh loop in a worker thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor() as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result(timeout=RUN_ASYNC_TIMEOUT)


@celery_app.task(bind=True, name="feedback_rewards.tasks.populate_missing_analyses")
def populate_missing_analyses(self: Task) -> Dict:
    """
    Create analysis rows for feedback that lacks one.

    Returns:
        dict: {created, failed, message}
    """
    try:
        self.update_state(state="PROCESSING", meta={"message": "Categorizing feedback..."})
        summary = run_async(FeedbackRewardsService.create().populate_missing_analyses())
        logger.info(f"Background task: {summary.message}")
        return summary.model_dump()
    except Exception as e:
        logger.error(f"Populate analyses task failed: {e}", exc_info=True)
        raise


@celery_app.task(bind=True, name="feedback_rewards.tasks.recalculate_points")
def recalculate_points(self: Task) -> Dict:
    """
    Re-derive feedback awards from stored analyses.

    Returns:
        dict: {created, updated, unchanged, failed, message}
    """
    try:
        self.update_state(state="PROCESSING", meta={"message": "Recalculating points..."})
        summary = FeedbackRewardsService.create().recalculate_points()
        logger.info(f"Background task: {summary.message}")
        return summary.model_dump()
    except Exception as e:
        logger.error(f"Recalculate points task failed: {e}", exc_info=True)
        raise


@celery_app.task(name="feedback_rewards.tasks.evict_categorization_cache")
def evict_categorization_cache() -> Dict:
    """Delete idle cache entries, then trim to the configured size."""
    deleted = CategorizationCache().evict(
        max_entries=settings.cache_max_entries,
        max_idle_days=settings.cache_max_idle_days,
    )
    return {"deleted": deleted}
