"""
Celery Application Configuration for the feedback rewards jobs.

Background jobs run outside the request path:
- Creating missing feedback analyses (AI categorization backfill)
- Recalculating feedback awards after scoring changes
- Evicting idle categorization cache entries (daily)

Usage:
    # Start Celery worker:
    celery -A feedback_rewards.celery_app worker --loglevel=info

    # Start the scheduler for cache eviction:
    celery -A feedback_rewards.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from .config import settings
from .logging_config import configure_logging

# =============================================================================
# Celery App Instance
# =============================================================================

celery_app = Celery(
    "feedback_rewards",
    broker=settings.effective_celery_broker_url,
    backend=settings.effective_celery_result_backend,
    include=["feedback_rewards.tasks"]
)

# =============================================================================
# Celery Configuration
# =============================================================================

beat_schedule = {}
if settings.cache_eviction_enabled:
    beat_schedule["evict-categorization-cache"] = {
        "task": "feedback_rewards.tasks.evict_categorization_cache",
        "schedule": crontab(hour=3, minute=30),
    }

celery_app.conf.update(
    # JSON only, never pickle
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    result_expires=3600,

    task_track_started=True,
    task_time_limit=1800,
    task_soft_time_limit=1680,

    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    timezone="UTC",
    enable_utc=True,

    beat_schedule=beat_schedule,

    # Run tasks inline when testing
    task_always_eager=settings.is_testing,
)

# Batch jobs call the AI provider; keep them off the maintenance queue
celery_app.conf.task_routes = {
    "feedback_rewards.tasks.populate_missing_analyses": {"queue": "analysis"},
    "feedback_rewards.tasks.recalculate_points": {"queue": "analysis"},
}



@setup_logging.connect
def setup_worker_logging(**kwargs):
    """Use this package's log format in workers instead of Celery's."""
    configure_logging()


__all__ = ["celery_app"]
