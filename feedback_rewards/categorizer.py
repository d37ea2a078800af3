"""
Feedback categorizer.

Checks the content-addressed cache before asking the AI provider, and stores
fresh results for the next identical (after normalization) comment.

Cache reads and writes are synchronous SQLAlchemy calls, so the async path
runs them in a worker thread to keep the event loop free.
"""

import asyncio
import logging
from typing import Optional

from .categorization_cache import CategorizationCache, CacheUsageRecorder
from .content_hashing import hash_comment
from .exceptions import CacheError, ProviderError
from .llm_providers import CategorizationProvider, get_categorization_provider
from .models import Classification

logger = logging.getLogger(__name__)


class Categorizer:
    """Classifies comments into the four feedback categories."""

    def __init__(
        self,
        cache: CategorizationCache,
        provider: CategorizationProvider = None,
        usage_recorder: Optional[CacheUsageRecorder] = None
    ):
        self.cache = cache
        self.provider = provider or get_categorization_provider()
        self.usage_recorder = usage_recorder

    async def classify(self, comment: str) -> Classification:
        """
        Classify a comment, serving repeated text from the cache.

        Raises:
            ProviderError: If the cache missed and the provider call failed.
                Callers that must not fail substitute Classification.empty().
        """
        comment_hash = hash_comment(comment)

        cached = await asyncio.to_thread(self._lookup, comment_hash)
        if cached is not None:
            await self._record_usage(comment_hash)
            return cached

        payload = await self.provider.categorize(comment)
        classification = Classification.from_provider_payload(payload)
        logger.info(
            f"Categorized comment {comment_hash[:12]} via {self.provider.name}: "
            f"{classification.category_count} categories"
        )

        try:
            await asyncio.to_thread(self.cache.put, comment_hash, classification)
        except CacheError as e:
            logger.warning(f"Could not cache categorization: {e}")

        return classification

    async def classify_or_default(self, comment: str) -> Classification:
        """Classify, falling back to the all-false classification on provider failure."""
        try:
            return await self.classify(comment)
        except ProviderError as e:
            logger.warning(f"AI categorization failed, using conservative defaults: {e}")
            return Classification.empty()

    def _lookup(self, comment_hash: str) -> Optional[Classification]:
        try:
            return self.cache.get(comment_hash)
        except CacheError as e:
            logger.warning(f"Categorization cache unavailable, treating as miss: {e}")
            return None

    async def _record_usage(self, comment_hash: str) -> None:
        if self.usage_recorder is not None and self.usage_recorder.running:
            self.usage_recorder.submit(comment_hash)
            return
        # No recorder running: apply inline, still best-effort
        try:
            await asyncio.to_thread(self.cache.record_hit, comment_hash)
        except CacheError as e:
            logger.warning(f"Cache usage update failed: {e}")
