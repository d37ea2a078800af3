"""
Custom Exceptions for the Feedback Rewards backend.

None of these reach the end user: every public workflow recovers from them
locally (classify as unknown, award zero) and logs what happened.
"""

import logging
from typing import Optional


class RewardsError(Exception):
    """Base exception for all feedback rewards errors."""
    pass


# =============================================================================
# AI/LLM Exceptions
# =============================================================================

class ProviderError(RewardsError):
    """Raised when the AI classification provider is unavailable or returns garbage."""

    def __init__(self, provider: str, reason: str = None):
        self.provider = provider
        self.reason = reason
        msg = f"Categorization provider '{provider}' failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# =============================================================================
# Cache Exceptions
# =============================================================================

class CacheError(RewardsError):
    """Raised when a categorization cache lookup or write fails."""

    def __init__(self, operation: str, comment_hash: Optional[str] = None, reason: str = None):
        self.operation = operation
        self.comment_hash = comment_hash
        self.reason = reason
        msg = f"Categorization cache {operation} failed"
        if comment_hash:
            msg += f" for {comment_hash[:12]}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


# =============================================================================
# Ledger Exceptions
# =============================================================================

class LedgerConflictError(RewardsError):
    """Raised when a ledger insert collides with an entry written concurrently."""

    def __init__(self, user_id: int, source_type: str, reference_id: int):
        self.user_id = user_id
        self.source_type = source_type
        self.reference_id = reference_id
        super().__init__(
            f"Ledger entry already exists for user={user_id}, "
            f"source={source_type}, reference={reference_id}"
        )


class ConsistencyWarning(RewardsError):
    """
    Data-integrity problem that must not block the calling workflow.

    Never raised to callers; built and logged through log_consistency_warning.
    """

    def __init__(self, message: str, feedback_id: Optional[int] = None, user_id: Optional[int] = None):
        self.feedback_id = feedback_id
        self.user_id = user_id
        super().__init__(message)


def log_consistency_warning(
    logger: logging.Logger,
    message: str,
    feedback_id: Optional[int] = None,
    user_id: Optional[int] = None
) -> ConsistencyWarning:
    """Log a consistency problem at error level and return it for inspection."""
    warning = ConsistencyWarning(message, feedback_id=feedback_id, user_id=user_id)
    logger.error(f"Consistency warning: {warning} (feedback={feedback_id}, user={user_id})")
    return warning


# =============================================================================
# Configuration Exceptions
# =============================================================================

class ConfigurationError(RewardsError):
    """Raised when there's a configuration problem."""

    def __init__(self, setting: str, reason: str = None):
        self.setting = setting
        self.reason = reason
        msg = f"Configuration error: {setting}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class MissingAPIKeyError(ConfigurationError):
    """Raised when a required API key is missing."""

    def __init__(self, key_name: str):
        self.key_name = key_name
        super().__init__(key_name, "API key not configured")
