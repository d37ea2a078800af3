"""
Content hashing for the categorization cache.

Comments that differ only in case or whitespace normalize to the same text and
therefore share a cache key.
"""

import hashlib
import re
from typing import Optional

_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_comment(text: str) -> str:
    """Trim, lowercase and collapse whitespace runs to a single space."""
    return _WHITESPACE_RUN.sub(" ", text.strip().lower())


def hash_comment(text: str) -> str:
    """
    Generate the cache key for a comment.

    Args:
        text: Raw comment text

    Returns:
        64-character SHA-256 hex digest of the normalized UTF-8 text
    """
    return hashlib.sha256(normalize_comment(text).encode("utf-8")).hexdigest()


def count_words(text: Optional[str]) -> int:
    """Whitespace-token count of the raw comment (0 for None or blank)."""
    if not text:
        return 0
    return len(text.split())
