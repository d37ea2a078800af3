"""Value objects handed back by the scoring services."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


CATEGORY_FIELDS = ("has_teaching", "has_assessment", "has_materials", "has_tips")


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class Classification(BaseModel):
    """The four topic flags of a feedback comment."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    has_teaching: bool = False
    has_assessment: bool = False
    has_materials: bool = False
    has_tips: bool = False

    @classmethod
    def empty(cls) -> "Classification":
        """Conservative classification used when the provider is unavailable."""
        return cls()

    @classmethod
    def from_provider_payload(cls, payload: dict) -> "Classification":
        """Build from the provider's camelCase JSON, defaulting missing flags to False."""
        return cls(
            has_teaching=_flag(payload.get("hasTeaching")),
            has_assessment=_flag(payload.get("hasAssessment")),
            has_materials=_flag(payload.get("hasMaterials")),
            has_tips=_flag(payload.get("hasTips")),
        )

    @property
    def category_count(self) -> int:
        return sum(1 for name in CATEGORY_FIELDS if getattr(self, name))


class FeedbackAnalysis(Classification):
    """Stored analysis of one feedback item."""

    feedback_id: int
    word_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    @property
    def classification(self) -> Classification:
        return Classification(**{name: getattr(self, name) for name in CATEGORY_FIELDS})


class LedgerEntry(BaseModel):
    """Snapshot of a point ledger row."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    user_id: int
    source_type: str
    reference_id: int
    amount: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FeedbackRecord(BaseModel):
    """Feedback fields this package reads from the surrounding application."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    user_id: Optional[int] = None
    comment: Optional[str] = None
    approved_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.approved_at is not None


class UserRecord(BaseModel):
    """User fields this package reads from the surrounding application."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    referred_by_user_id: Optional[int] = None


# =============================================================================
# Batch job / moderation results
# =============================================================================

class PopulateSummary(BaseModel):
    """Result of creating missing analysis rows."""
    created: int = 0
    failed: int = 0
    message: str = ""


class RecalculationSummary(BaseModel):
    """Result of re-deriving feedback awards from stored analyses."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    message: str = ""


class AnalysisReviewResult(BaseModel):
    """Outcome of a moderator correcting an analysis."""
    feedback_id: int
    analysis: FeedbackAnalysis
    created: bool
    old_points: Optional[int] = None
    new_points: Optional[int] = None


class CacheStats(BaseModel):
    """Categorization cache and usage recorder counters."""
    entries: int = 0
    total_hits: int = 0
    recorded: int = 0
    failed: int = 0
    dropped: int = Field(default=0, description="Hit updates discarded because the queue was full")
