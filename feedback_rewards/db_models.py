"""
SQLAlchemy database models.

Maps the scoring domain to PostgreSQL tables. Separate from the Pydantic
models (models.py) which are what the services hand back to callers.

Every "exactly one row" rule is a primary key or unique constraint here, so
concurrent writers collide at the storage layer instead of duplicating rows.
"""

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()

POINT_SOURCE_SUBMIT_FEEDBACK = "submit_feedback"
POINT_SOURCE_REFERRAL = "referral"
POINT_SOURCE_TYPES = (POINT_SOURCE_SUBMIT_FEEDBACK, POINT_SOURCE_REFERRAL)


# =============================================================================
# Tables owned by the surrounding application (read-only here)
# =============================================================================

class DBUser(Base):
    """User account table. Only the referral link is read by this package."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=True)
    referred_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DBUser(id={self.id}, referred_by={self.referred_by_user_id})>"


class DBFeedback(Base):
    """Course feedback table. Only comment, author and approval state are read."""
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    comment = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DBFeedback(id={self.id}, user={self.user_id}, approved={self.approved_at is not None})>"


# =============================================================================
# Scoring tables
# =============================================================================

class DBCategorizationCache(Base):
    """AI categorization results keyed by SHA-256 of the normalized comment."""
    __tablename__ = "ai_categorization_cache"

    comment_hash = Column(String(64), primary_key=True)

    has_teaching = Column(Boolean, nullable=False)
    has_assessment = Column(Boolean, nullable=False)
    has_materials = Column(Boolean, nullable=False)
    has_tips = Column(Boolean, nullable=False)

    hit_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_accessed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_categorization_cache_last_accessed', 'last_accessed_at'),
    )

    def __repr__(self):
        return f"<DBCategorizationCache(hash='{self.comment_hash[:12]}', hits={self.hit_count})>"


class DBFeedbackAnalysis(Base):
    """Category flags and word count for one feedback item."""
    __tablename__ = "feedback_analysis"

    feedback_id = Column(Integer, ForeignKey("feedback.id", ondelete="CASCADE"), primary_key=True)

    has_teaching = Column(Boolean, default=False, nullable=False)
    has_assessment = Column(Boolean, default=False, nullable=False)
    has_materials = Column(Boolean, default=False, nullable=False)
    has_tips = Column(Boolean, default=False, nullable=False)
    word_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)  # set by a moderator, independent of points

    def __repr__(self):
        return f"<DBFeedbackAnalysis(feedback_id={self.feedback_id}, words={self.word_count})>"


class DBPointLedgerEntry(Base):
    """One point grant per (user, source type, reference)."""
    __tablename__ = "point_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_type = Column(String(32), nullable=False)  # submit_feedback, referral
    reference_id = Column(Integer, nullable=False)  # feedback id or referred user id
    amount = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'source_type', 'reference_id', name='uq_point_ledger_key'),
        CheckConstraint(
            "source_type IN ('submit_feedback', 'referral')",
            name='ck_point_ledger_source_type'
        ),
        Index('idx_point_ledger_user_source', 'user_id', 'source_type'),
    )

    def __repr__(self):
        return (
            f"<DBPointLedgerEntry(user={self.user_id}, source='{self.source_type}', "
            f"ref={self.reference_id}, amount={self.amount})>"
        )


class DBReferralCounter(Base):
    """Per-referrer sequence of paid referrals, incremented atomically with each award."""
    __tablename__ = "referral_counters"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    awarded_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<DBReferralCounter(user={self.user_id}, count={self.awarded_count})>"
