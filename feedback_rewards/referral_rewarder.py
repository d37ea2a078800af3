"""
Tiered referral bonuses.

A referrer earns points once per referred user, when that user submits their
first feedback (or orphaned feedback is linked to their new account). The
amount depends on how many referrals the referrer had already been paid for:

    prior paid referrals   0-4  -> 10 points
                           5-14 ->  5 points
                           15+  ->  1 point

The prior count comes from a per-referrer counter row that is incremented in
the same transaction as the ledger insert. Selecting the counter FOR UPDATE
locks the row, so concurrent awards for one referrer take consecutive
positions instead of both reading the same count. A duplicate award rolls
the whole transaction back, counter included.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .database import get_db_context
from .db_models import DBReferralCounter, POINT_SOURCE_REFERRAL
from .exceptions import LedgerConflictError
from .point_ledger import PointLedger
from .readers import UserReader

logger = logging.getLogger(__name__)

# (exclusive upper bound on prior referrals, points)
REFERRAL_TIERS = ((5, 10), (15, 5))
REFERRAL_FLOOR_POINTS = 1


def tier_for(prior_referral_count: int) -> int:
    """Points for the next referral given how many were already paid."""
    for upper_bound, points in REFERRAL_TIERS:
        if prior_referral_count < upper_bound:
            return points
    return REFERRAL_FLOOR_POINTS


class ReferralRewarder:
    """Awards referrers through the point ledger."""

    def __init__(self, ledger: PointLedger, user_reader: UserReader, session_factory: sessionmaker = None):
        self.ledger = ledger
        self.user_reader = user_reader
        self.session_factory = session_factory

    tier_for = staticmethod(tier_for)

    def referral_count(self, user_id: int) -> int:
        """Number of referrals the user has been paid for."""
        return self.ledger.count_entries(user_id, POINT_SOURCE_REFERRAL)

    def check_and_award(self, new_user_id: int) -> bool:
        """
        Pay the referrer of new_user_id, once.

        Returns:
            True if an award was written, False if the user has no referrer or
            the referrer was already paid for this user
        """
        user = self.user_reader.get_user(new_user_id)
        if user is None or user.referred_by_user_id is None:
            return False

        referrer_id = user.referred_by_user_id
        if referrer_id == new_user_id:
            logger.warning(f"User {new_user_id} is recorded as their own referrer, skipping")
            return False

        if self.ledger.has_award(referrer_id, POINT_SOURCE_REFERRAL, new_user_id):
            logger.debug(f"Referrer {referrer_id} already awarded for user {new_user_id}")
            return False

        self._ensure_counter(referrer_id)
        try:
            with get_db_context(self.session_factory) as db:
                prior = self._claim_position(db, referrer_id)
                points = tier_for(prior)
                self.ledger.insert_award(
                    db,
                    referrer_id,
                    POINT_SOURCE_REFERRAL,
                    new_user_id,
                    points,
                    f"Referral #{prior + 1}",
                )
        except LedgerConflictError:
            logger.info(f"Referral award for referrer={referrer_id}, user={new_user_id} written concurrently")
            return False

        logger.info(
            f"Awarded referral points: referrer={referrer_id}, new_user={new_user_id}, "
            f"referral #{prior + 1}, points={points}"
        )
        return True

    def _claim_position(self, db: Session, referrer_id: int) -> int:
        """
        Increment the referrer's counter and return its previous value.

        The counter row must exist (see _ensure_counter).
        """
        counter = (
            db.query(DBReferralCounter)
            .filter(DBReferralCounter.user_id == referrer_id)
            .with_for_update()
            .one()
        )
        prior = counter.awarded_count
        counter.awarded_count = prior + 1
        counter.updated_at = datetime.utcnow()
        db.flush()
        return prior

    def _ensure_counter(self, referrer_id: int) -> None:
        """Create the counter row in its own transaction if it is missing."""
        try:
            with get_db_context(self.session_factory) as db:
                if db.get(DBReferralCounter, referrer_id) is not None:
                    return
                db.add(DBReferralCounter(
                    user_id=referrer_id,
                    awarded_count=PointLedger.count_entries_in(db, referrer_id, POINT_SOURCE_REFERRAL),
                    updated_at=datetime.utcnow(),
                ))
        except IntegrityError:
            logger.debug(f"Referral counter for {referrer_id} created concurrently")

    def counter_value(self, referrer_id: int) -> Optional[int]:
        with get_db_context(self.session_factory) as db:
            counter = db.get(DBReferralCounter, referrer_id)
            return counter.awarded_count if counter else None
