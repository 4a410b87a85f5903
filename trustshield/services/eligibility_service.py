"""
Review eligibility.

check_eligibility is pure: everything it needs comes in through accessor
callables, and it short-circuits on the first failed rule. The database
helpers below provide those accessors for the API and the review pipeline.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.models.review import PendingReview, Review, ReviewPair
from trustshield.models.transaction import Transaction
from trustshield.schemas.domain import (
    REVIEWABLE_STATUSES,
    TERMINAL_PAIR_STATES,
    EligibilityResult,
    ReviewPairState,
    TransactionStatus,
)
from trustshield.services.profile_service import ProfileAccessor
from trustshield.utils.clock import utcnow

logger = logging.getLogger(__name__)


def check_eligibility(
    reviewer_id: str,
    target_user_id: str,
    transaction_id: str,
    get_transaction: Callable[[str], Optional[Any]],
    has_already_reviewed: Callable[[str, str], bool],
    get_account_age_days: Callable[[str], Optional[float]],
    count_recent_reviews: Callable[[str, datetime], int],
    now: Callable[[], datetime] = utcnow,
    get_pair_state: Optional[Callable[[str], Optional[ReviewPairState]]] = None,
) -> EligibilityResult:
    """
    Decide whether reviewer_id may review target_user_id for a transaction.

    Args:
        get_transaction: transaction_id -> object with ``status`` and ``completed_at``, or None
        has_already_reviewed: (reviewer_id, transaction_id) -> True if a visible or pending review exists
        get_account_age_days: user_id -> account age in days, or None if unknown
        count_recent_reviews: (reviewer_id, since) -> reviews submitted since then
        now: clock
        get_pair_state: transaction_id -> blind review pair state, or None before the first review

    Returns:
        EligibilityResult with the first failing reason
    """
    if reviewer_id == target_user_id:
        return EligibilityResult(False, "Cannot review yourself")

    transaction = get_transaction(transaction_id)
    if transaction is None:
        return EligibilityResult(False, "Transaction not found")

    status = transaction.status
    if not isinstance(status, TransactionStatus):
        status = TransactionStatus.parse(status)
    if status not in REVIEWABLE_STATUSES:
        shown = status.value if status else transaction.status
        return EligibilityResult(False, f"Transaction not completed - status: {shown}")

    if has_already_reviewed(reviewer_id, transaction_id):
        return EligibilityResult(False, "Already reviewed this transaction")

    if get_pair_state is not None and get_pair_state(transaction_id) in TERMINAL_PAIR_STATES:
        return EligibilityResult(False, "Review period closed - reviews for this transaction are already published")

    current = now()
    completed_at = getattr(transaction, "completed_at", None)
    if completed_at is not None:
        if current - completed_at > timedelta(days=settings.review_window_days):
            return EligibilityResult(
                False, f"Review window expired (must review within {settings.review_window_days} days)"
            )

    account_age = get_account_age_days(reviewer_id)
    if account_age is None or account_age < settings.min_reviewer_account_age_days:
        return EligibilityResult(
            False,
            f"Account too new to review (must be {settings.min_reviewer_account_age_days}+ days old)",
        )

    recent = count_recent_reviews(reviewer_id, current - timedelta(hours=24))
    if recent >= settings.max_reviews_per_day:
        return EligibilityResult(
            False,
            "Too many reviews submitted recently. Please verify your account.",
            requires_verification=True,
        )

    return EligibilityResult(True)


# ==============================================================================
# DATABASE ACCESSORS
# ==============================================================================


def get_transaction(db: Session, transaction_id: str) -> Optional[Transaction]:
    return db.query(Transaction).filter(Transaction.id == transaction_id).first()


def has_already_reviewed(db: Session, reviewer_id: str, transaction_id: str) -> bool:
    visible = (
        db.query(Review.id)
        .filter(Review.reviewer_id == reviewer_id, Review.transaction_id == transaction_id)
        .first()
    )
    if visible is not None:
        return True
    pending = (
        db.query(PendingReview.transaction_id)
        .filter(PendingReview.reviewer_id == reviewer_id, PendingReview.transaction_id == transaction_id)
        .first()
    )
    return pending is not None


def get_pair_state(db: Session, transaction_id: str) -> Optional[ReviewPairState]:
    row = db.query(ReviewPair.state).filter(ReviewPair.transaction_id == transaction_id).first()
    return ReviewPairState(row[0]) if row else None


def count_recent_reviews(db: Session, reviewer_id: str, since: datetime) -> int:
    """Reviews written since ``since``, whether still concealed or already visible."""
    pending = (
        db.query(PendingReview)
        .filter(PendingReview.reviewer_id == reviewer_id, PendingReview.submitted_at >= since)
        .count()
    )
    # Revealed pending rows are already counted above
    visible = (
        db.query(Review)
        .outerjoin(
            PendingReview,
            and_(
                PendingReview.transaction_id == Review.transaction_id,
                PendingReview.reviewer_id == Review.reviewer_id,
            ),
        )
        .filter(
            Review.reviewer_id == reviewer_id,
            Review.submitted_at >= since,
            PendingReview.transaction_id.is_(None),
        )
        .count()
    )
    return pending + visible


def check_eligibility_for(
    db: Session,
    profiles: ProfileAccessor,
    reviewer_id: str,
    target_user_id: str,
    transaction_id: str,
    now: Callable[[], datetime] = utcnow,
) -> EligibilityResult:
    """check_eligibility wired to the database and a profile accessor."""
    result = check_eligibility(
        reviewer_id=reviewer_id,
        target_user_id=target_user_id,
        transaction_id=transaction_id,
        get_transaction=lambda tx_id: get_transaction(db, tx_id),
        has_already_reviewed=lambda uid, tx_id: has_already_reviewed(db, uid, tx_id),
        get_account_age_days=profiles.get_account_age_days,
        count_recent_reviews=lambda uid, since: count_recent_reviews(db, uid, since),
        now=now,
        get_pair_state=lambda tx_id: get_pair_state(db, tx_id),
    )
    if not result.allowed:
        logger.info(f"Review by {reviewer_id} on {transaction_id} not eligible: {result.reason}")
    return result


def find_reviewable_transaction(db: Session, user_id: str, other_user_id: str) -> Optional[Transaction]:
    """Most recent completed transaction between two users that user_id has not reviewed yet."""
    candidates = (
        db.query(Transaction)
        .filter(
            Transaction.status == TransactionStatus.DONE.value,
            or_(
                and_(Transaction.party_a == user_id, Transaction.party_b == other_user_id),
                and_(Transaction.party_a == other_user_id, Transaction.party_b == user_id),
            ),
        )
        .order_by(Transaction.completed_at.desc(), Transaction.initiated_at.desc())
        .all()
    )
    for transaction in candidates:
        if not has_already_reviewed(db, user_id, transaction.id):
            return transaction
    return None
