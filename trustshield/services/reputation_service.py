"""
Reputation calculation.

The pure functions at the top turn reviews and trades into a ReputationScore.
ReputationService persists scores and badges and recomputes them after a
reveal or in cursor-resumable batches.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.exceptions import StorageError
from trustshield.models.reputation import ReputationBadgeRecord, ReputationRecord
from trustshield.models.review import Review
from trustshield.schemas.domain import (
    CompletedTrade,
    ReputationBadge,
    ReputationScore,
    ReviewerReputation,
    TrustLevel,
    WeightedReview,
)
from trustshield.services.profile_service import ProfileAccessor
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import log_execution_time, metrics

logger = logging.getLogger(__name__)


# ==============================================================================
# PURE CALCULATION
# ==============================================================================


def weighted_average(reviews: List[WeightedReview]) -> float:
    total_weight = sum(r.weight for r in reviews)
    if total_weight <= 0:
        return 0.0
    return sum(r.rating * r.weight for r in reviews) / total_weight


def calculate_trade_diversity(trades: List[CompletedTrade]) -> float:
    """
    Share of distinct counterparties among completed trades, bucketed.

    Fewer than the minimum number of trades gives a neutral 0.5.
    """
    if len(trades) < settings.min_trades_for_diversity:
        return 0.5

    ratio = len({t.other_user_id for t in trades}) / len(trades)
    if ratio > 0.8:
        return 1.0
    elif ratio > 0.5:
        return 0.8
    elif ratio > 0.3:
        return 0.5
    else:
        return 0.2


def determine_trust_level(total_reviews: int, diversity: float, identity_verified: bool) -> TrustLevel:
    if total_reviews >= 100 and diversity > 0.7:
        return TrustLevel.VERIFIED if identity_verified else TrustLevel.TRUSTED
    if total_reviews >= 20:
        return TrustLevel.ESTABLISHED
    if total_reviews >= 5:
        return TrustLevel.EMERGING
    return TrustLevel.NEW


def calculate_reputation_score(
    user_id: str,
    reviews_lookup: Callable[[str], List[WeightedReview]],
    verified_count_lookup: Callable[[str], int],
    completed_trades_lookup: Callable[[str], List[CompletedTrade]],
    badges_lookup: Callable[[str], List[ReputationBadge]],
    now: Callable[[], datetime] = utcnow,
) -> ReputationScore:
    reviews = reviews_lookup(user_id)
    diversity = calculate_trade_diversity(completed_trades_lookup(user_id))
    badges = list(badges_lookup(user_id))

    return ReputationScore(
        user_id=user_id,
        average_rating=weighted_average(reviews),
        total_reviews=len(reviews),
        verified_reviews=verified_count_lookup(user_id),
        trade_diversity_score=diversity,
        trust_level=determine_trust_level(
            len(reviews), diversity, ReputationBadge.IDENTITY_VERIFIED in badges
        ),
        badges=badges,
        last_updated=now(),
    )


def check_badge_eligibility(
    user_id: str,
    badge: ReputationBadge,
    reputation: ReputationScore,
    profile: ProfileAccessor,
) -> bool:
    if badge == ReputationBadge.IDENTITY_VERIFIED:
        return profile.has_identity_verified(user_id)

    if badge == ReputationBadge.VETERAN_TRADER:
        return reputation.total_reviews >= 100

    if badge == ReputationBadge.TOP_RATED:
        return reputation.average_rating >= 4.8 and reputation.total_reviews >= 50

    if badge == ReputationBadge.QUICK_RESPONDER:
        hours = profile.get_average_response_hours(user_id)
        return hours is not None and hours <= 24

    if badge == ReputationBadge.COMMUNITY_CONNECTOR:
        return reputation.trade_diversity_score >= 0.8

    if badge == ReputationBadge.VERIFIED_BUSINESS:
        return profile.has_business_verified(user_id)

    if badge == ReputationBadge.DISPUTE_FREE:
        return reputation.total_reviews >= 10 and not profile.has_disputes(user_id)

    if badge == ReputationBadge.FAST_TRADER:
        hours = profile.get_average_completion_hours(user_id)
        return reputation.total_reviews >= 10 and hours is not None and hours <= 48

    return False


def evaluate_badges(user_id: str, reputation: ReputationScore, profile: ProfileAccessor) -> List[ReputationBadge]:
    return [b for b in ReputationBadge if check_badge_eligibility(user_id, b, reputation, profile)]


# ==============================================================================
# PERSISTENCE
# ==============================================================================


class ReputationService:
    def __init__(self, db: Session, profiles: ProfileAccessor, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.profiles = profiles
        self.now = now

    def _visible_reviews(self, user_id: str):
        return self.db.query(Review).filter(Review.target_user_id == user_id, Review.is_visible.is_(True))

    def weighted_reviews(self, user_id: str) -> List[WeightedReview]:
        return [WeightedReview(rating=r.rating, weight=r.weight) for r in self._visible_reviews(user_id).all()]

    def verified_count(self, user_id: str) -> int:
        return self._visible_reviews(user_id).filter(Review.is_verified.is_(True)).count()

    def reviewer_reputation(self, user_id: str) -> ReviewerReputation:
        record = self.db.query(ReputationRecord).filter(ReputationRecord.user_id == user_id).first()
        if record is None:
            return ReviewerReputation(average_rating=0.0, total_reviews=0)
        return ReviewerReputation(average_rating=record.average_rating, total_reviews=record.total_reviews)

    def stored_badges(self, user_id: str) -> List[ReputationBadgeRecord]:
        return (
            self.db.query(ReputationBadgeRecord)
            .filter(ReputationBadgeRecord.user_id == user_id)
            .order_by(ReputationBadgeRecord.earned_at)
            .all()
        )

    def _sync_badges(self, user_id: str, earned: List[ReputationBadge]):
        """Add newly earned badges and revoke lost ones; held badges keep their earned_at."""
        current = {row.badge: row for row in self.stored_badges(user_id)}
        wanted = {b.value for b in earned}

        for value, row in current.items():
            if value not in wanted:
                self.db.delete(row)
                logger.info(f"Badge {value} revoked from {user_id}")
        for value in wanted - set(current):
            self.db.add(ReputationBadgeRecord(user_id=user_id, badge=value, earned_at=self.now()))
            metrics.increment(f"badges.awarded.{value}")

    def recompute(self, user_id: str, commit: bool = True) -> ReputationScore:
        provisional = calculate_reputation_score(
            user_id,
            reviews_lookup=self.weighted_reviews,
            verified_count_lookup=self.verified_count,
            completed_trades_lookup=self.profiles.get_completed_trades,
            badges_lookup=lambda uid: [],
            now=self.now,
        )
        badges = evaluate_badges(user_id, provisional, self.profiles)
        score = replace(
            provisional,
            badges=badges,
            trust_level=determine_trust_level(
                provisional.total_reviews,
                provisional.trade_diversity_score,
                ReputationBadge.IDENTITY_VERIFIED in badges,
            ),
        )

        record = self.db.query(ReputationRecord).filter(ReputationRecord.user_id == user_id).first()
        if record is None:
            record = ReputationRecord(user_id=user_id)
            self.db.add(record)
        record.average_rating = score.average_rating
        record.total_reviews = score.total_reviews
        record.verified_reviews = score.verified_reviews
        record.trade_diversity_score = score.trade_diversity_score
        record.trust_level = score.trust_level.value
        record.last_updated = score.last_updated
        self._sync_badges(user_id, badges)

        if commit:
            try:
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageError(f"Failed to store reputation for {user_id}") from e
        return score

    def recompute_for_reviews(self, db: Session, reviews: List[Review]):
        """Reveal and moderation hook: refresh every target of the changed reviews."""
        for target in sorted({r.target_user_id for r in reviews}):
            self.recompute(target)

    def get_reputation(self, user_id: str) -> ReputationScore:
        record = self.db.query(ReputationRecord).filter(ReputationRecord.user_id == user_id).first()
        if record is None:
            return self.recompute(user_id)

        badges = []
        for row in self.stored_badges(user_id):
            try:
                badges.append(ReputationBadge(row.badge))
            except ValueError:
                logger.warning(f"Unknown badge {row.badge} stored for {user_id}")
        return ReputationScore(
            user_id=user_id,
            average_rating=record.average_rating,
            total_reviews=record.total_reviews,
            verified_reviews=record.verified_reviews,
            trade_diversity_score=record.trade_diversity_score,
            trust_level=TrustLevel(record.trust_level),
            badges=badges,
            last_updated=record.last_updated,
        )

    @log_execution_time("trustshield.reputation")
    def recompute_batch(self, cursor: Optional[str] = None, batch_size: Optional[int] = None) -> Tuple[int, Optional[str]]:
        """
        Recompute the next batch of reviewed users after ``cursor`` (by user id).

        Returns:
            (users processed, cursor to resume from, or None when finished)
        """
        size = batch_size or settings.reputation_batch_size
        query = self.db.query(Review.target_user_id).distinct()
        if cursor is not None:
            query = query.filter(Review.target_user_id > cursor)
        user_ids = [row[0] for row in query.order_by(Review.target_user_id).limit(size).all()]

        for user_id in user_ids:
            self.recompute(user_id)

        metrics.increment("reputation.batch_recomputed", len(user_ids))
        next_cursor = user_ids[-1] if len(user_ids) == size else None
        return len(user_ids), next_cursor

    def recompute_all(self, batch_size: Optional[int] = None) -> int:
        total, cursor = 0, None
        while True:
            processed, cursor = self.recompute_batch(cursor, batch_size)
            total += processed
            if cursor is None:
                return total

    def review_statistics(self, user_id: str, recent_limit: int = 5) -> Dict[str, Any]:
        reviews = self._visible_reviews(user_id).order_by(Review.revealed_at.desc()).all()
        distribution = {str(star): 0 for star in range(1, 6)}
        for r in reviews:
            distribution[str(r.rating)] += 1

        verified = sum(1 for r in reviews if r.is_verified)
        return {
            "user_id": user_id,
            "total_reviews": len(reviews),
            "average_rating": weighted_average([WeightedReview(r.rating, r.weight) for r in reviews]),
            "rating_distribution": distribution,
            "verified_percentage": round(100.0 * verified / len(reviews), 1) if reviews else 0.0,
            "recent_reviews": [
                {
                    "transaction_id": r.transaction_id,
                    "reviewer_id": r.reviewer_id,
                    "rating": r.rating,
                    "text": r.text,
                    "weight": r.weight,
                    "revealed_at": r.revealed_at.isoformat() if r.revealed_at else None,
                }
                for r in reviews[:recent_limit]
            ],
        }

    def reviews_for_user(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Review]:
        """Visible reviews a user has received, newest first."""
        return (
            self._visible_reviews(user_id)
            .order_by(Review.revealed_at.desc(), Review.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def reviews_for_transaction(self, transaction_id: str) -> List[Review]:
        """Visible reviews of one transaction. Empty until the pair is revealed."""
        return (
            self.db.query(Review)
            .filter(Review.transaction_id == transaction_id, Review.is_visible.is_(True))
            .order_by(Review.id)
            .all()
        )

    def count_reviewed_users(self) -> int:
        return self.db.query(func.count(func.distinct(Review.target_user_id))).scalar() or 0
