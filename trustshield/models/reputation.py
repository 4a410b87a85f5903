"""
Persisted reputation snapshots and earned badges.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, UniqueConstraint

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class ReputationRecord(Base):
    __tablename__ = "reputation_scores"

    user_id = Column(String(64), primary_key=True)
    average_rating = Column(Float, default=0.0)
    total_reviews = Column(Integer, default=0)
    verified_reviews = Column(Integer, default=0)
    trade_diversity_score = Column(Float, default=0.5)
    trust_level = Column(String(16), default="new")
    last_updated = Column(DateTime, default=utcnow)


class ReputationBadgeRecord(Base):
    __tablename__ = "reputation_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge", name="uq_badge_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    badge = Column(String(32), nullable=False)  # ReputationBadge value
    earned_at = Column(DateTime, default=utcnow)
