"""
Review models.

A review starts life as a concealed PendingReview under a ReviewPair and only
becomes a visible Review through the reveal transition.
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Boolean, LargeBinary, UniqueConstraint,
)

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class ReviewPair(Base):
    """Reveal state for the two reviews of one transaction."""
    __tablename__ = "review_pairs"

    transaction_id = Column(String(64), primary_key=True)
    state = Column(String(24), default="awaiting_first", index=True)  # ReviewPairState value

    # Per-pair AES key, wrapped with the master key. Never stored in plaintext.
    wrapped_key = Column(LargeBinary, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    reveal_deadline = Column(DateTime, nullable=False, index=True)
    revealed_at = Column(DateTime, nullable=True)


class PendingReview(Base):
    """A concealed review awaiting reveal."""
    __tablename__ = "pending_reviews"

    transaction_id = Column(String(64), primary_key=True)
    reviewer_id = Column(String(64), primary_key=True)
    target_user_id = Column(String(64), nullable=False)

    nonce = Column(LargeBinary, nullable=False)
    ciphertext = Column(LargeBinary, nullable=False)
    weight = Column(Float, default=1.0)
    moderation_status = Column(String(20), nullable=True)  # "pending" when flagged
    is_verified = Column(Boolean, default=False)

    submitted_at = Column(DateTime, default=utcnow, index=True)
    reveal_deadline = Column(DateTime, nullable=False)
    revealed = Column(Boolean, default=False)
    revealed_at = Column(DateTime, nullable=True)


class Review(Base):
    """A visible review."""
    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("transaction_id", "reviewer_id", name="uq_review_transaction_reviewer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)
    reviewer_id = Column(String(64), nullable=False, index=True)
    target_user_id = Column(String(64), nullable=False, index=True)

    rating = Column(Integer, nullable=False)
    text = Column(Text, nullable=True)
    declared_outcome = Column(String(20), nullable=False)
    weight = Column(Float, default=1.0)

    is_visible = Column(Boolean, default=True)
    is_verified = Column(Boolean, default=False)
    moderation_status = Column(String(20), nullable=True)

    submitted_at = Column(DateTime, default=utcnow)
    revealed_at = Column(DateTime, nullable=True)
