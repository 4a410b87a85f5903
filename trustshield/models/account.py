"""
Account profile as seen by the trust engine.

Only the fields the engine reads are mirrored here; the owning service keeps
the full profile.
"""

from sqlalchemy import Column, String, Float, DateTime, Boolean

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class Account(Base):
    __tablename__ = "accounts"

    user_id = Column(String(64), primary_key=True)
    account_type = Column(String(32), default="individual")  # AccountType value
    created_at = Column(DateTime, default=utcnow)

    # Verification state
    identity_verified = Column(Boolean, default=False)
    business_verified = Column(Boolean, default=False)

    # Contact fingerprints (hashed upstream), compared for collusion
    contact_hash = Column(String(64), nullable=True, index=True)

    # Mean time to answer a trade request
    average_response_hours = Column(Float, nullable=True)
