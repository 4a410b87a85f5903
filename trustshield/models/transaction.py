"""
Transaction model: a one-off exchange between two parties.
"""

from sqlalchemy import Column, String, Float, DateTime, Boolean, CheckConstraint

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("party_a <> party_b", name="ck_transaction_distinct_parties"),
    )

    id = Column(String(64), primary_key=True)
    party_a = Column(String(64), nullable=False, index=True)
    party_b = Column(String(64), nullable=False, index=True)

    initiated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(20), default="pending", index=True)  # TransactionStatus value

    estimated_value = Column(Float, nullable=True)  # USD
    location_confirmed = Column(Boolean, default=False)
    risk_score = Column(Float, nullable=True)

    def other_party(self, user_id: str) -> str:
        return self.party_b if user_id == self.party_a else self.party_a

    def involves(self, user_id: str) -> bool:
        return user_id in (self.party_a, self.party_b)
