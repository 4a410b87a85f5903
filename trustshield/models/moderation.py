"""
Moderation queue, audit trail and account flags.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class ModerationItem(Base):
    __tablename__ = "moderation_queue"

    id = Column(Integer, primary_key=True, index=True)
    priority = Column(String(10), default="medium", index=True)  # low, medium, high, urgent
    reason = Column(String(64), nullable=False)
    evidence = Column(JSON, default=dict)
    related_accounts = Column(JSON, default=list)

    transaction_id = Column(String(64), nullable=True, index=True)
    reviewer_id = Column(String(64), nullable=True)  # author of the review in question
    review_id = Column(Integer, nullable=True)
    decision = Column(String(10), nullable=True)  # ModerationDecision value

    status = Column(String(12), default="open", index=True)  # open, resolved, dismissed
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)


class AccountFlag(Base):
    __tablename__ = "account_flags"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    reason = Column(String(64), nullable=False)
    transaction_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    cleared_at = Column(DateTime, nullable=True)


class RiskOverride(Base):
    """Moderator permission for a transaction that a CRITICAL risk check blocked."""
    __tablename__ = "risk_overrides"

    transaction_id = Column(String(64), primary_key=True)
    moderation_item_id = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    granted_at = Column(DateTime, default=utcnow)
