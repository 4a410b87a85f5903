"""
Detected risk patterns, kept for moderation and audit.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship

from trustshield.database import Base
from trustshield.utils.clock import utcnow


class RiskPatternRecord(Base):
    __tablename__ = "risk_patterns"

    id = Column(Integer, primary_key=True, index=True)
    pattern_type = Column(String(40), nullable=False, index=True)  # PatternType value
    severity = Column(String(10), nullable=False)
    description = Column(Text)
    affected_users = Column(JSON, default=list)
    evidence = Column(JSON, default=dict)

    detected_at = Column(DateTime, default=utcnow, index=True)
    status = Column(String(12), default="pending")  # pending, resolved, dismissed
    resolved_at = Column(DateTime, nullable=True)

    subjects = relationship("RiskPatternSubject", cascade="all, delete-orphan")


class RiskPatternSubject(Base):
    """One row per affected user of a pattern, so lookups by user stay in SQL."""
    __tablename__ = "risk_pattern_subjects"

    pattern_id = Column(Integer, ForeignKey("risk_patterns.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
