from datetime import datetime
from pydantic import BaseModel, Field
from typing import Dict, List, Optional


# ============== ELIGIBILITY ==============


class EligibilityRequest(BaseModel):
    reviewer_id: str
    target_user_id: str
    transaction_id: str


class EligibilityResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    requires_verification: bool = False


class ReviewableTransactionResponse(BaseModel):
    """Most recent transaction between two users that can still be reviewed."""
    transaction_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    eligible: bool


# ============== RISK ==============


class RiskAnalyzeRequest(BaseModel):
    transaction_id: str
    user_a: str
    user_b: str


class PatternResponse(BaseModel):
    type: str
    description: str
    severity: str
    affected_users: List[str]
    evidence: Dict[str, str]


class RiskReportResponse(BaseModel):
    transaction_id: str
    user_a: str
    user_b: str
    overall_risk_score: float
    risk_level: str  # MINIMAL, LOW, MEDIUM, HIGH, CRITICAL
    component_scores: Dict[str, float]  # device, ip, location, behavior
    detected_patterns: List[PatternResponse]
    behavior_factors: List[str]
    recommendations: List[str]
    requires_manual_review: bool
    analyzed_at: datetime


# ============== REVIEWS ==============


class ReviewSubmitRequest(BaseModel):
    transaction_id: str
    reviewer_id: str
    target_user_id: str
    rating: int  # 1-5, validated by the domain model
    declared_outcome: str  # done, scam, ...
    text: Optional[str] = Field(None, max_length=2000)

    # Optional request context for abuse tracking
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None


class ReviewSubmitResponse(BaseModel):
    transaction_id: str
    state: str
    weight: float
    moderation_required: bool
    revealed_review_ids: List[int]
    message: str


class ReviewResponse(BaseModel):
    id: int
    transaction_id: str
    reviewer_id: str
    target_user_id: str
    rating: int
    text: Optional[str] = None
    declared_outcome: str
    weight: float
    is_verified: bool
    moderation_status: Optional[str] = None
    revealed_at: Optional[datetime] = None


class WeightRequest(BaseModel):
    transaction_id: str
    reviewer_id: str
    target_user_id: str
    rating: int
    declared_outcome: str = "done"
    include_risk: bool = True


class WeightResponse(BaseModel):
    weight: float
    modifiers: List[str]
    risk_level: Optional[str] = None


class SweepResponse(BaseModel):
    revealed: int


# ============== REPUTATION ==============


class ReputationResponse(BaseModel):
    user_id: str
    average_rating: float
    total_reviews: int
    verified_reviews: int
    trade_diversity_score: float
    trust_level: str
    badges: List[str]
    last_updated: datetime


class BadgeResponse(BaseModel):
    badge: str
    description: str
    earned_at: datetime


class BadgeCheckResponse(BaseModel):
    badge: str
    eligible: bool


# ============== TRACKING ==============


class DeviceTrackRequest(BaseModel):
    user_id: str
    device_fingerprint: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    action: str = "login"


class IpTrackRequest(BaseModel):
    user_id: str
    ip_address: str
    action: str = "login"
    country: Optional[str] = Field(None, max_length=2)


class LocationTrackRequest(BaseModel):
    user_id: str
    new_latitude: float
    new_longitude: float
    old_latitude: Optional[float] = None
    old_longitude: Optional[float] = None


class TrackingResponse(BaseModel):
    recorded: bool
    patterns: List[PatternResponse]


# ============== ADMIN ==============


class ModerationItemResponse(BaseModel):
    id: int
    priority: str
    reason: str
    status: str
    related_accounts: List[str]
    evidence: Dict
    transaction_id: Optional[str] = None
    reviewer_id: Optional[str] = None
    decision: Optional[str] = None
    created_at: datetime


class ResolveModerationRequest(BaseModel):
    status: str = "resolved"  # resolved, dismissed
    notes: Optional[str] = None
    decision: Optional[str] = None  # approve, reject, allow


class PatternStatusRequest(BaseModel):
    status: str  # pending, resolved, dismissed
