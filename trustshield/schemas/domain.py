"""
Domain types shared by detectors, services and pipelines.

Enums use string values so they serialize directly into JSON columns and API
responses.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from trustshield.exceptions import ReviewValidationError
from trustshield.utils.clock import utcnow, to_naive_utc


class TransactionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    NO_DEAL = "no_deal"
    SCAM = "scam"  # Reported as fraud, triggers moderation
    DISPUTED = "disputed"

    @classmethod
    def parse(cls, value: str) -> Optional["TransactionStatus"]:
        for status in cls:
            if status.value == str(value).lower():
                return status
        return None


# Scam reports may be reviewed without full completion so fraud can be flagged
REVIEWABLE_STATUSES = {TransactionStatus.DONE, TransactionStatus.SCAM}


class AccountType(str, Enum):
    INDIVIDUAL = "individual"
    UNVERIFIED = "unverified"  # Never completed basic account verification
    BUSINESS_UNVERIFIED = "business_unverified"
    BUSINESS_VERIFIED = "business_verified"
    SUSPENDED = "suspended"


class PatternSeverity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PatternType(str, Enum):
    DEVICE_SHARING = "DEVICE_SHARING"
    IP_SHARING = "IP_SHARING"
    LOCATION_SPOOFING = "LOCATION_SPOOFING"
    LOCATION_HOPPING = "LOCATION_HOPPING"
    FREQUENT_LOCATION_CHANGES = "FREQUENT_LOCATION_CHANGES"
    COORDINATED_LOCATION_CHANGE = "COORDINATED_LOCATION_CHANGE"
    PROXIMITY_COLLUSION = "PROXIMITY_COLLUSION"
    RAPID_ACCOUNT_CREATION = "RAPID_ACCOUNT_CREATION"
    WASH_TRADING = "WASH_TRADING"
    NO_OTHER_CONNECTIONS = "NO_OTHER_CONNECTIONS"
    COORDINATED_REVIEWS = "COORDINATED_REVIEWS"
    VPN_ABUSE = "VPN_ABUSE"
    MULTIPLE_ACCOUNTS = "MULTIPLE_ACCOUNTS"


class RiskLevel(str, Enum):
    MINIMAL = "MINIMAL"  # 0.0 - 0.2
    LOW = "LOW"  # 0.2 - 0.4
    MEDIUM = "MEDIUM"  # 0.4 - 0.6
    HIGH = "HIGH"  # 0.6 - 0.8
    CRITICAL = "CRITICAL"  # 0.8 - 1.0


class TrustLevel(str, Enum):
    NEW = "new"
    EMERGING = "emerging"
    ESTABLISHED = "established"
    TRUSTED = "trusted"
    VERIFIED = "verified"


class ReputationBadge(str, Enum):
    IDENTITY_VERIFIED = "identity_verified"
    VETERAN_TRADER = "veteran_trader"
    TOP_RATED = "top_rated"
    QUICK_RESPONDER = "quick_responder"
    COMMUNITY_CONNECTOR = "community_connector"
    VERIFIED_BUSINESS = "verified_business"
    DISPUTE_FREE = "dispute_free"
    FAST_TRADER = "fast_trader"

    @property
    def description(self) -> str:
        return BADGE_DESCRIPTIONS[self]


BADGE_DESCRIPTIONS = {
    ReputationBadge.IDENTITY_VERIFIED: "Identity Verified",
    ReputationBadge.VETERAN_TRADER: "Veteran Trader - 100+ trades",
    ReputationBadge.TOP_RATED: "Top Rated Seller",
    ReputationBadge.QUICK_RESPONDER: "Quick Responder",
    ReputationBadge.COMMUNITY_CONNECTOR: "Community Connector",
    ReputationBadge.VERIFIED_BUSINESS: "Verified Business",
    ReputationBadge.DISPUTE_FREE: "Dispute-Free History",
    ReputationBadge.FAST_TRADER: "Fast & Reliable",
}


class ModerationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ModerationDecision(str, Enum):
    """What a moderator does with the review or transaction behind an item."""
    APPROVE = "approve"  # keep the held review as published
    REJECT = "reject"  # hide the review from reputation
    ALLOW = "allow"  # let a risk-blocked transaction be reviewed


class ReviewPairState(str, Enum):
    AWAITING_FIRST = "awaiting_first"
    AWAITING_SECOND = "awaiting_second"
    REVEALED = "revealed"
    REVEALED_BY_DEADLINE = "revealed_by_deadline"


TERMINAL_PAIR_STATES = {ReviewPairState.REVEALED, ReviewPairState.REVEALED_BY_DEADLINE}


# ============== DETECTION ==============


@dataclass
class SuspiciousPattern:
    """A single abuse signal produced by a detector."""
    type: PatternType
    description: str
    severity: PatternSeverity
    affected_users: List[str]
    evidence: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "severity": self.severity.value,
            "affected_users": list(self.affected_users),
            "evidence": dict(self.evidence),
        }


@dataclass
class DevicePatternAnalysis:
    device_fingerprint: str
    associated_user_ids: List[str]
    first_seen_at: datetime
    last_seen_at: datetime
    total_accounts: int
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    operating_system: Optional[str] = None
    browser: Optional[str] = None

    @property
    def suspicious_activity(self) -> bool:
        return self.total_accounts > 1


@dataclass
class IpPatternAnalysis:
    ip_address: str
    associated_user_ids: List[str]
    first_seen_at: datetime
    last_seen_at: datetime
    total_accounts: int
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    country: Optional[str] = None


@dataclass
class LocationChangeRecord:
    user_id: str
    new_latitude: float
    new_longitude: float
    changed_at: datetime
    old_latitude: Optional[float] = None
    old_longitude: Optional[float] = None


@dataclass
class LocationChangeAnalysis:
    """Per-user summary of consecutive profile location changes."""
    user_id: str
    changes: List[LocationChangeRecord]
    findings: List[str]
    average_distance_km: Optional[float]
    max_distance_km: float
    location_hopping_detected: bool
    impossible_movement_detected: bool
    frequent_changes_detected: bool


@dataclass
class RiskAnalysisReport:
    transaction_id: str
    user_a: str
    user_b: str
    overall_risk_score: float
    risk_level: RiskLevel
    component_scores: Dict[str, float]
    detected_patterns: List[SuspiciousPattern]
    recommendations: List[str]
    behavior_factors: List[str] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=utcnow)

    @property
    def requires_manual_review(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    @property
    def is_blocking(self) -> bool:
        return self.risk_level == RiskLevel.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "overall_risk_score": self.overall_risk_score,
            "risk_level": self.risk_level.value,
            "component_scores": dict(self.component_scores),
            "detected_patterns": [p.to_dict() for p in self.detected_patterns],
            "behavior_factors": list(self.behavior_factors),
            "recommendations": list(self.recommendations),
            "requires_manual_review": self.requires_manual_review,
            "analyzed_at": self.analyzed_at.isoformat(),
        }


# ============== REVIEWS ==============


@dataclass
class EligibilityResult:
    allowed: bool
    reason: Optional[str] = None
    requires_verification: bool = False


@dataclass
class ReviewSubmission:
    """
    A review as submitted by a user. Validated on construction so a bad
    submission is rejected before anything is persisted.
    """
    transaction_id: str
    reviewer_id: str
    target_user_id: str
    rating: int
    declared_outcome: TransactionStatus
    text: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        for name in ("transaction_id", "reviewer_id", "target_user_id"):
            if not getattr(self, name):
                raise ReviewValidationError(f"Field '{name}' is required", field=name)
        if isinstance(self.rating, bool) or not isinstance(self.rating, int):
            raise ReviewValidationError("Rating must be an integer", field="rating")
        if not 1 <= self.rating <= 5:
            raise ReviewValidationError("Rating must be between 1 and 5", field="rating")
        if not isinstance(self.declared_outcome, TransactionStatus):
            parsed = TransactionStatus.parse(self.declared_outcome) if self.declared_outcome else None
            if parsed is None:
                raise ReviewValidationError(
                    f"Invalid transaction status: {self.declared_outcome}", field="declared_outcome"
                )
            self.declared_outcome = parsed
        self.timestamp = to_naive_utc(self.timestamp)

    def to_json(self) -> str:
        data = asdict(self)
        data["declared_outcome"] = self.declared_outcome.value
        data["timestamp"] = self.timestamp.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "ReviewSubmission":
        data = json.loads(raw)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class ReviewWeight:
    weight: float
    modifiers: List[str]


@dataclass
class ReviewerReputation:
    average_rating: float
    total_reviews: int


@dataclass
class SubmissionOutcome:
    """What happened to a submitted review."""
    transaction_id: str
    reviewer_id: str
    accepted: bool
    state: Optional[ReviewPairState] = None
    weight: float = 0.0
    eligibility: Optional[EligibilityResult] = None
    revealed_review_ids: List[int] = field(default_factory=list)
    moderation_required: bool = False
    risk_report: Optional[RiskAnalysisReport] = None

    @property
    def message(self) -> str:
        if not self.accepted:
            return self.eligibility.reason if self.eligibility and self.eligibility.reason else "Review not accepted"
        if self.state in TERMINAL_PAIR_STATES:
            return "Review submitted. Both reviews are now visible."
        if self.moderation_required:
            return (
                "Review submitted and flagged for manual review. It will be visible after "
                "both parties submit reviews or the reveal deadline passes."
            )
        return "Review submitted. It will be visible after both parties submit reviews or the reveal deadline passes."


# ============== REPUTATION ==============


@dataclass
class WeightedReview:
    rating: float
    weight: float


@dataclass
class CompletedTrade:
    transaction_id: str
    other_user_id: str
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class ReputationScore:
    user_id: str
    average_rating: float
    total_reviews: int
    verified_reviews: int
    trade_diversity_score: float
    trust_level: TrustLevel
    badges: List[ReputationBadge]
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "average_rating": self.average_rating,
            "total_reviews": self.total_reviews,
            "verified_reviews": self.verified_reviews,
            "trade_diversity_score": self.trade_diversity_score,
            "trust_level": self.trust_level.value,
            "badges": [b.value for b in self.badges],
            "last_updated": self.last_updated.isoformat(),
        }
