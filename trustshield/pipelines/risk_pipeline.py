"""
Transaction risk fusion.

Combines the device, IP and location detectors with pairwise behavior signals
into one RiskAnalysisReport:

    overall = 0.30 * device + 0.25 * ip + 0.25 * location + 0.20 * behavior

The aggregator only reads. Acting on the report (weight penalties, manual
review, blocking) is the caller's job.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from trustshield.config import settings
from trustshield.schemas.domain import (
    PatternType,
    RiskAnalysisReport,
    RiskLevel,
    SuspiciousPattern,
)
from trustshield.services.cache_service import NullCache
from trustshield.services.device_pattern_service import DevicePatternDetector
from trustshield.services.ip_pattern_service import IpPatternDetector
from trustshield.services.location_pattern_service import LocationPatternDetector
from trustshield.services.trade_graph_service import TradeGraphAnalyzer
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import track_operation
from trustshield.utils.risk_levels import derive_risk_from_score
from trustshield.utils.severity import clamp, severity_weighted_score

logger = logging.getLogger(__name__)

COMPONENT_WEIGHTS = {
    "device": 0.30,
    "ip": 0.25,
    "location": 0.25,
    "behavior": 0.20,
}

# Fixed behavior increments for a pair of users
SAME_DEVICE_INCREMENT = 0.3
SAME_IP_INCREMENT = 0.2
SAME_LOCATION_INCREMENT = 0.3
BOTH_NEW_INCREMENT = 0.2
SHARED_CONTACT_INCREMENT = 0.4

AccountAgeLookup = Callable[[str], Optional[float]]
TradingPartnersLookup = Callable[[str], Iterable[str]]


def _dedupe(patterns: List[SuspiciousPattern]) -> List[SuspiciousPattern]:
    seen = set()
    unique = []
    for p in patterns:
        key = (p.type, p.description, tuple(sorted(p.affected_users)), tuple(sorted(p.evidence.items())))
        if key not in seen:
            seen.add(key)
            unique.append(p)
    return unique


def build_recommendations(level: RiskLevel, patterns: List[SuspiciousPattern], behavior_factors: List[str]) -> List[str]:
    recommendations = []

    if level == RiskLevel.CRITICAL:
        recommendations.append("Block review and flag both accounts for investigation")
    elif level == RiskLevel.HIGH:
        recommendations.append("Hold review for manual moderation and reduce its weight by half")
    elif level == RiskLevel.MEDIUM:
        recommendations.append("Reduce review weight and monitor both accounts")
    elif level == RiskLevel.LOW:
        recommendations.append("Proceed; keep monitoring")
    else:
        recommendations.append("No action needed")

    types = {p.type for p in patterns}
    if PatternType.DEVICE_SHARING in types or "same_device" in behavior_factors:
        recommendations.append("Verify the accounts belong to different people (shared device)")
    if PatternType.RAPID_ACCOUNT_CREATION in types:
        recommendations.append("Require identity verification for accounts created on this device")
    if PatternType.IP_SHARING in types or PatternType.COORDINATED_REVIEWS in types:
        recommendations.append("Check other reviews from the shared IP address")
    if PatternType.VPN_ABUSE in types:
        recommendations.append("Treat anonymized network activity with extra scrutiny")
    if types & {PatternType.LOCATION_SPOOFING, PatternType.LOCATION_HOPPING, PatternType.FREQUENT_LOCATION_CHANGES}:
        recommendations.append("Confirm profile location with a fresh location check")
    if types & {PatternType.COORDINATED_LOCATION_CHANGE, PatternType.PROXIMITY_COLLUSION}:
        recommendations.append("Review the accounts as a possible coordinated group")
    if PatternType.WASH_TRADING in types or PatternType.NO_OTHER_CONNECTIONS in types:
        recommendations.append("Inspect the trading circle for wash trading")
    if "shared_contact_info" in behavior_factors:
        recommendations.append("Accounts share contact details; likely the same person")

    return recommendations


class RiskAggregator:
    def __init__(
        self,
        device_detector: DevicePatternDetector,
        ip_detector: IpPatternDetector,
        location_detector: LocationPatternDetector,
        cache=None,
        shares_contact_info: Optional[Callable[[str, str], bool]] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.device_detector = device_detector
        self.ip_detector = ip_detector
        self.location_detector = location_detector
        self.cache = cache if cache is not None else NullCache()
        self.shares_contact_info = shares_contact_info or (lambda a, b: False)
        self.now = now

    # ==========================================================================
    # COMPONENTS
    # ==========================================================================

    def _device_component(self, user_a: str, user_b: str):
        pair = self.device_detector.check_device_sharing(user_a, user_b)
        pairwise = [pair] if pair else []
        per_user = {u: self.device_detector.detect_device_patterns(u) for u in (user_a, user_b)}
        score = max(severity_weighted_score(per_user[u] + pairwise) for u in per_user)
        return score, per_user[user_a] + per_user[user_b] + pairwise, pair is not None

    def _ip_component(self, user_a: str, user_b: str):
        pair = self.ip_detector.check_ip_sharing(user_a, user_b)
        pairwise = [pair] if pair else []
        per_user = {u: self.ip_detector.detect_ip_patterns(u) for u in (user_a, user_b)}
        score = max(severity_weighted_score(per_user[u] + pairwise) for u in per_user)
        return score, per_user[user_a] + per_user[user_b] + pairwise, pair is not None

    def _location_component(self, user_a: str, user_b: str):
        detector = self.location_detector
        single = {u: detector.detect_location_patterns(u) for u in (user_a, user_b)}

        pairwise = []
        for check in (detector.check_location_proximity, detector.check_location_pattern_similarity):
            pattern = check(user_a, user_b)
            if pattern is not None:
                pairwise.append(pattern)
        for user in (user_a, user_b):
            coordinated = detector.detect_coordinated_changes(user)
            if coordinated is not None:
                pairwise.append(coordinated)
        pairwise = _dedupe(pairwise)

        score = max(
            detector.calculate_location_risk_score(
                u, extra_pattern_count=sum(1 for p in pairwise if u in p.affected_users)
            )
            for u in (user_a, user_b)
        )

        distance = detector.distance_between_users_meters(user_a, user_b)
        same_location = distance is not None and (
            distance < settings.same_location_meters
            or any(p.type == PatternType.PROXIMITY_COLLUSION for p in pairwise)
        )
        return score, single[user_a] + single[user_b] + pairwise, same_location

    def _behavior_component(
        self,
        user_a: str,
        user_b: str,
        same_device: bool,
        same_ip: bool,
        same_location: bool,
        account_age_lookup: AccountAgeLookup,
    ):
        score = 0.0
        factors = []

        if same_device:
            score += SAME_DEVICE_INCREMENT
            factors.append("same_device")
        if same_ip:
            score += SAME_IP_INCREMENT
            factors.append("same_ip")
        if same_location:
            score += SAME_LOCATION_INCREMENT
            factors.append("same_location")

        age_a = account_age_lookup(user_a)
        age_b = account_age_lookup(user_b)
        if (
            age_a is not None
            and age_b is not None
            and age_a < settings.new_account_days
            and age_b < settings.new_account_days
        ):
            score += BOTH_NEW_INCREMENT
            factors.append("both_accounts_new")

        if self.shares_contact_info(user_a, user_b):
            score += SHARED_CONTACT_INCREMENT
            factors.append("shared_contact_info")

        return clamp(score), factors

    # ==========================================================================
    # FUSION
    # ==========================================================================

    @track_operation("risk.analyze")
    def analyze_transaction_risk(
        self,
        transaction_id: str,
        user_a: str,
        user_b: str,
        account_age_lookup: AccountAgeLookup,
        trading_partners_lookup: Optional[TradingPartnersLookup] = None,
    ) -> RiskAnalysisReport:
        """
        Assess how likely a transaction between two users is collusive.

        Args:
            transaction_id: Transaction being assessed
            user_a, user_b: The two parties
            account_age_lookup: user_id -> account age in days, or None
            trading_partners_lookup: user_id -> ids of past trading partners

        Returns:
            RiskAnalysisReport with component scores, patterns and recommendations
        """
        cache_key = self.cache.make_key(transaction_id, user_a, user_b)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        device_score, device_patterns, same_device = self._device_component(user_a, user_b)
        ip_score, ip_patterns, same_ip = self._ip_component(user_a, user_b)
        location_score, location_patterns, same_location = self._location_component(user_a, user_b)
        behavior_score, behavior_factors = self._behavior_component(
            user_a, user_b, same_device, same_ip, same_location, account_age_lookup
        )

        graph_patterns: List[SuspiciousPattern] = []
        if trading_partners_lookup is not None:
            graph_patterns = TradeGraphAnalyzer(trading_partners_lookup).analyze_pair(user_a, user_b)

        components: Dict[str, float] = {
            "device": device_score,
            "ip": ip_score,
            "location": location_score,
            "behavior": behavior_score,
        }
        overall = clamp(sum(COMPONENT_WEIGHTS[name] * value for name, value in components.items()))
        level = derive_risk_from_score(overall)

        patterns = _dedupe(device_patterns + ip_patterns + location_patterns + graph_patterns)
        report = RiskAnalysisReport(
            transaction_id=transaction_id,
            user_a=user_a,
            user_b=user_b,
            overall_risk_score=overall,
            risk_level=level,
            component_scores=components,
            detected_patterns=patterns,
            recommendations=build_recommendations(level, patterns, behavior_factors),
            behavior_factors=behavior_factors,
            analyzed_at=self.now(),
        )

        if level != RiskLevel.MINIMAL:
            logger.info(
                f"Transaction {transaction_id} risk {level.value} ({overall:.2f}): "
                f"{len(patterns)} patterns, factors={behavior_factors}"
            )

        self.cache.set(cache_key, report)
        return report
