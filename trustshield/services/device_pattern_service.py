"""
Device pattern detection.

Flags accounts that sit on too many devices, devices shared by several
accounts, and bursts of account creation from one device.
"""

import logging
from typing import List, Optional

from trustshield.config import settings
from trustshield.schemas.domain import (
    DevicePatternAnalysis,
    PatternSeverity,
    PatternType,
    SuspiciousPattern,
)
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.severity import ladder, severity_weighted_score

logger = logging.getLogger(__name__)


def parse_user_agent(user_agent: Optional[str]) -> dict:
    """Coarse device type, OS and browser from a user agent string."""
    if not user_agent:
        return {"device_type": None, "operating_system": None, "browser": None}

    ua_lower = user_agent.lower()
    if "mobile" in ua_lower:
        device_type = "mobile"
    elif "tablet" in ua_lower or "ipad" in ua_lower:
        device_type = "tablet"
    else:
        device_type = "desktop"

    if "Windows" in user_agent:
        os_name = "Windows"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "iPhone" in user_agent or "iPad" in user_agent or "iOS" in user_agent:
        os_name = "iOS"
    elif "Mac OS" in user_agent:
        os_name = "macOS"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    if "Edg" in user_agent:
        browser = "Edge"
    elif "Chrome" in user_agent:
        browser = "Chrome"
    elif "Firefox" in user_agent:
        browser = "Firefox"
    elif "Safari" in user_agent:
        browser = "Safari"
    else:
        browser = "Unknown"

    return {"device_type": device_type, "operating_system": os_name, "browser": browser}


class DevicePatternDetector:
    """
    Detects device-level abuse from tracked device events.

    Checks:
    - One user spread over more devices than allowed
    - One device used by several accounts
    - Accounts appearing on a device faster than one per day
    """

    def __init__(self, repository: TrackingRepository, max_devices_per_user: Optional[int] = None):
        self.repository = repository
        self.max_devices_per_user = max_devices_per_user or settings.max_devices_per_user

    def analyze_device(self, device_fingerprint: str) -> Optional[DevicePatternAnalysis]:
        analysis = self.repository.device_analysis(device_fingerprint)
        if analysis is None:
            return None
        parsed = parse_user_agent(analysis.user_agent)
        analysis.device_type = parsed["device_type"]
        analysis.operating_system = parsed["operating_system"]
        analysis.browser = parsed["browser"]
        return analysis

    def detect_device_patterns(self, user_id: str) -> List[SuspiciousPattern]:
        patterns: List[SuspiciousPattern] = []
        fingerprints = self.repository.device_fingerprints_for_user(user_id)

        if len(fingerprints) > self.max_devices_per_user:
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.MULTIPLE_ACCOUNTS,
                    description=f"User active on {len(fingerprints)} different devices",
                    severity=PatternSeverity.MEDIUM,
                    affected_users=[user_id],
                    evidence={"device_count": str(len(fingerprints))},
                )
            )

        for fingerprint in fingerprints:
            analysis = self.analyze_device(fingerprint)
            if analysis is None or analysis.total_accounts <= 1:
                continue

            evidence = {
                "device_fingerprint": fingerprint,
                "account_count": str(analysis.total_accounts),
                "first_seen": analysis.first_seen_at.isoformat(),
                "last_seen": analysis.last_seen_at.isoformat(),
            }
            for key in ("device_type", "operating_system", "browser"):
                value = getattr(analysis, key)
                if value:
                    evidence[key] = value

            patterns.append(
                SuspiciousPattern(
                    type=PatternType.DEVICE_SHARING,
                    description=f"Device shared by {analysis.total_accounts} accounts",
                    severity=ladder(analysis.total_accounts, medium_floor=2, high_above=3, critical_above=5),
                    affected_users=list(analysis.associated_user_ids),
                    evidence=evidence,
                )
            )

        return patterns

    def detect_rapid_account_creation(self, device_fingerprint: str) -> Optional[SuspiciousPattern]:
        """
        Accounts per day seen on a device. Flags when above one per day.

        The day count is the whole number of days between first and last
        sighting, floored at one, so a same-day burst divides by one.
        """
        analysis = self.repository.device_analysis(device_fingerprint)
        if analysis is None or analysis.total_accounts < 2:
            return None

        days = max(1, (analysis.last_seen_at - analysis.first_seen_at).days)
        accounts_per_day = analysis.total_accounts / days
        if accounts_per_day <= 1.0:
            return None

        if accounts_per_day > 5:
            severity = PatternSeverity.CRITICAL
        elif accounts_per_day > 2:
            severity = PatternSeverity.HIGH
        else:
            severity = PatternSeverity.MEDIUM

        return SuspiciousPattern(
            type=PatternType.RAPID_ACCOUNT_CREATION,
            description=f"{analysis.total_accounts} accounts created from one device in {days} day(s)",
            severity=severity,
            affected_users=list(analysis.associated_user_ids),
            evidence={
                "device_fingerprint": device_fingerprint,
                "account_count": str(analysis.total_accounts),
                "accounts_per_day": f"{accounts_per_day:.2f}",
            },
        )

    def check_device_sharing(self, user_a: str, user_b: str) -> Optional[SuspiciousPattern]:
        shared = self.repository.shared_devices(user_a, user_b)
        if not shared:
            return None

        if len(shared) > 2:
            severity = PatternSeverity.CRITICAL
        elif len(shared) == 2:
            severity = PatternSeverity.HIGH
        else:
            severity = PatternSeverity.MEDIUM

        return SuspiciousPattern(
            type=PatternType.DEVICE_SHARING,
            description=f"Users share {len(shared)} device(s)",
            severity=severity,
            affected_users=[user_a, user_b],
            evidence={"shared_devices": ",".join(shared), "shared_count": str(len(shared))},
        )

    def calculate_device_risk_score(self, patterns: List[SuspiciousPattern]) -> float:
        return severity_weighted_score(patterns)

    def track_device_usage(
        self,
        user_id: str,
        device_fingerprint: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        action: str = "login",
        at=None,
    ) -> Optional[SuspiciousPattern]:
        """Record a device sighting; persist and return any rapid-creation pattern it completes."""
        self.repository.record_device_event(
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            action=action,
            at=at,
        )
        pattern = self.detect_rapid_account_creation(device_fingerprint)
        if pattern is not None:
            self.repository.record_patterns([pattern])
            logger.warning(
                f"Rapid account creation on device {device_fingerprint}: "
                f"{pattern.evidence['account_count']} accounts ({pattern.severity.value})"
            )
        return pattern
