"""
Risk level utilities.
Maps a 0-1 risk score onto the five risk levels using configurable thresholds.
"""

from typing import Optional

from trustshield.config import settings
from trustshield.schemas.domain import RiskLevel


def derive_risk_from_score(
    score: float,
    low_threshold: Optional[float] = None,
    medium_threshold: Optional[float] = None,
    high_threshold: Optional[float] = None,
    critical_threshold: Optional[float] = None,
) -> RiskLevel:
    """
    Derive risk level from a score (0-1 scale).

    Args:
        score: The risk score (0-1)
        low_threshold: Score >= this = LOW (default from config)
        medium_threshold: Score >= this = MEDIUM (default from config)
        high_threshold: Score >= this = HIGH (default from config)
        critical_threshold: Score >= this = CRITICAL (default from config)

    Returns:
        RiskLevel
    """
    low = low_threshold if low_threshold is not None else settings.risk_low_threshold
    medium = medium_threshold if medium_threshold is not None else settings.risk_medium_threshold
    high = high_threshold if high_threshold is not None else settings.risk_high_threshold
    critical = critical_threshold if critical_threshold is not None else settings.risk_critical_threshold

    if score >= critical:
        return RiskLevel.CRITICAL
    elif score >= high:
        return RiskLevel.HIGH
    elif score >= medium:
        return RiskLevel.MEDIUM
    elif score >= low:
        return RiskLevel.LOW
    else:
        return RiskLevel.MINIMAL


def weight_multiplier_for(level: RiskLevel) -> float:
    """Review weight penalty the caller applies for a risk level."""
    if level == RiskLevel.HIGH:
        return 0.5
    if level == RiskLevel.MEDIUM:
        return 0.75
    return 1.0
