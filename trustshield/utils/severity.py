"""
Severity weighting shared by every pattern detector.
"""

from typing import Iterable

from trustshield.schemas.domain import PatternSeverity, SuspiciousPattern

SEVERITY_WEIGHTS = {
    PatternSeverity.INFO: 0.1,
    PatternSeverity.LOW: 0.2,
    PatternSeverity.MEDIUM: 0.4,
    PatternSeverity.HIGH: 0.6,
    PatternSeverity.CRITICAL: 0.9,
}


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def severity_weight(severity: PatternSeverity) -> float:
    return SEVERITY_WEIGHTS[severity]


def severity_weighted_score(patterns: Iterable[SuspiciousPattern]) -> float:
    """Mean severity weight of the patterns, clamped to [0, 1]. Empty input scores 0."""
    weights = [SEVERITY_WEIGHTS[p.severity] for p in patterns]
    if not weights:
        return 0.0
    return clamp(sum(weights) / len(weights))


def ladder(count: int, medium_floor: int, high_above: int, critical_above: int) -> PatternSeverity:
    """
    Map a count onto MEDIUM / HIGH / CRITICAL.

    Counts above critical_above are CRITICAL, above high_above HIGH, and
    anything from medium_floor up is MEDIUM. Below medium_floor is INFO.
    """
    if count > critical_above:
        return PatternSeverity.CRITICAL
    if count > high_above:
        return PatternSeverity.HIGH
    if count >= medium_floor:
        return PatternSeverity.MEDIUM
    return PatternSeverity.INFO
