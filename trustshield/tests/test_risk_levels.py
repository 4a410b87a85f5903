"""Tests for risk level and severity utilities."""

import pytest

from trustshield.schemas.domain import PatternSeverity, PatternType, RiskLevel, SuspiciousPattern
from trustshield.utils.risk_levels import derive_risk_from_score, weight_multiplier_for
from trustshield.utils.severity import clamp, ladder, severity_weighted_score


def _pattern(severity):
    return SuspiciousPattern(
        type=PatternType.DEVICE_SHARING,
        description="test",
        severity=severity,
        affected_users=["u1"],
    )


class TestDeriveRiskFromScore:
    """Tests for score-based risk level calculation."""

    def test_minimal_scores(self):
        assert derive_risk_from_score(0.0) == RiskLevel.MINIMAL
        assert derive_risk_from_score(0.19) == RiskLevel.MINIMAL

    def test_thresholds_are_inclusive(self):
        """A score exactly on a threshold takes the higher level."""
        assert derive_risk_from_score(0.2) == RiskLevel.LOW
        assert derive_risk_from_score(0.4) == RiskLevel.MEDIUM
        assert derive_risk_from_score(0.6) == RiskLevel.HIGH
        assert derive_risk_from_score(0.8) == RiskLevel.CRITICAL

    def test_top_of_range(self):
        assert derive_risk_from_score(1.0) == RiskLevel.CRITICAL

    def test_custom_thresholds(self):
        assert derive_risk_from_score(0.5, critical_threshold=0.5) == RiskLevel.CRITICAL


class TestWeightMultiplier:
    """Tests for the weight penalty per risk level."""

    def test_penalties(self):
        assert weight_multiplier_for(RiskLevel.HIGH) == 0.5
        assert weight_multiplier_for(RiskLevel.MEDIUM) == 0.75

    def test_no_penalty_for_low_levels(self):
        assert weight_multiplier_for(RiskLevel.LOW) == 1.0
        assert weight_multiplier_for(RiskLevel.MINIMAL) == 1.0


class TestSeverityScore:
    """Tests for the shared severity-weighted score."""

    def test_empty_scores_zero(self):
        assert severity_weighted_score([]) == 0.0

    def test_single_pattern_uses_table_weight(self):
        assert severity_weighted_score([_pattern(PatternSeverity.HIGH)]) == pytest.approx(0.6)
        assert severity_weighted_score([_pattern(PatternSeverity.CRITICAL)]) == pytest.approx(0.9)

    def test_mean_of_patterns(self):
        patterns = [_pattern(PatternSeverity.LOW), _pattern(PatternSeverity.HIGH)]
        assert severity_weighted_score(patterns) == pytest.approx(0.4)

    def test_score_stays_in_range(self):
        patterns = [_pattern(s) for s in PatternSeverity] * 3
        assert 0.0 <= severity_weighted_score(patterns) <= 1.0


class TestLadder:
    """Tests for count-to-severity mapping."""

    def test_device_sharing_ladder(self):
        assert ladder(2, medium_floor=2, high_above=3, critical_above=5) == PatternSeverity.MEDIUM
        assert ladder(3, medium_floor=2, high_above=3, critical_above=5) == PatternSeverity.MEDIUM
        assert ladder(4, medium_floor=2, high_above=3, critical_above=5) == PatternSeverity.HIGH
        assert ladder(6, medium_floor=2, high_above=3, critical_above=5) == PatternSeverity.CRITICAL

    def test_below_floor_is_info(self):
        assert ladder(1, medium_floor=2, high_above=3, critical_above=5) == PatternSeverity.INFO

    def test_clamp(self):
        assert clamp(-0.5) == 0.0
        assert clamp(1.5) == 1.0
        assert clamp(0.3) == 0.3
