"""Tests for transaction risk fusion."""

import pytest

from trustshield.pipelines.risk_pipeline import RiskAggregator, build_recommendations
from trustshield.schemas.domain import PatternType, RiskLevel
from trustshield.services.cache_service import ReportCache
from trustshield.services.device_pattern_service import DevicePatternDetector
from trustshield.services.ip_pattern_service import IpPatternDetector
from trustshield.services.location_pattern_service import LocationPatternDetector

BASE = (40.0, -75.0)
FIVE_KM_NORTH = (40.045, -75.0)
FAR_AWAY = (34.05, -118.24)


def ages(**days):
    return lambda user_id: days.get(user_id)


@pytest.fixture
def device_detector(repository):
    return DevicePatternDetector(repository)


@pytest.fixture
def ip_detector(repository):
    return IpPatternDetector(repository)


@pytest.fixture
def location_detector(repository, clock):
    return LocationPatternDetector(repository, now=clock)


@pytest.fixture
def aggregator(device_detector, ip_detector, location_detector, clock):
    return RiskAggregator(device_detector, ip_detector, location_detector, now=clock)


class TestRiskAggregator:
    def test_no_tracking_data_is_minimal(self, aggregator):
        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=200, bob=300))

        assert report.overall_risk_score == 0.0
        assert report.risk_level == RiskLevel.MINIMAL
        assert report.detected_patterns == []
        assert report.behavior_factors == []
        assert report.recommendations == ["No action needed"]
        assert set(report.component_scores) == {"device", "ip", "location", "behavior"}

    def test_new_accounts_close_together(self, aggregator, location_detector, clock):
        """Two young accounts 5km apart score 0.5 on behavior from location and age."""
        location_detector.track_location_change("alice", *BASE, at=clock())
        location_detector.track_location_change("bob", *FIVE_KM_NORTH, at=clock())

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=5, bob=8))

        assert report.component_scores["behavior"] == pytest.approx(0.5)
        assert report.behavior_factors == ["same_location", "both_accounts_new"]
        assert report.component_scores["location"] == pytest.approx(0.1)
        assert PatternType.PROXIMITY_COLLUSION in {p.type for p in report.detected_patterns}

    def test_distant_accounts_are_not_same_location(self, aggregator, location_detector, clock):
        location_detector.track_location_change("alice", *BASE, at=clock())
        location_detector.track_location_change("bob", *FAR_AWAY, at=clock())

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=100, bob=100))
        assert "same_location" not in report.behavior_factors

    def test_only_one_new_account_is_not_a_factor(self, aggregator):
        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=5, bob=100))
        assert "both_accounts_new" not in report.behavior_factors

    def test_unknown_age_is_not_a_factor(self, aggregator):
        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=5))
        assert "both_accounts_new" not in report.behavior_factors

    def test_shared_device(self, aggregator, device_detector, clock):
        device_detector.track_device_usage("alice", "device-1", at=clock())
        device_detector.track_device_usage("bob", "device-1", at=clock.advance(hours=1))

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=200, bob=200))

        assert "same_device" in report.behavior_factors
        assert report.component_scores["device"] > 0
        assert PatternType.DEVICE_SHARING in {p.type for p in report.detected_patterns}
        assert any("shared device" in r for r in report.recommendations)

    def test_shared_ip(self, aggregator, ip_detector, clock):
        ip_detector.track_ip_usage("alice", "198.51.100.20", at=clock())
        ip_detector.track_ip_usage("bob", "198.51.100.20", at=clock.advance(minutes=5))

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=200, bob=200))
        assert "same_ip" in report.behavior_factors
        assert report.component_scores["ip"] > 0

    def test_shared_contact_info(self, device_detector, ip_detector, location_detector, make_account, profiles, clock):
        make_account("alice", contact_hash="abc123")
        make_account("bob", contact_hash="abc123")
        make_account("carol", contact_hash="zzz999")
        aggregator = RiskAggregator(
            device_detector,
            ip_detector,
            location_detector,
            shares_contact_info=profiles.shares_contact_info,
            now=clock,
        )

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", profiles.get_account_age_days)
        assert report.behavior_factors == ["shared_contact_info"]
        assert report.component_scores["behavior"] == pytest.approx(0.4)

        other = aggregator.analyze_transaction_risk("tx-2", "alice", "carol", profiles.get_account_age_days)
        assert other.behavior_factors == []

    def test_behavior_score_is_capped(self, device_detector, ip_detector, location_detector, clock):
        device_detector.track_device_usage("alice", "device-1", at=clock())
        device_detector.track_device_usage("bob", "device-1", at=clock())
        ip_detector.track_ip_usage("alice", "198.51.100.20", at=clock())
        ip_detector.track_ip_usage("bob", "198.51.100.20", at=clock())
        location_detector.track_location_change("alice", *BASE, at=clock())
        location_detector.track_location_change("bob", *BASE, at=clock())
        aggregator = RiskAggregator(
            device_detector, ip_detector, location_detector, shares_contact_info=lambda a, b: True, now=clock
        )

        report = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=1, bob=1))

        assert report.component_scores["behavior"] == 1.0
        assert 0.0 <= report.overall_risk_score <= 1.0
        assert len(report.behavior_factors) == 5

    def test_trade_graph_patterns_are_reported_without_scoring(self, aggregator):
        partners = {"alice": {"bob"}, "bob": {"alice"}}
        report = aggregator.analyze_transaction_risk(
            "tx-1", "alice", "bob", ages(alice=200, bob=200), lambda u: partners.get(u, set())
        )

        assert [p.type for p in report.detected_patterns] == [PatternType.NO_OTHER_CONNECTIONS]
        assert report.overall_risk_score == 0.0
        assert any("wash trading" in r for r in report.recommendations)

    def test_cached_report_is_reused(self, device_detector, ip_detector, location_detector, clock):
        cache = ReportCache(max_size=10, ttl_seconds=600)
        aggregator = RiskAggregator(device_detector, ip_detector, location_detector, cache=cache, now=clock)

        first = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=200, bob=200))
        device_detector.track_device_usage("alice", "device-1", at=clock())
        device_detector.track_device_usage("bob", "device-1", at=clock())
        second = aggregator.analyze_transaction_risk("tx-1", "bob", "alice", ages(alice=200, bob=200))

        assert second is first
        assert cache.invalidate_user("alice") == 1
        third = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages(alice=200, bob=200))
        assert "same_device" in third.behavior_factors

    def test_report_serializes(self, aggregator, clock):
        data = aggregator.analyze_transaction_risk("tx-1", "alice", "bob", ages()).to_dict()
        assert data["risk_level"] == "MINIMAL"
        assert data["requires_manual_review"] is False
        assert data["analyzed_at"] == clock().isoformat()


class TestRecommendations:
    def test_level_actions(self):
        assert build_recommendations(RiskLevel.CRITICAL, [], [])[0].startswith("Block review")
        assert build_recommendations(RiskLevel.HIGH, [], [])[0].startswith("Hold review")
        assert build_recommendations(RiskLevel.MEDIUM, [], [])[0].startswith("Reduce review weight")

    def test_contact_recommendation(self):
        recommendations = build_recommendations(RiskLevel.LOW, [], ["shared_contact_info"])
        assert any("contact details" in r for r in recommendations)
