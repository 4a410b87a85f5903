"""Tests for device pattern detection."""

from datetime import timedelta

import pytest

from trustshield.models.risk_pattern import RiskPatternRecord
from trustshield.schemas.domain import PatternSeverity, PatternType
from trustshield.services.device_pattern_service import DevicePatternDetector, parse_user_agent

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1"
WINDOWS_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


class TestParseUserAgent:
    """Tests for coarse user agent parsing."""

    def test_mobile_safari(self):
        parsed = parse_user_agent(IPHONE_UA)
        assert parsed["device_type"] == "mobile"
        assert parsed["operating_system"] == "iOS"
        assert parsed["browser"] == "Safari"

    def test_desktop_chrome(self):
        parsed = parse_user_agent(WINDOWS_UA)
        assert parsed["device_type"] == "desktop"
        assert parsed["operating_system"] == "Windows"
        assert parsed["browser"] == "Chrome"

    def test_missing_user_agent(self):
        assert parse_user_agent(None) == {"device_type": None, "operating_system": None, "browser": None}


class TestDevicePatternDetector:
    """Tests for device-level abuse detection."""

    @pytest.fixture
    def detector(self, repository):
        return DevicePatternDetector(repository)

    def test_three_accounts_on_one_device_in_a_day_is_high(self, detector, clock):
        """Three accounts appearing on one device within a day flags rapid creation as HIGH."""
        for user in ("u1", "u2", "u3"):
            pattern = detector.track_device_usage(user, "device-1", action="signup", at=clock())
            clock.advance(hours=2)

        assert pattern is not None
        assert pattern.type == PatternType.RAPID_ACCOUNT_CREATION
        assert pattern.severity == PatternSeverity.HIGH
        assert sorted(pattern.affected_users) == ["u1", "u2", "u3"]

    def test_two_accounts_in_a_day_is_medium(self, detector, clock):
        detector.track_device_usage("u1", "device-1", at=clock())
        pattern = detector.track_device_usage("u2", "device-1", at=clock.advance(hours=1))
        assert pattern.severity == PatternSeverity.MEDIUM

    def test_many_accounts_in_a_day_is_critical(self, detector, clock):
        for i in range(6):
            pattern = detector.track_device_usage(f"u{i}", "device-1", at=clock.advance(minutes=10))
        assert pattern.severity == PatternSeverity.CRITICAL

    def test_slow_account_creation_not_flagged(self, detector, clock):
        """One new account per day or slower is normal household use."""
        detector.track_device_usage("u1", "device-1", at=clock())
        pattern = detector.track_device_usage("u2", "device-1", at=clock.advance(days=3))
        assert pattern is None

    def test_single_account_not_flagged(self, detector, clock):
        assert detector.track_device_usage("u1", "device-1", at=clock()) is None
        assert detector.track_device_usage("u1", "device-1", at=clock.advance(minutes=5)) is None

    def test_rapid_creation_pattern_is_persisted(self, detector, db, clock):
        for user in ("u1", "u2", "u3"):
            detector.track_device_usage(user, "device-1", at=clock.advance(minutes=30))
        stored = db.query(RiskPatternRecord).filter(
            RiskPatternRecord.pattern_type == PatternType.RAPID_ACCOUNT_CREATION.value
        ).all()
        assert len(stored) == 2  # MEDIUM at two accounts, HIGH at three
        assert {r.severity for r in stored} == {"MEDIUM", "HIGH"}

    def test_device_sharing_severity_ladder(self, detector, repository, clock):
        """Sharing severity grows with the number of accounts on the device."""
        for user in ("u1", "u2"):
            repository.record_device_event(user, "shared", at=clock())
        sharing = [p for p in detector.detect_device_patterns("u1") if p.type == PatternType.DEVICE_SHARING]
        assert sharing[0].severity == PatternSeverity.MEDIUM

        for user in ("u3", "u4"):
            repository.record_device_event(user, "shared", at=clock())
        sharing = [p for p in detector.detect_device_patterns("u1") if p.type == PatternType.DEVICE_SHARING]
        assert sharing[0].severity == PatternSeverity.HIGH

        for user in ("u5", "u6"):
            repository.record_device_event(user, "shared", at=clock())
        sharing = [p for p in detector.detect_device_patterns("u1") if p.type == PatternType.DEVICE_SHARING]
        assert sharing[0].severity == PatternSeverity.CRITICAL

    def test_sharing_evidence_includes_parsed_user_agent(self, detector, repository, clock):
        repository.record_device_event("u1", "shared", user_agent=IPHONE_UA, at=clock())
        repository.record_device_event("u2", "shared", at=clock())
        pattern = detector.detect_device_patterns("u2")[0]
        assert pattern.evidence["operating_system"] == "iOS"
        assert pattern.evidence["account_count"] == "2"

    def test_too_many_devices_per_user(self, repository, clock):
        detector = DevicePatternDetector(repository, max_devices_per_user=2)
        for i in range(3):
            repository.record_device_event("u1", f"device-{i}", at=clock())
        patterns = detector.detect_device_patterns("u1")
        assert [p.type for p in patterns] == [PatternType.MULTIPLE_ACCOUNTS]

    def test_no_events_no_patterns(self, detector):
        assert detector.detect_device_patterns("nobody") == []
        assert detector.calculate_device_risk_score([]) == 0.0

    def test_check_device_sharing_between_users(self, detector, repository, clock):
        assert detector.check_device_sharing("a", "b") is None

        repository.record_device_event("a", "d1", at=clock())
        repository.record_device_event("b", "d1", at=clock())
        assert detector.check_device_sharing("a", "b").severity == PatternSeverity.MEDIUM

        repository.record_device_event("a", "d2", at=clock())
        repository.record_device_event("b", "d2", at=clock())
        assert detector.check_device_sharing("a", "b").severity == PatternSeverity.HIGH

        repository.record_device_event("a", "d3", at=clock())
        repository.record_device_event("b", "d3", at=clock())
        pattern = detector.check_device_sharing("a", "b")
        assert pattern.severity == PatternSeverity.CRITICAL
        assert pattern.evidence["shared_count"] == "3"

    def test_analyze_device(self, detector, repository, clock):
        repository.record_device_event("u1", "d1", user_agent=WINDOWS_UA, at=clock())
        repository.record_device_event("u2", "d1", at=clock.advance(hours=3))
        analysis = detector.analyze_device("d1")
        assert analysis.total_accounts == 2
        assert analysis.browser == "Chrome"
        assert analysis.last_seen_at - analysis.first_seen_at == timedelta(hours=3)
        assert detector.analyze_device("unknown") is None
