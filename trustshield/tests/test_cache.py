"""Tests for the risk report cache."""

from datetime import timedelta

import pytest

from trustshield.schemas.domain import RiskAnalysisReport, RiskLevel
from trustshield.services import cache_service
from trustshield.services.cache_service import NullCache, ReportCache


def make_report(transaction_id="tx-1", user_a="alice", user_b="bob"):
    return RiskAnalysisReport(
        transaction_id=transaction_id,
        user_a=user_a,
        user_b=user_b,
        overall_risk_score=0.1,
        risk_level=RiskLevel.MINIMAL,
        component_scores={},
        detected_patterns=[],
        recommendations=[],
    )


@pytest.fixture
def cache_clock(monkeypatch, clock):
    monkeypatch.setattr(cache_service, "utcnow", clock)
    return clock


class TestReportCache:
    def test_key_ignores_user_order(self):
        assert ReportCache.make_key("tx-1", "bob", "alice") == ReportCache.make_key("tx-1", "alice", "bob")
        assert ReportCache.make_key("tx-1", "bob", "alice") == "tx-1:alice:bob"

    def test_set_then_get(self, cache_clock):
        cache = ReportCache(max_size=10, ttl_seconds=60)
        report = make_report()
        cache.set("tx-1:alice:bob", report)

        assert cache.get("tx-1:alice:bob") is report
        assert cache.get("tx-2:alice:bob") is None
        assert cache.size == 1

    def test_entries_expire_after_ttl(self, cache_clock):
        cache = ReportCache(max_size=10, ttl_seconds=60)
        cache.set("k", make_report())

        cache_clock.advance(seconds=30)
        assert cache.get("k") is not None

        cache_clock.advance(seconds=31)
        assert cache.get("k") is None
        assert cache.size == 0

    def test_full_cache_evicts_oldest(self, cache_clock):
        cache = ReportCache(max_size=2, ttl_seconds=600)
        cache.set("first", make_report())
        cache_clock.advance(seconds=1)
        cache.set("second", make_report())
        cache_clock.advance(seconds=1)
        cache.set("third", make_report())

        assert cache.get("first") is None
        assert cache.get("second") is not None
        assert cache.get("third") is not None
        assert cache.size == 2

    def test_invalidate_user_drops_reports_for_either_side(self, cache_clock):
        cache = ReportCache(max_size=10, ttl_seconds=600)
        cache.set(ReportCache.make_key("tx-1", "alice", "bob"), make_report())
        cache.set(ReportCache.make_key("tx-2", "carol", "alice"), make_report())
        cache.set(ReportCache.make_key("tx-3", "bob", "carol"), make_report())

        assert cache.invalidate_user("alice") == 2
        assert cache.size == 1
        assert cache.get(ReportCache.make_key("tx-3", "bob", "carol")) is not None

    def test_invalidate_user_does_not_match_transaction_ids(self, cache_clock):
        cache = ReportCache(max_size=10, ttl_seconds=600)
        cache.set(ReportCache.make_key("alice", "bob", "carol"), make_report())
        assert cache.invalidate_user("alice") == 0

    def test_clear(self, cache_clock):
        cache = ReportCache(max_size=10, ttl_seconds=600)
        cache.set("a", make_report())
        cache.set("b", make_report())
        cache.clear()
        assert cache.size == 0


class TestNullCache:
    def test_never_stores(self):
        cache = NullCache()
        cache.set("k", make_report())
        assert cache.get("k") is None
        assert cache.size == 0
        assert cache.invalidate_user("alice") == 0

    def test_key_matches_report_cache(self):
        assert NullCache.make_key("tx", "b", "a") == ReportCache.make_key("tx", "a", "b")
