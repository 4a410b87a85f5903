"""Tests for structured logging and the metrics collector."""

import json
import logging

import pytest

from trustshield.utils.logging_config import (
    JSONFormatter,
    metrics,
    MetricsCollector,
    StructuredLogger,
    request_id_var,
    track_operation,
)


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    handler = CaptureHandler()
    target = logging.getLogger("trustshield.test")
    target.addHandler(handler)
    target.setLevel(logging.DEBUG)
    yield handler
    target.removeHandler(handler)


class TestStructuredLogger:
    def test_context_lands_on_record(self, captured):
        StructuredLogger("trustshield.test").info("Review concealed", transaction_id="tx-1")

        record = captured.records[0]
        assert record.getMessage() == "Review concealed"
        assert record.extra_data == {"transaction_id": "tx-1"}
        assert record.funcName == "test_context_lands_on_record"

    def test_json_output(self, captured):
        token = request_id_var.set("req-9")
        try:
            StructuredLogger("trustshield.test").warning("Slow sweep", seconds=12)
        finally:
            request_id_var.reset(token)

        entry = json.loads(JSONFormatter().format(captured.records[0]))
        assert entry["level"] == "WARNING"
        assert entry["data"] == {"seconds": 12}
        assert entry["request_id"] == "req-9"
        assert "exception" not in entry

    def test_exception_is_serialized(self, captured):
        try:
            raise ValueError("boom")
        except ValueError:
            StructuredLogger("trustshield.test").error("Reveal failed", exc_info=True)

        entry = json.loads(JSONFormatter().format(captured.records[0]))
        assert entry["exception"]["type"] == "ValueError"
        assert "boom" in entry["exception"]["traceback"]


class TestMetricsCollector:
    def test_counters_and_timings(self):
        collector = MetricsCollector()
        collector.increment("reviews.revealed")
        collector.increment("reviews.revealed", 2)
        collector.gauge("reviews.pending", 4)
        for value in (0.3, 0.1, 0.2):
            collector.timing("risk.analyze", value)

        stats = collector.get_stats()

        assert collector.counter("reviews.revealed") == 3
        assert stats["gauges"] == {"reviews.pending": 4}
        timing = stats["timings"]["risk.analyze"]
        assert timing["count"] == 3
        assert timing["min"] == 0.1
        assert timing["p50"] == 0.2
        assert timing["p95"] is None

    def test_samples_are_capped(self):
        collector = MetricsCollector(max_samples=5)
        for value in range(10):
            collector.timing("t", float(value))
        assert collector.get_stats()["timings"]["t"]["min"] == 5.0

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment("x")
        collector.reset()
        assert collector.counter("x") == 0


class TestTrackOperation:
    def test_buckets_by_risk_level(self):
        class Result:
            risk_level = "HIGH"

        @track_operation("unit_op")
        def run():
            return Result()

        before = metrics.counter("unit_op.risk.high")
        run()
        assert metrics.counter("unit_op.risk.high") == before + 1
