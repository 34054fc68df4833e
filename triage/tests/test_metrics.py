"""Tests for operation metrics."""

import pytest

from triage.pipeline.metrics import OperationMetrics


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestOperationMetrics:
    def test_empty_summary(self):
        metrics = OperationMetrics()
        assert metrics.summary() == {}
        assert metrics.summary("classify")["count"] == 0

    def test_measure_records_duration(self, clock):
        metrics = OperationMetrics(clock=clock)
        with metrics.measure("classify"):
            clock.now += 0.25

        snapshot = metrics.summary("classify")
        assert snapshot["count"] == 1
        assert snapshot["success"] == 1
        assert snapshot["avg_ms"] == 250.0

    def test_exception_counts_as_failure(self, clock):
        metrics = OperationMetrics(clock=clock)
        with pytest.raises(RuntimeError):
            with metrics.measure("destination.create"):
                raise RuntimeError("boom")

        snapshot = metrics.summary("destination.create")
        assert snapshot["failure"] == 1
        assert snapshot["success"] == 0

    def test_percentiles(self, clock):
        metrics = OperationMetrics(clock=clock)
        for ms in range(1, 21):
            started = metrics.start()
            clock.now += ms / 1000
            metrics.record("job", started)

        snapshot = metrics.summary("job")
        assert snapshot["count"] == 20
        assert snapshot["max_ms"] == pytest.approx(20.0)
        assert snapshot["p95_ms"] == pytest.approx(19.0)
        assert snapshot["avg_ms"] == pytest.approx(10.5)

    def test_samples_are_bounded(self, clock):
        metrics = OperationMetrics(max_samples=5, clock=clock)
        for _ in range(12):
            metrics.record("job", metrics.start(), success=False)
        assert metrics.summary("job")["count"] == 5

    def test_reset(self, clock):
        metrics = OperationMetrics(clock=clock)
        metrics.record("job", metrics.start())
        metrics.reset()
        assert metrics.summary() == {}
