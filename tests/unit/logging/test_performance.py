"""Unit tests for the Metronome performance logger."""

import pytest
from structlog.testing import capture_logs

from metronome.logging.performance import WINDOW_SIZE, OperationStats, OperationTiming, PerformanceLogger


class TestPerformanceLogger:
    """Test timing and aggregation."""

    def test_measure_records_success(self):
        """Test a successful block is timed and aggregated."""
        perf_logger = PerformanceLogger("metronome.test")

        with capture_logs() as logs:
            with perf_logger.measure("collect_snapshot", target="t1") as timer:
                pass

        assert timer.duration_ms is not None
        stats = perf_logger.get_stats("collect_snapshot")
        assert stats.total_calls == 1
        assert stats.success_rate == 100.0
        assert [entry["event"] for entry in logs] == ["Operation started", "Operation completed"]
        assert logs[-1]["target"] == "t1"

    def test_measure_records_failure_and_reraises(self):
        """Test a failing block is recorded as failed and the error propagates."""
        perf_logger = PerformanceLogger("metronome.test")

        with capture_logs() as logs:
            with pytest.raises(RuntimeError):
                with perf_logger.measure("collect_database_metadata"):
                    raise RuntimeError("boom")

        stats = perf_logger.get_stats("collect_database_metadata")
        assert stats.failed_calls == 1
        assert stats.last_error == "boom"
        assert logs[-1]["event"] == "Operation failed"
        assert logs[-1]["log_level"] == "warning"

    def test_slow_block_is_flagged(self):
        """Test a block over its budget logs a warning and counts as slow."""
        perf_logger = PerformanceLogger("metronome.test")

        with capture_logs() as logs:
            with perf_logger.measure("monitoring_cycle", slow_after=0.0) as timer:
                sum(range(1000))

        assert timer.is_slow
        assert logs[-1]["event"] == "Operation exceeded its time budget"
        assert logs[-1]["budget_seconds"] == 0.0
        assert perf_logger.get_stats("monitoring_cycle").slow_calls == 1

    def test_auto_log_disabled(self):
        """Test no events are emitted with auto_log off."""
        perf_logger = PerformanceLogger("metronome.test", auto_log=False)

        with capture_logs() as logs:
            perf_logger.record_timing("data_source_call", 0.01)

        assert logs == []
        assert perf_logger.get_stats("data_source_call").total_calls == 1

    def test_reset(self):
        """Test statistics can be reset per operation."""
        perf_logger = PerformanceLogger("metronome.test", auto_log=False)
        perf_logger.record_timing("a", 0.01)
        perf_logger.record_timing("b", 0.01)

        perf_logger.reset("a")

        assert set(perf_logger.all_stats()) == {"b"}

    def test_log_summary(self):
        """Test one summary event is logged per operation."""
        perf_logger = PerformanceLogger("metronome.test", auto_log=False)
        perf_logger.record_timing("data_source_call", 0.25)
        perf_logger.record_timing("data_source_call", 0.75, success=False, error="timeout")

        with capture_logs() as logs:
            perf_logger.log_summary()

        [entry] = logs
        assert entry["operation"] == "data_source_call"
        assert entry["total_calls"] == 2
        assert entry["failed_calls"] == 1
        assert entry["average"] == "500.00ms"


class TestOperationStats:
    """Test rolling statistics."""

    def test_aggregates(self):
        """Test min, max, average and success rate."""
        stats = OperationStats(operation="query")
        for duration, success in ((0.1, True), (0.3, True), (0.2, False)):
            stats.add(OperationTiming("query", duration, success, None if success else "timeout"))

        assert stats.total_calls == 3
        assert stats.min_duration == 0.1
        assert stats.max_duration == 0.3
        assert stats.avg_duration == pytest.approx(0.2)
        assert stats.success_rate == pytest.approx(200 / 3)
        assert stats.to_dict()["last_error"] == "timeout"
        assert stats.p95_duration is None

    def test_window_is_bounded(self):
        """Test only the most recent durations are kept for percentiles."""
        stats = OperationStats(operation="query")
        for i in range(WINDOW_SIZE + 50):
            stats.add(OperationTiming("query", float(i)))

        assert len(stats.recent) == WINDOW_SIZE
        assert stats.total_calls == WINDOW_SIZE + 50
        assert stats.p95_duration == pytest.approx(144.0)
