"""Tests for metrics.py -- per-tenant command counters."""

from metrics import MetricsCollector


class TestMetricsCollector:
    def test_started_creates_entry(self) -> None:
        collector = MetricsCollector()
        collector.record_command_started("alice")
        data = collector.get("alice")
        assert data is not None
        assert data.commands_started == 1
        assert data.last_command_at is not None

    def test_finished_outcomes(self) -> None:
        collector = MetricsCollector()
        for _ in range(4):
            collector.record_command_started("alice")
        collector.record_command_finished("alice", status="completed", duration_ms=100)
        collector.record_command_finished("alice", status="failed", duration_ms=50, timed_out=True)
        collector.record_command_finished("alice", status="cancelled", duration_ms=10)
        collector.record_command_finished("alice", status="failed", duration_ms=5)

        data = collector.get("alice")
        assert data.commands_completed == 1
        assert data.commands_failed == 2
        assert data.commands_cancelled == 1
        assert data.commands_timed_out == 1
        assert data.total_duration_ms == 165

    def test_finished_for_unknown_tenant_is_noop(self) -> None:
        collector = MetricsCollector()
        collector.record_command_finished("ghost", status="completed", duration_ms=1)
        assert collector.get("ghost") is None

    def test_to_dict_camel_case(self) -> None:
        collector = MetricsCollector()
        collector.record_command_started("alice")
        payload = collector.get("alice").to_dict()
        assert payload["commandsStarted"] == 1
        assert "totalDurationMs" in payload

    def test_forget(self) -> None:
        collector = MetricsCollector()
        collector.record_command_started("alice")
        assert collector.forget("alice") is not None
        assert collector.get("alice") is None
