"""Unit tests for telemetry utilities."""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
import structlog
from prometheus_client import REGISTRY

from levy.utils.telemetry import (
    MonotonicClock,
    PerformanceTimer,
    SystemMonitor,
    async_performance_timer,
    get_logger,
    get_timing_context,
    log_operation,
    pii_redaction_processor,
    record_agent_restart,
    record_circuit_breaker_state_change,
    record_task_finished,
    redact_pii,
    setup_logging,
)


def sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestPIIRedaction:
    """Test PII redaction functionality."""

    def test_redact_owner_contact_details(self):
        """Emails and phone numbers on owner records are redacted."""
        text = "Owner jane.roe@example.com, call 555-123-4567"
        result = redact_pii(text)

        assert "jane.roe@example.com" not in result
        assert "555-123-4567" not in result
        assert "[REDACTED_EMAIL]" in result
        assert "[REDACTED_PHONE]" in result

    def test_redact_ssn(self):
        assert redact_pii("SSN 123-45-6789 on file") == "SSN [REDACTED_SSN] on file"

    def test_parcel_numbers_are_kept(self):
        """Short parcel identifiers do not look like PII."""
        assert redact_pii("parcel 12-345") == "parcel 12-345"

    def test_redact_non_string(self):
        """Test that non-string inputs are returned unchanged."""
        assert redact_pii(123) == 123
        assert redact_pii(None) is None

    def test_processor_redacts_nested_values(self):
        event = {
            "event": "Owner updated",
            "owner": {"email": "a@b.org", "phones": ["555-987-6543"]},
            "count": 2,
        }

        result = pii_redaction_processor(None, "info", event)

        assert result["owner"]["email"] == "[REDACTED_EMAIL]"
        assert result["owner"]["phones"] == ["[REDACTED_PHONE]"]
        assert result["count"] == 2


class TestLoggingSetup:
    """Test logging setup functionality."""

    @pytest.mark.parametrize("log_format", ["json", "text"])
    def test_setup_logging_formats(self, log_format):
        setup_logging("DEBUG", log_format=log_format)
        logger = get_logger("levy.test", component="telemetry")

        logger.info("Logging configured", format=log_format)

    def test_log_operation_levels(self):
        """The status selects the log method."""
        logger = MagicMock()

        log_operation(logger, "dispatch", agent_id="echo", latency_ms=1.5)
        log_operation(logger, "dispatch", status="warning")
        log_operation(logger, "dispatch", status="error", task_id="task_1")

        info_kwargs = logger.info.call_args.kwargs
        assert info_kwargs["operation"] == "dispatch"
        assert info_kwargs["agent_id"] == "echo"
        assert info_kwargs["latency_ms"] == 1.5
        assert "monotonic_time" in info_kwargs
        logger.warning.assert_called_once()
        assert logger.error.call_args.kwargs["task_id"] == "task_1"

    def teardown_method(self):
        structlog.reset_defaults()
        logging.getLogger().setLevel(logging.WARNING)


class TestPerformanceTimer:
    """Test timing context managers."""

    def test_sync_timer_records_success(self):
        before = sample(
            "levy_operations_total",
            {"operation": "unit_sync", "status": "success", "agent_id": "echo"},
        )

        with PerformanceTimer("unit_sync", agent_id="echo", create_span=False) as timer:
            pass

        assert timer.duration is not None and timer.duration >= 0
        after = sample(
            "levy_operations_total",
            {"operation": "unit_sync", "status": "success", "agent_id": "echo"},
        )
        assert after == before + 1

    def test_sync_timer_records_error(self):
        with pytest.raises(ValueError):
            with PerformanceTimer("unit_sync_error", agent_id="echo") as timer:
                raise ValueError("boom")

        assert timer.duration is not None
        assert (
            sample(
                "levy_operations_total",
                {"operation": "unit_sync_error", "status": "error", "agent_id": "echo"},
            )
            >= 1
        )

    def test_duration_before_finish(self):
        timer = PerformanceTimer("unit_pending", create_span=False)

        assert timer.duration is None

    @pytest.mark.asyncio
    async def test_async_timer(self):
        async with async_performance_timer("unit_async", agent_id="echo") as timer:
            pass

        assert timer.duration is not None

        with pytest.raises(RuntimeError):
            async with async_performance_timer("unit_async_error") as failing:
                raise RuntimeError("boom")
        assert failing.duration is not None


class TestMetrics:
    """Test metric recording helpers."""

    def test_task_finished_counter(self):
        labels = {"task_type": "unit_task", "status": "completed"}
        before = sample("levy_tasks_finished_total", labels)

        record_task_finished("unit_task", "completed")

        assert sample("levy_tasks_finished_total", labels) == before + 1

    def test_breaker_and_restart_helpers(self):
        record_circuit_breaker_state_change("unit_breaker", "CLOSED", "OPEN")
        record_agent_restart("unit_agent", "success")


class TestClockAndMonitor:
    """Test the monotonic clock and resource monitor."""

    def test_clock_outside_loop(self):
        first = MonotonicClock.now()
        assert MonotonicClock.now() >= first

    @pytest.mark.asyncio
    async def test_clock_uses_loop_time(self):
        now = MonotonicClock.now()
        assert abs(now - asyncio.get_running_loop().time()) < 1.0

    def test_timing_context(self):
        context = get_timing_context()

        assert set(context) == {"monotonic_time", "wall_time"}
        assert context["wall_time"] > 1_600_000_000

    def test_system_monitor(self):
        monitor = SystemMonitor()

        assert monitor.record_memory_usage("unit") > 0
        assert monitor.record_cpu_usage("unit") >= 0.0
        stats = monitor.get_system_stats()
        assert stats["process"]["memory_rss_bytes"] > 0
        assert stats["system"]["cpu_count"] >= 1
