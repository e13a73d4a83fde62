"""Telemetry utilities for logging, metrics, and tracing.

This module provides centralized observability infrastructure including:
- Structured logging with PII redaction
- Prometheus metrics for tasks, bus traffic, breakers and agent health
- OpenTelemetry tracing setup
- Performance measurement utilities
- Process resource sampling
"""

import asyncio
import logging
import re
import sys
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psutil
import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from structlog.processors import JSONRenderer

# Prometheus metrics
OPERATION_COUNTER = Counter(
    "levy_operations_total",
    "Total number of timed operations",
    ["operation", "status", "agent_id"],
)

OPERATION_LATENCY = Histogram(
    "levy_operation_duration_seconds",
    "Operation latency in seconds",
    ["operation", "agent_id"],
    buckets=[0.001, 0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0],
)

TASKS_SUBMITTED = Counter(
    "levy_tasks_submitted_total",
    "Total number of tasks accepted by the orchestrator",
    ["task_type", "priority"],
)

TASKS_FINISHED = Counter(
    "levy_tasks_finished_total",
    "Total number of tasks that reached a terminal status",
    ["task_type", "status"],
)

TASK_QUEUE_WAIT = Histogram(
    "levy_task_queue_wait_seconds",
    "Time between task submission and dispatch",
    ["agent_id"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)

TASK_QUEUE_DEPTH = Gauge(
    "levy_task_queue_depth",
    "Number of tasks waiting in the orchestrator queue",
)

BUS_MESSAGES = Counter(
    "levy_bus_messages_total",
    "Messages published on the communication bus",
    ["message_type", "outcome"],
)

HANDLER_ERRORS = Counter(
    "levy_bus_handler_errors_total",
    "Exceptions raised by bus subscribers",
    ["subscriber"],
)

CIRCUIT_BREAKER_STATE = Counter(
    "levy_circuit_breaker_state_changes_total",
    "Circuit breaker state changes",
    ["component", "from_state", "to_state"],
)

CIRCUIT_BREAKER_REJECTIONS = Counter(
    "levy_circuit_breaker_rejections_total",
    "Calls rejected by an open circuit breaker",
    ["component"],
)

AGENT_RESTARTS = Counter(
    "levy_agent_restarts_total",
    "Agent restarts performed by the lifecycle manager",
    ["agent_id", "outcome"],
)

HEALTH_CHECKS = Counter(
    "levy_health_checks_total",
    "Agent health checks by result",
    ["agent_id", "result"],
)

MEMORY_USAGE_BYTES = Gauge(
    "levy_memory_usage_bytes",
    "Memory usage in bytes",
    ["component"],
)

CPU_USAGE_PERCENT = Gauge(
    "levy_cpu_usage_percent",
    "CPU usage percentage",
    ["component"],
)

ACTIVE_AGENTS_GAUGE = Gauge(
    "levy_active_agents_count",
    "Number of currently active agents",
)

# PII patterns for redaction
PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    "phone": re.compile(
        r"\b(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b"
    ),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
}


def redact_pii(text: Any) -> Any:
    """Redact personally identifiable information from text.

    Property owner records routinely carry contact details, so anything that
    reaches a log line passes through this first.

    Args:
        text: Input text that may contain PII

    Returns:
        Text with PII patterns replaced with [REDACTED_<type>], or original input if not a string

    Example:
        >>> redact_pii("Owner contact: jane@example.com")
        'Owner contact: [REDACTED_EMAIL]'
    """
    if not isinstance(text, str):
        return text

    result = text
    for pii_type, pattern in PII_PATTERNS.items():
        result = pattern.sub(f"[REDACTED_{pii_type.upper()}]", result)
    return result


def pii_redaction_processor(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor to redact PII from log events."""

    def redact_value(value: Any) -> Any:
        if isinstance(value, str):
            return redact_pii(value)
        elif isinstance(value, dict):
            return {k: redact_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [redact_value(item) for item in value]
        return value

    return {key: redact_value(value) for key, value in event_dict.items()}


def setup_logging(
    log_level: str = "INFO",
    enable_pii_redaction: bool = True,
    log_format: str = "json",
) -> None:
    """Initialize structured logging with PII redaction.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_pii_redaction: Whether to enable PII redaction processor
        log_format: "json" for machine-readable lines, "text" for the console
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if enable_pii_redaction:
        processors.append(pii_redaction_processor)

    if log_format == "text":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_tracing(
    service_name: str = "levy",
    otlp_endpoint: str | None = None,
    service_version: str = "0.1.0",
) -> None:
    """Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        otlp_endpoint: OTLP endpoint URL (if None, uses console exporter)
        service_version: Version reported in the trace resource
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
        }
    )

    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    exporter: OTLPSpanExporter | ConsoleSpanExporter
    if otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
    else:
        exporter = ConsoleSpanExporter()

    tracer_provider.add_span_processor(BatchSpanProcessor(exporter))


def get_tracer(name: str) -> trace.Tracer:
    """Get OpenTelemetry tracer for a component.

    Args:
        name: Tracer name (typically module name)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)


def get_logger(name: str, **context: Any) -> Any:
    """Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Additional context to bind to logger

    Returns:
        Bound logger with context
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def log_operation(
    logger: Any,
    operation: str,
    status: str = "success",
    agent_id: str | None = None,
    task_id: str | None = None,
    latency_ms: float | None = None,
    **extra_context: Any,
) -> None:
    """Log an operation with standardized fields for observability.

    Args:
        logger: Structured logger instance
        operation: Operation name
        status: Operation status (success, error, warning)
        agent_id: Agent identifier
        task_id: Task identifier
        latency_ms: Operation latency in milliseconds
        **extra_context: Additional context fields
    """
    log_data = {
        "operation": operation,
        "status": status,
        **extra_context,
    }

    if agent_id is not None:
        log_data["agent_id"] = agent_id
    if task_id is not None:
        log_data["task_id"] = task_id
    if latency_ms is not None:
        log_data["latency_ms"] = latency_ms

    log_data.update(get_timing_context())

    if status == "error":
        logger.error("Operation completed", **log_data)
    elif status == "warning":
        logger.warning("Operation completed", **log_data)
    else:
        logger.info("Operation completed", **log_data)


class PerformanceTimer:
    """Context manager for measuring operation performance.

    Automatically records metrics, logs timing information, and creates tracing spans.
    """

    def __init__(
        self,
        operation: str,
        agent_id: str | None = None,
        task_id: str | None = None,
        logger: structlog.BoundLogger | None = None,
        record_metrics: bool = True,
        create_span: bool = True,
        tracer_name: str = "levy.performance",
    ):
        self.operation = operation
        self.agent_id = agent_id or "unknown"
        self.task_id = task_id
        self.logger = logger or get_logger("levy.performance")
        self.record_metrics = record_metrics
        self.create_span = create_span
        self.tracer = get_tracer(tracer_name) if create_span else None
        self.span: trace.Span | None = None
        self.start_time: float | None = None
        self.end_time: float | None = None

    def _start(self) -> None:
        self.start_time = time.perf_counter()

        if self.create_span and self.tracer:
            self.span = self.tracer.start_span(self.operation)
            self.span.set_attribute("agent_id", self.agent_id)
            if self.task_id:
                self.span.set_attribute("task_id", self.task_id)

    def _finish(self, error: BaseException | None) -> None:
        self.end_time = time.perf_counter()
        duration = self.end_time - (self.start_time or self.end_time)
        status = "error" if error else "success"

        if self.record_metrics:
            OPERATION_COUNTER.labels(
                operation=self.operation, status=status, agent_id=self.agent_id
            ).inc()
            OPERATION_LATENCY.labels(
                operation=self.operation, agent_id=self.agent_id
            ).observe(duration)

        if self.span:
            self.span.set_attribute("duration_seconds", duration)
            self.span.set_attribute("status", status)
            if error:
                self.span.set_status(trace.Status(trace.StatusCode.ERROR, str(error)))
                self.span.record_exception(error)
            else:
                self.span.set_status(trace.Status(trace.StatusCode.OK))
            self.span.end()

        extra = {"error": str(error)} if error else {}
        log_operation(
            self.logger,
            self.operation,
            status=status,
            agent_id=self.agent_id,
            task_id=self.task_id,
            latency_ms=duration * 1000,
            **extra,
        )

    def __enter__(self) -> "PerformanceTimer":
        self._start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._finish(exc_val)

    @property
    def duration(self) -> float | None:
        """Get operation duration in seconds."""
        if self.start_time is not None and self.end_time is not None:
            return self.end_time - self.start_time
        return None


@asynccontextmanager
async def async_performance_timer(
    operation: str,
    agent_id: str | None = None,
    task_id: str | None = None,
    logger: structlog.BoundLogger | None = None,
    record_metrics: bool = True,
    create_span: bool = True,
    tracer_name: str = "levy.performance",
) -> AsyncGenerator[PerformanceTimer, None]:
    """Async context manager for measuring operation performance.

    Args:
        operation: Operation name for metrics/logging
        agent_id: Agent identifier (optional)
        task_id: Task identifier (optional)
        logger: Logger instance (optional)
        record_metrics: Whether to record Prometheus metrics
        create_span: Whether to create tracing span
        tracer_name: Tracer name for spans

    Yields:
        PerformanceTimer instance
    """
    timer = PerformanceTimer(
        operation=operation,
        agent_id=agent_id,
        task_id=task_id,
        logger=logger,
        record_metrics=record_metrics,
        create_span=create_span,
        tracer_name=tracer_name,
    )
    timer._start()

    try:
        yield timer
    except BaseException as e:
        timer._finish(e)
        raise
    else:
        timer._finish(None)


def record_task_submitted(task_type: str, priority: str) -> None:
    """Record a task accepted by the orchestrator."""
    TASKS_SUBMITTED.labels(task_type=task_type, priority=priority).inc()


def record_task_finished(task_type: str, status: str) -> None:
    """Record a task reaching a terminal status.

    Args:
        task_type: Task type key
        status: Terminal status (completed, failed, cancelled)
    """
    TASKS_FINISHED.labels(task_type=task_type, status=status).inc()


def record_task_dispatch(agent_id: str, wait_seconds: float) -> None:
    """Record how long a task waited in the queue before dispatch."""
    TASK_QUEUE_WAIT.labels(agent_id=agent_id).observe(wait_seconds)


def update_task_queue_depth(depth: int) -> None:
    TASK_QUEUE_DEPTH.set(depth)


def record_bus_message(message_type: str, outcome: str) -> None:
    """Record a published bus message.

    Args:
        message_type: MessageType value
        outcome: delivered, undelivered or expired
    """
    BUS_MESSAGES.labels(message_type=message_type, outcome=outcome).inc()


def record_handler_error(subscriber: str) -> None:
    HANDLER_ERRORS.labels(subscriber=subscriber).inc()


def record_circuit_breaker_state_change(
    component: str, from_state: str, to_state: str
) -> None:
    """Record circuit breaker state change.

    Args:
        component: Component name with circuit breaker
        from_state: Previous state (CLOSED, OPEN, HALF_OPEN)
        to_state: New state (CLOSED, OPEN, HALF_OPEN)
    """
    CIRCUIT_BREAKER_STATE.labels(
        component=component, from_state=from_state, to_state=to_state
    ).inc()


def record_circuit_breaker_rejection(component: str) -> None:
    CIRCUIT_BREAKER_REJECTIONS.labels(component=component).inc()


def record_agent_restart(agent_id: str, outcome: str) -> None:
    """Record an agent restart.

    Args:
        agent_id: Agent identifier
        outcome: success or failure
    """
    AGENT_RESTARTS.labels(agent_id=agent_id, outcome=outcome).inc()


def record_health_check(agent_id: str, healthy: bool) -> None:
    HEALTH_CHECKS.labels(
        agent_id=agent_id, result="healthy" if healthy else "unhealthy"
    ).inc()


def update_active_agents_count(count: int) -> None:
    """Update the number of active agents.

    Args:
        count: Number of currently active agents
    """
    ACTIVE_AGENTS_GAUGE.set(count)


def start_metrics_server(port: int = 8000) -> None:
    """Start Prometheus metrics HTTP server.

    Args:
        port: Port to serve metrics on
    """
    start_http_server(port)


class MonotonicClock:
    """Monotonic clock for internal timing measurements.

    Uses asyncio event loop's monotonic time for consistent timing
    that's not affected by system clock adjustments.
    """

    @staticmethod
    def now() -> float:
        """Get current monotonic time in seconds.

        Returns:
            Current time from asyncio event loop's monotonic clock
        """
        try:
            loop = asyncio.get_running_loop()
            return loop.time()
        except RuntimeError:
            return time.monotonic()

    @staticmethod
    def wall_time() -> float:
        """Get current wall clock time for display purposes."""
        return time.time()


def get_timing_context() -> dict[str, float]:
    """Get current timing context for logging.

    Returns:
        Dictionary with monotonic_time and wall_time
    """
    return {
        "monotonic_time": MonotonicClock.now(),
        "wall_time": MonotonicClock.wall_time(),
    }


class SystemMonitor:
    """Monitor process resources and record metrics."""

    def __init__(self) -> None:
        self._process = psutil.Process()
        self._last_cpu_percent = 0.0

    def record_memory_usage(self, component: str = "system") -> float:
        """Record current memory usage and return bytes used.

        Args:
            component: Component name for metrics labeling

        Returns:
            Resident set size in bytes
        """
        try:
            memory_bytes: float = self._process.memory_info().rss
            MEMORY_USAGE_BYTES.labels(component=component).set(memory_bytes)
            return memory_bytes
        except psutil.Error as e:
            get_logger("levy.telemetry.monitor").warning(
                "Failed to record memory usage", component=component, error=str(e)
            )
            return 0.0

    def record_cpu_usage(self, component: str = "system") -> float:
        """Record current CPU usage and return percentage.

        The first psutil sample after process start is always 0.0, so the
        previous non-zero reading is reused in that case.

        Args:
            component: Component name for metrics labeling

        Returns:
            CPU usage percentage
        """
        try:
            cpu_percent: float = self._process.cpu_percent(interval=None)

            if cpu_percent == 0.0 and self._last_cpu_percent > 0.0:
                cpu_percent = self._last_cpu_percent
            else:
                self._last_cpu_percent = cpu_percent

            CPU_USAGE_PERCENT.labels(component=component).set(cpu_percent)
            return cpu_percent
        except psutil.Error as e:
            get_logger("levy.telemetry.monitor").warning(
                "Failed to record CPU usage", component=component, error=str(e)
            )
            return 0.0

    def get_system_stats(self) -> dict[str, Any]:
        """Get process and host resource statistics.

        Returns:
            Dictionary with process and system resource information
        """
        try:
            memory_info = self._process.memory_info()
            system_memory = psutil.virtual_memory()

            return {
                "process": {
                    "memory_rss_bytes": memory_info.rss,
                    "memory_vms_bytes": memory_info.vms,
                    "cpu_percent": self._process.cpu_percent(interval=None),
                    "num_threads": self._process.num_threads(),
                },
                "system": {
                    "memory_total_bytes": system_memory.total,
                    "memory_available_bytes": system_memory.available,
                    "memory_percent": system_memory.percent,
                    "cpu_percent": psutil.cpu_percent(interval=None),
                    "cpu_count": psutil.cpu_count(),
                },
            }
        except psutil.Error as e:
            get_logger("levy.telemetry.monitor").warning(
                "Failed to get system stats", error=str(e)
            )
            return {}


system_monitor = SystemMonitor()
