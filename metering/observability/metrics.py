"""
Metrics Collection with Prometheus.

Exposes metering and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from metering.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    REASON = "reason"
    OUTCOME = "outcome"
    ENTRY_TYPE = "entry_type"
    ERROR_TYPE = "error_type"


class MeteringMetrics:
    """
    Centralized metrics for the metering API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Access decisions by reason
    - Usage consumptions by outcome
    - Credit ledger operations by entry type
    - Store retries and errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("metering_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "metering_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "metering_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "metering_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Core Metrics
        # ====================================================================
        self.access_decisions_total = Counter(
            "metering_access_decisions_total",
            "Access decisions by outcome and denial reason",
            ["allowed", MetricLabels.REASON],
        )

        self.usage_consumptions_total = Counter(
            "metering_usage_consumptions_total",
            "Usage consumptions by outcome",
            [MetricLabels.OUTCOME, MetricLabels.REASON],
        )

        self.usage_consumption_duration_seconds = Histogram(
            "metering_usage_consumption_duration_seconds",
            "consume_usage duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.ledger_operations_total = Counter(
            "metering_ledger_operations_total",
            "Credit ledger entries appended",
            [MetricLabels.ENTRY_TYPE],
        )

        self.ledger_replays_total = Counter(
            "metering_ledger_replays_total",
            "Ledger operations short-circuited by an existing idempotency key",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Store / Error Metrics
        # ====================================================================
        self.store_retries_total = Counter(
            "metering_store_retries_total",
            "Transient store errors retried",
            [MetricLabels.OPERATION],
        )

        self.errors_total = Counter(
            "metering_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_access_decision(self, allowed: bool, reason: str | None) -> None:
        self.access_decisions_total.labels(allowed=str(allowed), reason=reason or "none").inc()

    def record_usage(self, outcome: str, reason: str | None, duration: float | None = None) -> None:
        self.usage_consumptions_total.labels(outcome=outcome, reason=reason or "none").inc()
        if duration is not None:
            self.usage_consumption_duration_seconds.observe(duration)

    def record_ledger_entry(self, entry_type: str) -> None:
        self.ledger_operations_total.labels(entry_type=entry_type).inc()

    def record_ledger_replay(self, operation: str) -> None:
        self.ledger_replays_total.labels(operation=operation).inc()

    def record_store_retry(self, operation: str) -> None:
        self.store_retries_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MeteringMetrics()
