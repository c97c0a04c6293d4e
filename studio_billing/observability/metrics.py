"""
Metrics Collection with Prometheus.

Exposes wallet, task lifecycle and HTTP metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from studio_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    TASK_KIND = "kind"
    ERROR_TYPE = "error_type"


class StudioMetrics:
    """
    Centralized metrics for the studio billing service.

    Covers:
    - HTTP requests (rate, duration)
    - Wallet mutations (deductions, refunds, additions, insufficient credits)
    - Quota rollover (expirations, daily/monthly resets)
    - Generation tasks (status transitions, provider retries, provider calls)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("studio_billing_service", "Service information")
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
            "studio_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "studio_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "studio_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Wallet Metrics
        # ====================================================================
        self.wallet_transactions_total = Counter(
            "studio_wallet_transactions_total",
            "Total wallet transactions written",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.wallet_transaction_credits = Histogram(
            "studio_wallet_transaction_credits",
            "Credits moved per wallet transaction",
            [MetricLabels.TRANSACTION_TYPE],
            buckets=(1, 5, 10, 30, 50, 100, 250, 500, 1000, 5000),
        )

        self.insufficient_credits_total = Counter(
            "studio_insufficient_credits_total",
            "Deductions rejected for insufficient balance",
        )

        self.refund_fallbacks_total = Counter(
            "studio_refund_fallbacks_total",
            "Refunds (or portions) redirected to purchased credits",
            ["cause"],
        )

        self.rollover_events_total = Counter(
            "studio_rollover_events_total",
            "Subscription rollover events applied",
            ["event"],
        )

        self.db_write_verifications_total = Counter(
            "studio_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Generation Task Metrics
        # ====================================================================
        self.task_transitions_total = Counter(
            "studio_task_transitions_total",
            "Generation task status transitions",
            [MetricLabels.TASK_KIND, "status"],
        )

        self.task_retries_total = Counter(
            "studio_task_retries_total",
            "Provider retries scheduled",
            [MetricLabels.TASK_KIND, "failure_class"],
        )

        self.provider_requests_total = Counter(
            "studio_provider_requests_total",
            "Outbound provider calls",
            [MetricLabels.OPERATION, "success"],
        )

        self.provider_request_duration_seconds = Histogram(
            "studio_provider_request_duration_seconds",
            "Outbound provider call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "studio_errors_total",
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

    def record_transaction(self, transaction_type: str, amount: int) -> None:
        """Record a committed wallet transaction."""
        self.wallet_transactions_total.labels(transaction_type=transaction_type).inc()
        self.wallet_transaction_credits.labels(transaction_type=transaction_type).observe(amount)

    def record_rollover(self, expired: int, daily_resets: int, monthly_resets: int) -> None:
        """Record rollover events."""
        if expired:
            self.rollover_events_total.labels(event="expired").inc(expired)
        if daily_resets:
            self.rollover_events_total.labels(event="daily_reset").inc(daily_resets)
        if monthly_resets:
            self.rollover_events_total.labels(event="monthly_reset").inc(monthly_resets)

    def record_task_transition(self, kind: str, status: str) -> None:
        """Record a task status change."""
        self.task_transitions_total.labels(kind=kind, status=status).inc()

    def record_provider_call(self, operation: str, success: bool, duration: float) -> None:
        """Record an outbound provider call."""
        self.provider_requests_total.labels(operation=operation, success=str(success)).inc()
        self.provider_request_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = StudioMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/wallets/{user_id}", "GET") as tracker:
            response = await call_next(request)
            tracker.set_status_code(response.status_code)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()
