"""
Metrics Collection with Prometheus.

Exposes pipeline and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from dmtobuy.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    CHANNEL = "channel"
    OUTCOME = "outcome"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class AutomationMetrics:
    """
    Centralized metrics for the automation service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Webhook intake (items queued, ignored, duplicated)
    - Decisions (outcome and reason)
    - Dispatch (credential variant, result)
    - Credential refreshes and external call retries
    - PRO follow-ups
    - Link clicks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "dmtobuy_service",
            "Service information",
        )
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
            "dmtobuy_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "dmtobuy_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "dmtobuy_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook Intake Metrics
        # ====================================================================
        self.webhook_items_total = Counter(
            "dmtobuy_webhook_items_total",
            "Webhook items by intake result",
            ["result"],
        )

        self.queue_events_total = Counter(
            "dmtobuy_queue_events_total",
            "Queued events by final queue status",
            ["status"],
        )

        # ====================================================================
        # Decision Metrics
        # ====================================================================
        self.decisions_total = Counter(
            "dmtobuy_decisions_total",
            "Pipeline outcomes",
            [MetricLabels.CHANNEL, MetricLabels.OUTCOME, MetricLabels.REASON],
        )

        self.pipeline_duration_seconds = Histogram(
            "dmtobuy_pipeline_duration_seconds",
            "End-to-end processing time for one event",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0),
        )

        self.classifier_duration_seconds = Histogram(
            "dmtobuy_classifier_duration_seconds",
            "Classifier call duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0),
        )

        # ====================================================================
        # Dispatch Metrics
        # ====================================================================
        self.dispatches_total = Counter(
            "dmtobuy_dispatches_total",
            "Outbound replies by credential variant and result",
            ["auth_variant", "result"],
        )

        self.token_refreshes_total = Counter(
            "dmtobuy_token_refreshes_total",
            "Credential refresh attempts",
            ["auth_variant", "result"],
        )

        self.external_call_retries_total = Counter(
            "dmtobuy_external_call_retries_total",
            "Retries of external calls",
            [MetricLabels.OPERATION, MetricLabels.ERROR_TYPE],
        )

        self.followups_total = Counter(
            "dmtobuy_followups_total",
            "Follow-up sweep candidates by result",
            ["result"],
        )

        # ====================================================================
        # Attribution Metrics
        # ====================================================================
        self.link_clicks_total = Counter(
            "dmtobuy_link_clicks_total",
            "Redirect hits, split by whether the click was counted",
            ["counted"],
        )

        self.orders_attributed_total = Counter(
            "dmtobuy_orders_attributed_total",
            "Orders attributed to a sent link",
            [MetricLabels.CHANNEL],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "dmtobuy_errors_total",
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

    def record_webhook_item(self, result: str) -> None:
        """Record one webhook item at intake (queued, duplicate, ignored:<reason>)."""
        self.webhook_items_total.labels(result=result).inc()

    def record_decision(self, channel: str, outcome: str, reason: str, duration: float) -> None:
        """Record the outcome of one processed event."""
        self.decisions_total.labels(channel=channel, outcome=outcome, reason=reason).inc()
        self.pipeline_duration_seconds.observe(duration)

    def record_dispatch(self, auth_variant: str, result: str) -> None:
        """Record an outbound send attempt."""
        self.dispatches_total.labels(auth_variant=auth_variant, result=result).inc()

    def record_token_refresh(self, auth_variant: str, result: str) -> None:
        """Record a token exchange."""
        self.token_refreshes_total.labels(auth_variant=auth_variant, result=result).inc()

    def record_retry(self, operation: str, error_type: str) -> None:
        """Record a retried external call."""
        self.external_call_retries_total.labels(operation=operation, error_type=error_type).inc()

    def record_followup(self, result: str) -> None:
        """Record one follow-up candidate (sent, skipped:<why>, failed)."""
        self.followups_total.labels(result=result).inc()

    def record_click(self, counted: bool) -> None:
        """Record a redirect hit."""
        self.link_clicks_total.labels(counted=str(counted)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AutomationMetrics()
