"""
Metrics Collection with Prometheus.

Exposes purchase-verification and entitlement metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    KIND = "kind"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class IAPMetrics:
    """
    Centralized metrics for the IAP entitlement service.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Store verifications (rate by provider and outcome, provider latency)
    - Entitlements applied (by kind, new vs replay), coins credited
    - Audit ledger failures swallowed
    - Errors by type
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "iap_service",
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
            "iap_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "iap_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "iap_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Verification Metrics
        # ====================================================================
        self.verifications_total = Counter(
            "iap_verifications_total",
            "Purchase verifications by provider and outcome",
            [MetricLabels.PROVIDER, MetricLabels.OUTCOME],
        )

        self.provider_request_duration_seconds = Histogram(
            "iap_provider_request_duration_seconds",
            "Store API call duration in seconds",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlements_applied_total = Counter(
            "iap_entitlements_applied_total",
            "Entitlement applications by kind and whether the transaction was new",
            [MetricLabels.KIND, "new_transaction"],
        )

        self.coins_credited_total = Counter(
            "iap_coins_credited_total",
            "Total coins credited to balances",
        )

        self.audit_ledger_failures_total = Counter(
            "iap_audit_ledger_failures_total",
            "Audit ledger writes that failed and were swallowed",
            ["attempt"],
        )

        self.subscription_syncs_total = Counter(
            "iap_subscription_syncs_total",
            "Subscription re-syncs by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "iap_errors_total",
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

    def record_verification(self, provider: str, outcome: str) -> None:
        """Record a verification outcome (new, already_processed, error)."""
        self.verifications_total.labels(provider=provider, outcome=outcome).inc()

    def record_provider_call(self, provider: str, operation: str, duration: float) -> None:
        """Record store API latency."""
        self.provider_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration)

    def record_entitlement(self, kind: str, new_transaction: bool, coins: int = 0) -> None:
        """Record an applied entitlement."""
        self.entitlements_applied_total.labels(
            kind=kind, new_transaction=str(new_transaction)
        ).inc()
        if coins > 0:
            self.coins_credited_total.inc(coins)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = IAPMetrics()
