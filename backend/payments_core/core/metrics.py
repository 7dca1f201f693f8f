"""Prometheus metrics for the billing core.

Tracks HTTP traffic, webhook deliveries, canonical event outcomes,
checkout creation and provider failures.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "payments_core_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Webhook Metrics
# ============================================
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "payments_webhook_deliveries_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "payments_webhook_events_total",
    "Canonical events by provider, event name and outcome",
    ["provider", "event", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_LATENCY_SECONDS = Histogram(
    "payments_webhook_latency_seconds",
    "Time to process one webhook delivery",
    ["provider"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)


# ============================================
# Checkout / Provider Metrics
# ============================================
CHECKOUTS_TOTAL = Counter(
    "payments_checkouts_total",
    "Checkout session creation attempts",
    ["provider", "outcome"],
    registry=REGISTRY,
)

PROVIDER_ERRORS_TOTAL = Counter(
    "payments_provider_errors_total",
    "Provider API failures by operation and error code",
    ["provider", "operation", "code"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def record_webhook_delivery(provider: str, outcome: str, duration: float) -> None:
    """Record one webhook delivery.

    Args:
        provider: Provider name from the URL
        outcome: ok, rejected, failed, ...
        duration: Processing time in seconds
    """
    WEBHOOK_DELIVERIES_TOTAL.labels(provider=provider, outcome=outcome).inc()
    WEBHOOK_LATENCY_SECONDS.labels(provider=provider).observe(duration)


def record_webhook_event(provider: str, event: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(provider=provider, event=event, outcome=outcome).inc()


def record_checkout(provider: str, outcome: str) -> None:
    CHECKOUTS_TOTAL.labels(provider=provider, outcome=outcome).inc()


def record_provider_error(provider: str, operation: str, code: str) -> None:
    PROVIDER_ERRORS_TOTAL.labels(provider=provider, operation=operation, code=code).inc()


def get_metrics() -> bytes:
    """Render all metrics in Prometheus exposition format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
