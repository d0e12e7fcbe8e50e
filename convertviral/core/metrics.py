"""Prometheus metrics for the billing service.

Metrics live in a dedicated registry exposed at ``GET /metrics``.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "convertviral_billing_app",
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
# Stripe Webhook Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "stripe_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_RETRIES_TOTAL = Counter(
    "stripe_webhook_retries_total",
    "Retried webhook processing attempts",
    ["event_type"],
    registry=REGISTRY,
)

WEBHOOK_PROCESSING_SECONDS = Histogram(
    "stripe_webhook_processing_seconds",
    "Time spent processing a webhook delivery, including retries",
    ["event_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

SUBSCRIPTIONS_MARKED_UNPAID_TOTAL = Counter(
    "subscriptions_marked_unpaid_total",
    "Subscriptions moved to unpaid after repeated payment failures",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Publish static application info."""
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
