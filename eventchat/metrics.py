"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Dispatch hook outcome counter (result)
- Push dispatch outcome counter (status) and per-device receipt counter
- Change feed publish counter (type)

Metrics are stored in-memory using prometheus-client.
"""

from typing import Iterable

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: queued, invalid_signature, validation_error, not_found
dispatch_hook_requests_total = Counter(
    "dispatch_hook_requests_total",
    "Total signed dispatch hook outcomes",
    labelnames=["result"]
)

# status: sent, partial, rejected, no_tokens, failed, skipped
push_dispatch_total = Counter(
    "push_dispatch_total",
    "Notification dispatch outcomes",
    labelnames=["status"]
)

# status: ok, error
push_receipts_total = Counter(
    "push_receipts_total",
    "Per-device push gateway receipts",
    labelnames=["status"]
)

feed_events_published_total = Counter(
    "feed_events_published_total",
    "Change feed events published",
    labelnames=["type"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_hook_outcome(result: str) -> None:
    dispatch_hook_requests_total.labels(result=result).inc()


def record_dispatch_outcome(status: str) -> None:
    push_dispatch_total.labels(status=status).inc()


def record_push_receipts(statuses: Iterable[str]) -> None:
    for status in statuses:
        push_receipts_total.labels(status=status).inc()


def record_feed_event(event_type: str) -> None:
    feed_events_published_total.labels(type=event_type).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
