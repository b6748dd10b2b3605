"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message, read-receipt and upload outcome counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# type: text, image, mixed
messages_appended_total = Counter(
    "messages_appended_total",
    "Total messages appended to the store",
    labelnames=["type"]
)

read_receipts_written_total = Counter(
    "read_receipts_written_total",
    "Total read receipts newly recorded"
)

# trigger: snapshot, foreground
mark_read_failures_total = Counter(
    "mark_read_failures_total",
    "Best-effort mark-as-read calls that failed and were dropped",
    labelnames=["trigger"]
)

# result: success, failure
uploads_total = Counter(
    "uploads_total",
    "Image upload outcomes",
    labelnames=["result"]
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
    if normalized_path.startswith("/messages/") and normalized_path != "/messages/read":
        normalized_path = "/messages/{message_id}"
    elif normalized_path.startswith("/blobs/"):
        normalized_path = "/blobs"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_message_appended(message_type: str) -> None:
    messages_appended_total.labels(type=message_type).inc()


def record_read_receipts(count: int) -> None:
    if count > 0:
        read_receipts_written_total.inc(count)


def record_mark_read_failure(trigger: str) -> None:
    mark_read_failures_total.labels(trigger=trigger).inc()


def record_upload_outcome(result: str) -> None:
    """
    Record an image upload outcome.

    Args:
        result: "success" or "failure"
    """
    uploads_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
