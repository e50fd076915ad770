"""
Prometheus metrics for the chat API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message operation outcome counter (operation, result)
- Reaper counter (kind)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path template, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds (default buckets)
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# operation: create_room, send, edit, delete, add_reaction, remove_reaction
# result: created, duplicate, ok, noop, not_found, validation_error, conflict
message_operations_total = Counter(
    "message_operations_total",
    "Chat operation outcomes",
    labelnames=["operation", "result"]
)

# kind: messages, rooms
reaper_pruned_total = Counter(
    "reaper_pruned_total",
    "Rows removed by the TTL reaper",
    labelnames=["kind"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /rooms/{code}/messages), never the raw URL,
              so room codes do not become label values
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_operation(operation: str, result: str) -> None:
    """Record the outcome of a chat operation."""
    message_operations_total.labels(operation=operation, result=result).inc()


def record_prune(messages: int, rooms: int) -> None:
    """Record rows removed by one reaper sweep."""
    reaper_pruned_total.labels(kind="messages").inc(messages)
    reaper_pruned_total.labels(kind="rooms").inc(rooms)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type string for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
