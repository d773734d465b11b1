"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Sent message counter (chat_type)
- Realtime event counter (event)
- Push notification outcome counter (result)
- Live realtime session gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# chat_type: self, private, group
messages_sent_total = Counter(
    "messages_sent_total",
    "Total messages accepted by the message pipeline",
    labelnames=["chat_type"]
)

# event: new_message, chat_list_update, message_status_update, message_deleted, user_typing
realtime_events_total = Counter(
    "realtime_events_total",
    "Total realtime events emitted to sessions",
    labelnames=["event"]
)

# result: sent, failed, invalid_token
push_notifications_total = Counter(
    "push_notifications_total",
    "Push notification delivery outcomes per device token",
    labelnames=["result"]
)

realtime_sessions = Gauge(
    "realtime_sessions",
    "Currently registered realtime sessions"
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


def record_message_sent(chat_type: str) -> None:
    messages_sent_total.labels(chat_type=chat_type).inc()


def record_realtime_event(event: str, count: int = 1) -> None:
    """Count one event emitted to `count` sessions."""
    if count > 0:
        realtime_events_total.labels(event=event).inc(count)


def record_push_outcome(result: str, count: int = 1) -> None:
    """
    Record push notification outcomes.

    Args:
        result: "sent", "failed" or "invalid_token"
        count: number of device tokens with this outcome
    """
    if count > 0:
        push_notifications_total.labels(result=result).inc(count)


def set_realtime_sessions(count: int) -> None:
    realtime_sessions.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
