"""
Prometheus metrics for the forwarder.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound event counter (event_type)
- Forward outcome counter (platform, result)
- Device status transition counter (status)
- Dropped event counter (queue full)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# event_type: sms, call_ringing, call_connected, call_ended, sim_status, heartbeat, unknown, invalid
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound device events by classified type",
    labelnames=["event_type"]
)

# result: success, failed, filtered
forward_attempts_total = Counter(
    "forward_attempts_total",
    "Forwarding outcomes per platform",
    labelnames=["platform", "result"]
)

device_status_transitions_total = Counter(
    "device_status_transitions_total",
    "Device status changes made by the pipeline",
    labelnames=["status"]
)

event_queue_dropped_total = Counter(
    "event_queue_dropped_total",
    "Inbound events dropped because the event queue was full",
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


def record_webhook_event(event_type: str) -> None:
    webhook_events_total.labels(event_type=event_type).inc()


def record_forward_outcome(platform: str, result: str) -> None:
    """
    Record one platform's outcome for one event.

    Args:
        platform: telegram, bark, webhook or wxpusher
        result: "success", "failed" or "filtered"
    """
    forward_attempts_total.labels(platform=platform, result=result).inc()


def record_device_transition(status: str) -> None:
    device_status_transitions_total.labels(status=status).inc()


def record_event_dropped() -> None:
    event_queue_dropped_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
