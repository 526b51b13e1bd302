"""
Prometheus metrics for the SMS booking service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound webhook message outcome counter (result)
- Outbound delivery outcome counter (outcome)
- Gateway call counter (method, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


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

# result: processed, duplicate, failed, invalid_signature, invalid_payload
webhook_messages_total = Counter(
    "webhook_messages_total",
    "Inbound SMS webhook outcomes",
    labelnames=["result"]
)

# outcome: sent, failed, invalid_target, mock, not_configured
sms_delivery_total = Counter(
    "sms_delivery_total",
    "Outbound SMS delivery outcomes",
    labelnames=["outcome"]
)

# result: success, rejected, error
sms_gateway_calls_total = Counter(
    "sms_gateway_calls_total",
    "Calls made to the SMS gateway send endpoint",
    labelnames=["method", "result"]
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
    if normalized_path.startswith(("/messages/", "/conversations/", "/sessions/")):
        normalized_path = normalized_path.rsplit("/", 1)[0] + "/{id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str, count: int = 1) -> None:
    """Record the outcome of inbound webhook messages."""
    if count > 0:
        webhook_messages_total.labels(result=result).inc(count)


def record_delivery_outcome(outcome: str) -> None:
    """Record the final outcome of one outbound delivery."""
    sms_delivery_total.labels(outcome=outcome).inc()


def record_gateway_call(method: str, result: str) -> None:
    sms_gateway_calls_total.labels(method=method, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
