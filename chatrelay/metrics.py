"""
Prometheus metrics for the relay service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook outcome counter (result)
- Request latency histogram (method, path)
- Inference latency histogram and failure counter

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

# result: new, pending, replied, dead, wait, fallback, error, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Inference calls routinely exceed the channel's response window
inference_latency_seconds = Histogram(
    "inference_latency_seconds",
    "Inference backend call latency in seconds",
    buckets=(0.25, 0.5, 1.0, 2.0, 3.0, 4.5, 7.5, 10.0, 15.0, 30.0, 60.0),
)

inference_failures_total = Counter(
    "inference_failures_total",
    "Inference backend calls that failed",
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
    # Conversation routes carry participant ids; collapse them to keep cardinality low
    if normalized_path.startswith("/conversations/"):
        normalized_path = "/conversations/{conversation}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "new": First sighting, answered by inference
            - "pending": Redelivery answered from buffered replies
            - "replied": Redelivery of a message already answered
            - "dead": Redelivery past the dead-letter policy
            - "wait": Reply still being computed, channel will retry
            - "fallback": Inference failed on first sighting
            - "error": Storage failed, state unknown
            - "invalid_signature": Channel signature check failed
            - "validation_error": Request body validation failed
    """
    webhook_requests_total.labels(result=result).inc()


def record_inference(latency_seconds: float, ok: bool) -> None:
    """
    Record one inference backend call.

    Args:
        latency_seconds: Wall time of the call, including failed ones
        ok: False when the call raised or returned an unusable body
    """
    inference_latency_seconds.observe(latency_seconds)
    if not ok:
        inference_failures_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
