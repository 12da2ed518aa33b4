"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Installation Metrics
# ============================================

installations_created = Counter(
    'installations_created_total',
    'Total integrations installed',
    ['integration_id']
)

health_checks_total = Counter(
    'health_checks_total',
    'Health probe results',
    ['result']
)

# ============================================
# Outbound Call Metrics
# ============================================

outbound_calls_total = Counter(
    'outbound_calls_total',
    'Calls made to integration APIs',
    ['integration_id', 'outcome']
)

outbound_call_duration = Histogram(
    'outbound_call_duration_seconds',
    'Integration API call duration in seconds',
    ['integration_id'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total outbound calls blocked by rate limiting',
    ['installation_id']
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_sent = Counter(
    'webhooks_sent_total',
    'Total webhook delivery attempts',
    ['event_type', 'status']
)

webhooks_failed = Counter(
    'webhooks_failed_total',
    'Total webhooks that exhausted their attempts or could not be delivered',
    ['event_type']
)

webhooks_retried = Counter(
    'webhooks_retry_total',
    'Total webhook retries scheduled',
    ['event_type']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_installation_created(integration_id: str):
    installations_created.labels(integration_id=integration_id).inc()


def track_health_check(result: str):
    """Record a probe result: healthy, failed or skipped."""
    health_checks_total.labels(result=result).inc()


def track_outbound_call(integration_id: str, outcome: str, duration_seconds: float | None = None):
    outbound_calls_total.labels(integration_id=integration_id, outcome=outcome).inc()
    if duration_seconds is not None:
        outbound_call_duration.labels(integration_id=integration_id).observe(duration_seconds)


def track_rate_limit_exceeded(installation_id: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(installation_id=installation_id).inc()


def track_webhook_sent(event_type: str, status: str):
    """Record a webhook delivery attempt (delivered or error)."""
    webhooks_sent.labels(event_type=event_type, status=status).inc()


def track_webhook_failed(event_type: str):
    """Record a webhook reaching the dead-letter state."""
    webhooks_failed.labels(event_type=event_type).inc()


def track_webhook_retry(event_type: str):
    webhooks_retried.labels(event_type=event_type).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
