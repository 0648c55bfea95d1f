"""
Prometheus metrics endpoint.

Exposes delivery pipeline metrics for monitoring.
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
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total outbound messages blocked by rate limiting',
    ['tenant_id']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_jobs_enqueued = Counter(
    'webhook_jobs_enqueued_total',
    'Total webhook delivery jobs enqueued',
    ['tenant_id', 'event_type']
)

webhook_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Total webhook delivery attempts',
    ['tenant_id', 'outcome']
)

webhook_attempt_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Webhook delivery attempt duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# ============================================
# Message Delivery Metrics
# ============================================

message_status_transitions = Counter(
    'message_status_transitions_total',
    'Total message status transitions recorded',
    ['status']
)

message_retries_scheduled = Counter(
    'message_retries_scheduled_total',
    'Total message resends scheduled',
    ['tenant_id']
)

messages_permanently_failed = Counter(
    'messages_permanently_failed_total',
    'Messages finalized as failed after exhausting retries',
    ['tenant_id']
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


def track_rate_limit_exceeded(tenant_id: str):
    """Record a send blocked by the rate limiter."""
    rate_limit_exceeded.labels(tenant_id=tenant_id).inc()


def track_webhook_enqueued(tenant_id: str, event_type: str):
    """Record a delivery job being enqueued."""
    webhook_jobs_enqueued.labels(tenant_id=tenant_id, event_type=event_type).inc()


def track_webhook_attempt(tenant_id: str, success: bool, duration_ms: int):
    """Record the outcome and latency of one delivery attempt."""
    webhook_attempts.labels(
        tenant_id=tenant_id,
        outcome="success" if success else "failure"
    ).inc()
    webhook_attempt_duration.observe(duration_ms / 1000)


def track_status_transition(status: str):
    """Record a message entering a status."""
    message_status_transitions.labels(status=status).inc()


def track_retry_scheduled(tenant_id: str):
    """Record a resend being scheduled."""
    message_retries_scheduled.labels(tenant_id=tenant_id).inc()


def track_permanent_failure(tenant_id: str):
    """Record a message finalized as failed."""
    messages_permanently_failed.labels(tenant_id=tenant_id).inc()


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
