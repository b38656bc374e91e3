"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Registration metrics
registration_attempts = Counter(
    'registration_attempts_total',
    'Total event registration attempts',
    ['outcome']  # confirmed, payment_initiated, conflict, capacity_exceeded, gateway_failed, invalid
)

registration_cancellations = Counter(
    'registration_cancellations_total',
    'Registrations withdrawn by their owner',
    ['previous_status']
)

# Admission control metrics
admission_requests = Counter(
    'admission_requests_total',
    'Total admission control requests',
    ['result']  # admitted, rejected
)

# Payment gateway metrics
gateway_requests = Counter(
    'mpesa_requests_total',
    'Requests sent to the M-Pesa gateway',
    ['operation', 'outcome']  # token/stk_push/stk_query, ok/rejected/unavailable
)

gateway_latency = Histogram(
    'mpesa_request_latency_seconds',
    'M-Pesa gateway request latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

token_refreshes = Counter(
    'mpesa_token_refreshes_total',
    'OAuth token fetches performed against the gateway'
)

# Settlement metrics
callback_outcomes = Counter(
    'payment_callbacks_total',
    'Processed payment callbacks',
    ['outcome']  # confirmed, failed, duplicate, unknown, invalid, error, inactive, oversubscribed, late
)

pending_registrations_expired = Counter(
    'pending_registrations_expired_total',
    'Pending registrations failed by the reconciliation sweep'
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)

redis_circuit_breaker_open = Gauge(
    'redis_circuit_breaker_open',
    'Redis circuit breaker state (1=open, 0=closed)'
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_registration(outcome: str):
    registration_attempts.labels(outcome=outcome).inc()


def record_admission(admitted: bool):
    """Record admission control decision."""
    result = "admitted" if admitted else "rejected"
    admission_requests.labels(result=result).inc()


def record_gateway_request(operation: str, outcome: str):
    gateway_requests.labels(operation=operation, outcome=outcome).inc()


def record_callback(outcome: str):
    callback_outcomes.labels(outcome=outcome).inc()
