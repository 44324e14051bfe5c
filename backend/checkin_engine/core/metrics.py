"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Check-in admission metrics
checkin_attempts = Counter(
    'checkin_attempts_total',
    'Total check-in admission attempts',
    ['result']  # accepted, cooldown, venue_not_found, error
)

checkin_latency = Histogram(
    'checkin_latency_seconds',
    'Check-in admission latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# Reward metrics
reward_progress_updates = Counter(
    'reward_progress_updates_total',
    'Per-reward progress updates triggered by accepted check-ins',
    ['outcome']  # created, advanced, frozen, failed
)

redemption_attempts = Counter(
    'redemption_attempts_total',
    'Total reward redemption attempts',
    ['result']  # redeemed, not_redeemable, not_found, error
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)

# Live crowd feed
crowd_subscribers = Gauge(
    'crowd_subscribers',
    'Open crowd level subscriptions on this instance'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_checkin_attempt(result: str):
    """Record admission outcome. Result: accepted, cooldown, venue_not_found, error"""
    checkin_attempts.labels(result=result).inc()


def record_reward_progress(outcome: str):
    reward_progress_updates.labels(outcome=outcome).inc()


def record_redemption(result: str):
    redemption_attempts.labels(result=result).inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()
