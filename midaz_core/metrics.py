"""
Pipeline Metrics
================
Prometheus metrics for the request pipeline.

Tracks:
- Request latency (histogram) and counts by outcome
- In-flight requests
- Circuit breaker states and transitions
- Connection pool utilization
- Response cache hits, misses and evictions
- Retries and errors by kind

Usage:
    from midaz_core.metrics import get_metrics_text
    print(get_metrics_text())
"""

import re

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Dedicated registry so that embedding applications keep their own default one clean
PIPELINE_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    name="midaz_http_request_duration_seconds",
    documentation="Time spent on a single HTTP attempt",
    labelnames=["method", "endpoint", "status"],
    buckets=[
        0.005, 0.01, 0.025, 0.05,
        0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0,
    ],
    registry=PIPELINE_REGISTRY,
)

REQUEST_TOTAL = Counter(
    name="midaz_http_requests_total",
    documentation="Total number of HTTP attempts",
    labelnames=["method", "endpoint", "status"],
    registry=PIPELINE_REGISTRY,
)

REQUESTS_INFLIGHT = Gauge(
    name="midaz_http_requests_inflight",
    documentation="Number of HTTP attempts currently in progress",
    labelnames=["method"],
    registry=PIPELINE_REGISTRY,
)

CIRCUIT_BREAKER_STATE = Gauge(
    name="midaz_circuit_breaker_state",
    documentation="Circuit breaker state (0=closed, 1=half-open, 2=open)",
    labelnames=["endpoint"],
    registry=PIPELINE_REGISTRY,
)

CIRCUIT_BREAKER_EVENTS = Counter(
    name="midaz_circuit_breaker_events_total",
    documentation="Circuit breaker events (success, failure, open, close, half_open, rejected)",
    labelnames=["endpoint", "event"],
    registry=PIPELINE_REGISTRY,
)

CONNECTION_POOL_SIZE = Gauge(
    name="midaz_connection_pool_requests",
    documentation="Requests held by the connection pool per host",
    labelnames=["host", "state"],
    registry=PIPELINE_REGISTRY,
)

CACHE_EVENTS = Counter(
    name="midaz_response_cache_events_total",
    documentation="Response cache lookups and evictions",
    labelnames=["event"],
    registry=PIPELINE_REGISTRY,
)

RETRY_ATTEMPTS = Counter(
    name="midaz_retry_attempts_total",
    documentation="Retries scheduled after a retryable failure",
    labelnames=["error_kind"],
    registry=PIPELINE_REGISTRY,
)

PIPELINE_ERRORS = Counter(
    name="midaz_pipeline_errors_total",
    documentation="Errors surfaced by individual attempts",
    labelnames=["endpoint", "error_kind"],
    registry=PIPELINE_REGISTRY,
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def record_request(method: str, endpoint: str, status: str, duration_seconds: float):
    """
    Record one HTTP attempt.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path or endpoint key
        status: Status code as text, or an outcome such as ``timeout``
        duration_seconds: Attempt duration in seconds
    """
    labels = {
        "method": method,
        "endpoint": normalize_endpoint(endpoint),
        "status": status,
    }
    REQUEST_LATENCY.labels(**labels).observe(duration_seconds)
    REQUEST_TOTAL.labels(**labels).inc()


def record_error(endpoint: str, error_kind: str):
    PIPELINE_ERRORS.labels(
        endpoint=normalize_endpoint(endpoint),
        error_kind=error_kind,
    ).inc()


def record_circuit_state(endpoint: str, state: str):
    """
    Record circuit breaker state.

    Args:
        endpoint: Endpoint key
        state: State (closed, half_open, open)
    """
    CIRCUIT_BREAKER_STATE.labels(endpoint=normalize_endpoint(endpoint)).set(
        _CIRCUIT_STATE_VALUES.get(state, -1)
    )


def record_circuit_event(endpoint: str, event: str):
    CIRCUIT_BREAKER_EVENTS.labels(
        endpoint=normalize_endpoint(endpoint),
        event=event,
    ).inc()


def record_pool_state(host: str, active: int, queued: int):
    CONNECTION_POOL_SIZE.labels(host=host, state="active").set(active)
    CONNECTION_POOL_SIZE.labels(host=host, state="queued").set(queued)


def record_cache_event(event: str):
    CACHE_EVENTS.labels(event=event).inc()


def record_retry(error_kind: str):
    RETRY_ATTEMPTS.labels(error_kind=error_kind).inc()


def get_metrics_text() -> str:
    """Get pipeline metrics in Prometheus text format."""
    return generate_latest(PIPELINE_REGISTRY).decode("utf-8")


def normalize_endpoint(endpoint: str) -> str:
    """
    Normalize endpoint to reduce cardinality.

    Replaces UUIDs, numeric IDs and query strings with placeholders.
    """
    endpoint = endpoint.split("?", 1)[0]

    endpoint = re.sub(
        r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
        '{uuid}',
        endpoint,
        flags=re.IGNORECASE,
    )

    # Numeric IDs in path segments
    endpoint = re.sub(r'/\d+(?=/|$)', '/{id}', endpoint)

    return endpoint
