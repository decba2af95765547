"""
Prometheus metrics for the flash sale service.

Covers:
1. HTTP request latency, totals, in-flight requests and errors
2. Reservation outcomes on the request path
3. Settlement outcomes, processing time and compensations
4. Dead-lettered events and operator alerts
5. Sale cache hit rate and remaining stock
"""

import time
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, Info


# =============================================================================
# HTTP REQUEST METRICS
# =============================================================================

HTTP_REQUEST_LATENCY = Histogram(
    'flash_sale_http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['service', 'endpoint', 'method', 'status_code'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.15, 0.2, 0.3, 0.5, 0.75, 1.0, 2.5, 5.0]
)

HTTP_REQUEST_TOTAL = Counter(
    'flash_sale_http_requests_total',
    'Total HTTP requests',
    ['service', 'endpoint', 'method', 'status_code']
)

# High values mean the service is not keeping up with the rush
HTTP_IN_FLIGHT_REQUESTS = Gauge(
    'flash_sale_http_in_flight_requests',
    'Number of HTTP requests currently being processed',
    ['service']
)

HTTP_ERRORS_TOTAL = Counter(
    'flash_sale_http_errors_total',
    'Total HTTP errors (4xx and 5xx)',
    ['service', 'endpoint', 'error_type']  # error_type: client_error, server_error
)


# =============================================================================
# RESERVATION METRICS
# =============================================================================

RESERVATIONS_TOTAL = Counter(
    'flash_sale_reservations_total',
    'Reservation attempts by outcome',
    ['outcome']  # accepted, sold_out, already_purchased, sale_not_active, ambiguous
)

REMAINING_STOCK = Gauge(
    'flash_sale_remaining_stock',
    'Unsold stock tokens in the pool',
    ['product_id']
)

SALE_CACHE_HITS_TOTAL = Counter(
    'flash_sale_sale_cache_hits_total',
    'Sale cache hits'
)

SALE_CACHE_MISSES_TOTAL = Counter(
    'flash_sale_sale_cache_misses_total',
    'Sale cache misses'
)


# =============================================================================
# SETTLEMENT METRICS
# =============================================================================

SETTLEMENTS_TOTAL = Counter(
    'flash_sale_settlements_total',
    'Settlement events by outcome',
    ['outcome']  # settled, duplicate, compensated, failed
)

SETTLEMENT_PROCESSING_SECONDS = Histogram(
    'flash_sale_settlement_processing_seconds',
    'Time to process a single settlement event',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

COMPENSATIONS_TOTAL = Counter(
    'flash_sale_compensations_total',
    'Reservations rolled back',
    ['source']  # worker, request
)

# Non-zero values require immediate attention
SETTLEMENT_ALERTS_TOTAL = Counter(
    'flash_sale_settlement_alerts_total',
    'Settlements given up after bounded retries'
)

DLQ_MESSAGES_TOTAL = Counter(
    'flash_sale_dlq_messages_total',
    'Events parked on the dead-letter topic',
    ['reason']
)

DUPLICATE_EVENTS_TOTAL = Counter(
    'flash_sale_duplicate_events_total',
    'Redelivered settlement events detected and skipped'
)


# =============================================================================
# SERVICE INFO
# =============================================================================

SERVICE_INFO = Info(
    'flash_sale_service',
    'Service information'
)


@contextmanager
def track_settlement():
    """Context manager for timing settlement of one event."""
    start_time = time.time()
    try:
        yield
    finally:
        SETTLEMENT_PROCESSING_SECONDS.observe(time.time() - start_time)


def update_remaining_stock(product_id: str, remaining: int):
    REMAINING_STOCK.labels(product_id=product_id).set(remaining)


def set_service_info(service: str, version: str, environment: str):
    """Set service information."""
    SERVICE_INFO.info({
        'service': service,
        'version': version,
        'environment': environment
    })
