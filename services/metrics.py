"""
Prometheus Metrics Module
Version: 1.0.0

Provides scheduling metrics for monitoring and alerting.

Usage:
    from services.metrics import record_sync_run, record_assignment_outcome

    record_sync_run(success=True, duration_seconds=4.2, bookings_cached=318)
    record_assignment_outcome("no_candidates")
"""
from prometheus_client import Counter, Histogram, Gauge, Info, REGISTRY
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response


# =============================================================================
# APPLICATION INFO
# =============================================================================

APP_INFO = Info(
    'scheduler_app',
    'Application information'
)


# =============================================================================
# REQUEST METRICS
# =============================================================================

REQUEST_DURATION = Histogram(
    'scheduler_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint', 'status_code'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


# =============================================================================
# CACHE SYNC METRICS
# =============================================================================

SYNC_RUNS_TOTAL = Counter(
    'scheduler_cache_sync_runs_total',
    'Total Bokun cache sync runs',
    ['status']  # 'success', 'partial' or 'error'
)

SYNC_DURATION = Histogram(
    'scheduler_cache_sync_duration_seconds',
    'Bokun cache sync duration',
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

CACHED_BOOKINGS = Gauge(
    'scheduler_cached_bookings',
    'Bookings currently in the Bokun cache'
)

CACHE_AGE_HOURS = Gauge(
    'scheduler_cache_age_hours',
    'Hours since the last full cache sync'
)


# =============================================================================
# BOOKING READ METRICS
# =============================================================================

LIVE_FALLBACKS_TOTAL = Counter(
    'scheduler_live_fallbacks_total',
    'Booking reads that fell back to the live Bokun API',
    ['reason']  # 'cache_error', 'cache_empty' or 'cache_stale'
)

REMOTE_FETCH_DURATION = Histogram(
    'scheduler_remote_fetch_duration_seconds',
    'Per-product Bokun fetch duration',
    ['status'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REMOTE_FETCH_FAILURES = Counter(
    'scheduler_remote_fetch_failures_total',
    'Per-product Bokun fetch failures',
    ['reason']  # 'timeout', 'http', 'circuit_open'
)


# =============================================================================
# ASSIGNMENT METRICS
# =============================================================================

ASSIGNMENT_OUTCOMES = Counter(
    'scheduler_assignment_outcomes_total',
    'Auto-assignment outcomes per booking',
    ['outcome']
)

ASSIGNMENT_RUN_DURATION = Histogram(
    'scheduler_assignment_run_duration_seconds',
    'Auto-assignment run duration',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0]
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metrics."""
    APP_INFO.info({
        'version': version,
        'environment': environment
    })


def record_sync_run(success: bool, duration_seconds: float, bookings_cached: int, partial: bool = False):
    """Record one cache sync run."""
    if not success:
        status = "error"
    elif partial:
        status = "partial"
    else:
        status = "success"
    SYNC_RUNS_TOTAL.labels(status=status).inc()
    SYNC_DURATION.observe(duration_seconds)
    CACHED_BOOKINGS.set(bookings_cached)


def record_remote_fetch(duration_seconds: float, success: bool, reason: str = "http"):
    """Record one per-product Bokun fetch."""
    REMOTE_FETCH_DURATION.labels(status="success" if success else "error").observe(duration_seconds)
    if not success:
        REMOTE_FETCH_FAILURES.labels(reason=reason).inc()


def record_assignment_outcome(outcome: str):
    """Record the outcome of one booking in an auto-assignment run."""
    ASSIGNMENT_OUTCOMES.labels(outcome=outcome).inc()


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )
