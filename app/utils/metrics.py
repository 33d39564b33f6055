"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total wallet ledger operations",
    ["operation"],  # hold, release, refund, settle, recharge
)

ledger_amount_total = Counter(
    "ledger_amount_total",
    "Total amount moved by ledger operations (minor units)",
    ["operation"],
)

ledger_rejected_total = Counter(
    "ledger_rejected_total",
    "Ledger operations rejected by guards",
    ["reason"],  # insufficient_funds, already_released, hold_not_found
)

booking_transitions_total = Counter(
    "booking_transitions_total",
    "Booking state transitions",
    ["booking_type", "to_status"],
)

booking_guard_failures_total = Counter(
    "booking_guard_failures_total",
    "Booking operations rejected by a guard",
    ["operation", "code"],
)

auto_release_total = Counter(
    "auto_release_total",
    "Auto-release sweep outcomes",
    ["status"],  # released, failed
)

notifications_total = Counter(
    "notifications_total",
    "Notification outbox events",
    ["kind", "status"],  # queued, dispatched, failed
)

sms_requests_total = Counter(
    "sms_requests_total",
    "Total SMS gateway requests",
    ["status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
call_duration_minutes = Histogram(
    "call_duration_minutes",
    "Billed call duration",
    ["call_type"],
    buckets=[1, 5, 10, 15, 30, 60, 120],
)

sms_request_duration_seconds = Histogram(
    "sms_request_duration_seconds",
    "SMS gateway request duration",
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)

# Gauges
bookings_awaiting_confirmation = Gauge(
    "bookings_awaiting_confirmation",
    "Bookings in the escrow window at the last sweep",
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


def record_ledger(operation: str, amount: int) -> None:
    ledger_operations_total.labels(operation=operation).inc()
    ledger_amount_total.labels(operation=operation).inc(max(0, amount))


def record_transition(booking_type: str, to_status: str) -> None:
    booking_transitions_total.labels(booking_type=booking_type, to_status=to_status).inc()
