"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total ledger mutations by type and outcome",
    ["transaction_type", "outcome"],  # applied, insufficient, duplicate, unavailable
)

balance_rejected_total = Counter(
    "balance_rejected_total",
    "Total debits rejected for insufficient balance",
)

credits_deduplicated_total = Counter(
    "credits_deduplicated_total",
    "Credits skipped because the external reference was already applied",
    ["source"],  # precheck, constraint, event_id
)

metering_debits_total = Counter(
    "metering_debits_total",
    "Usage debits by metering mode and outcome",
    ["mode", "outcome"],  # mode: batch, stream
)

metering_soft_failures_total = Counter(
    "metering_soft_failures_total",
    "Usage debits that could not be recorded after delivery",
    ["reason"],
)

stripe_webhook_events_total = Counter(
    "stripe_webhook_events_total",
    "Stripe webhook events by type and processing outcome",
    ["event_type", "outcome"],
)

reconciliation_polls_total = Counter(
    "reconciliation_polls_total",
    "Reconciliation poll runs by final outcome",
    ["outcome"],  # credited, pending
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
ledger_operation_duration_seconds = Histogram(
    "ledger_operation_duration_seconds",
    "Duration of the ledger atomic unit (lock, update, insert, commit)",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 5],
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
