"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
paywall_decisions_total = Counter(
    "paywall_decisions_total",
    "Total paywall decisions",
    ["show", "context"],
)

offers_granted_total = Counter(
    "offers_granted_total",
    "Total retention offers created",
)

analytics_events_delivered_total = Counter(
    "analytics_events_delivered_total",
    "Analytics events accepted by the sink",
)

analytics_events_failed_total = Counter(
    "analytics_events_failed_total",
    "Failed analytics delivery attempts",
)

analytics_events_dropped_total = Counter(
    "analytics_events_dropped_total",
    "Analytics events given up on",
    ["reason"],  # queue_full, retries_exhausted
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
paywall_decision_duration_seconds = Histogram(
    "paywall_decision_duration_seconds",
    "Time to produce one paywall decision",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
)

# Gauges
analytics_queue_size = Gauge(
    "analytics_queue_size",
    "Events waiting in the local analytics queue",
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
