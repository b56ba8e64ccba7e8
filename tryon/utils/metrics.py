"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
generation_requests_total = Counter(
    "generation_requests_total",
    "Total generation requests by outcome",
    ["request_kind", "outcome"],  # outcome: success, cache_hit, invalid_input, transient, terminal, timeout
)

cache_lookups_total = Counter(
    "cache_lookups_total",
    "Result cache lookups",
    ["tier", "result"],  # tier: memory, durable; result: hit, miss, expired, error
)

cache_write_failures_total = Counter(
    "cache_write_failures_total",
    "Durable cache tier write failures (swallowed)",
)

provider_requests_total = Counter(
    "provider_requests_total",
    "Total upstream provider calls",
    ["provider", "status"],
)

upstream_retries_total = Counter(
    "upstream_retries_total",
    "Retries scheduled by the resilient transport",
    ["label", "failure_type"],
)

image_fetch_total = Counter(
    "image_fetch_total",
    "Remote image fetches by route",
    ["route", "status"],  # route: direct or relay host
)

# Histograms
generation_duration_seconds = Histogram(
    "generation_duration_seconds",
    "Provider generation duration (cache misses only)",
    ["provider"],
    buckets=[1, 5, 10, 30, 60, 90, 120, 300],
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
