"""
Prometheus metrics for DMARC Watch

Provides application metrics for monitoring:
- HTTP request latency and counts
- Report ingestion and mailbox sync outcomes
- SPF resolution DNS lookups
- Source auto-classification and AI generations
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response
import time
import logging

logger = logging.getLogger(__name__)

# Create metrics router
metrics_router = APIRouter(tags=["metrics"])

# =============================================================================
# HTTP Metrics
# =============================================================================

HTTP_REQUEST_DURATION = Histogram(
    "dmarcwatch_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

HTTP_REQUESTS_TOTAL = Counter(
    "dmarcwatch_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

# =============================================================================
# Ingestion Metrics
# =============================================================================

REPORTS_IMPORTED = Counter(
    "dmarcwatch_reports_imported_total",
    "Total number of DMARC report import attempts",
    ["status"]  # imported, skipped, failed
)

RECORDS_INGESTED = Counter(
    "dmarcwatch_records_ingested_total",
    "Total number of DMARC records ingested"
)

REPORT_IMPORT_DURATION = Histogram(
    "dmarcwatch_report_import_duration_seconds",
    "Time spent importing a single report",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

MESSAGES_SYNCED = Counter(
    "dmarcwatch_messages_synced_total",
    "Total number of mailbox messages processed by sync runs",
    ["status"]  # completed, failed, already_processed
)

# =============================================================================
# Classification Metrics
# =============================================================================

SPF_DNS_LOOKUPS = Counter(
    "dmarcwatch_spf_dns_lookups_total",
    "DNS TXT lookups issued while resolving SPF includes",
    ["outcome"]  # found, no_spf, error
)

SOURCES_AUTO_MATCHED = Counter(
    "dmarcwatch_sources_auto_matched_total",
    "Sources linked to a known sender by auto-matching"
)

AI_GENERATIONS = Counter(
    "dmarcwatch_ai_generations_total",
    "AI recommendation generation attempts",
    ["outcome"]  # success, cooldown, rate_limited, error
)

# =============================================================================
# Metrics Endpoint
# =============================================================================

@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    """
    Prometheus metrics endpoint

    Returns all application metrics in Prometheus text format.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# =============================================================================
# Middleware for HTTP Metrics
# =============================================================================

async def metrics_middleware(request, call_next):
    """
    Middleware to collect HTTP request metrics
    """
    method = request.method

    # Normalize paths with IDs to reduce cardinality
    # e.g., /api/domains/<uuid>/sources/match -> /api/domains/{id}/sources/match
    normalized_parts = []
    for part in request.url.path.split("/"):
        if part.isdigit() or (len(part) == 36 and "-" in part):
            normalized_parts.append("{id}")
        else:
            normalized_parts.append(part)
    endpoint = "/".join(normalized_parts)

    start_time = time.time()
    status_code = "500"
    try:
        response = await call_next(request)
        status_code = str(response.status_code)
        return response
    finally:
        HTTP_REQUEST_DURATION.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code
        ).observe(time.time() - start_time)
        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code
        ).inc()


# =============================================================================
# Helper Functions for Business Metrics
# =============================================================================

def record_report_imported(status: str, record_count: int = 0):
    """Record a report import outcome"""
    REPORTS_IMPORTED.labels(status=status).inc()
    if record_count:
        RECORDS_INGESTED.inc(record_count)


def record_message_synced(status: str):
    MESSAGES_SYNCED.labels(status=status).inc()


def record_spf_lookup(outcome: str):
    SPF_DNS_LOOKUPS.labels(outcome=outcome).inc()


def record_sources_matched(count: int):
    if count:
        SOURCES_AUTO_MATCHED.inc(count)


def record_ai_generation(outcome: str):
    """Record an AI generation attempt"""
    AI_GENERATIONS.labels(outcome=outcome).inc()
