"""
Métriques Prometheus du pipeline d'ingestion.

Ce module définit toutes les métriques Prometheus utilisées pour le monitoring du
routage, du fan-out, des commits, des retries et de l'API d'administration.
"""

import time

from fastapi import APIRouter, Request
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

metrics_router = APIRouter()

REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "route", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Latency of HTTP requests", ["route"]
)

# Routage / Envelope Store
ENVELOPES_ROUTED_TOTAL = Counter(
    "pipeline_envelopes_routed_total",
    "Envelopes seen by the ingestion router",
    ["source", "outcome"],
)
ENVELOPE_TRANSITIONS_TOTAL = Counter(
    "pipeline_envelope_transitions_total",
    "Envelope state machine transitions",
    ["state"],
)
QUEUE_DEPTH = Gauge(
    "pipeline_queue_depth",
    "Messages waiting in a source queue",
    ["source"],
)

# Fan-out vers les services
SERVICE_CALLS_TOTAL = Counter(
    "pipeline_service_calls_total",
    "Processing service calls",
    ["service", "result"],
)
SERVICE_LATENCY = Histogram(
    "pipeline_service_latency_seconds",
    "Latency of processing service calls",
    ["service"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)
PROCESS_RESULTS_TOTAL = Counter(
    "pipeline_process_results_total",
    "Coordinator attempt outcomes",
    ["operation", "result"],
)

# Stockage versionné
COMMITS_TOTAL = Counter(
    "pipeline_commits_total",
    "Committed content versions",
    ["operation"],
)
VERSION_CONFLICTS_TOTAL = Counter(
    "pipeline_version_conflicts_total",
    "Optimistic version allocation conflicts retried",
)

# Retry / dead-letter
RETRIES_SCHEDULED_TOTAL = Counter(
    "pipeline_retries_scheduled_total",
    "Retries scheduled after transient failures",
    ["source"],
)
DEAD_LETTERS_TOTAL = Counter(
    "pipeline_dead_letters_total",
    "Envelopes moved to dead-letter",
    ["source", "reason"],
)

# Audit / collaborateurs externes
AUDIT_RECORDS_TOTAL = Counter(
    "pipeline_audit_records_total",
    "Audit records written (or deduplicated)",
    ["operation", "result"],
)
COMPLIANCE_NOTIFICATIONS_TOTAL = Counter(
    "pipeline_compliance_notifications_total",
    "Compliance notification deliveries",
    ["result"],
)
CACHE_INVALIDATIONS_TOTAL = Counter(
    "pipeline_cache_invalidations_total",
    "Cache invalidation signals emitted",
    ["result"],
)
POSTCOMMIT_ACTIONS_TOTAL = Counter(
    "pipeline_postcommit_actions_total",
    "Post-commit action outcomes",
    ["result"],
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware pour collecter les métriques HTTP."""

    async def dispatch(self, request: Request, call_next):
        """Mesure la latence et compte les requêtes par route et statut."""
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        route_label = getattr(route, "path", None) or "unmatched"
        REQUEST_LATENCY.labels(route=route_label).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(
            method=request.method, route=route_label, status=str(response.status_code)
        ).inc()
        return response


@metrics_router.get("/metrics")
def metrics() -> Response:
    """Expose les métriques au format texte Prometheus."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
