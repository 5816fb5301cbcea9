"""Prometheus instruments for HTTP traffic and CRM workflows."""

from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "path", "status"],
)
HTTP_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
IMPORT_ROWS = Counter(
    "crm_import_rows_total",
    "Bulk import rows by entity and outcome",
    ["entity", "outcome"],
)
DOCUMENTS_STORED = Counter(
    "crm_documents_stored_total",
    "Documents written to the upload directory",
    ["entity"],
)
DOCUMENT_CLEANUPS = Counter(
    "crm_document_cleanups_total",
    "Stored documents removed after a failed write",
    ["entity"],
)
STAGE_TRANSITIONS = Counter(
    "crm_approval_stage_transitions_total",
    "Opportunity approval stage transitions",
    ["stage"],
)

_TEMPLATE_PARAM = re.compile(r"\{[^{}]+\}")
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


def http_path_label(request: Request) -> str:
    """Label a request by its route template so record ids never become label values."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _TEMPLATE_PARAM.sub("{id}", template)
    return _NUMERIC_SEGMENT.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    HTTP_REQUESTS.labels(method=method, path=path, status=str(status)).inc()
    HTTP_LATENCY.labels(method=method, path=path).observe(duration)


def observe_import_row(entity: str, outcome: str) -> None:
    IMPORT_ROWS.labels(entity=entity, outcome=outcome).inc()


def observe_documents_stored(entity: str, count: int = 1) -> None:
    if count > 0:
        DOCUMENTS_STORED.labels(entity=entity).inc(count)


def observe_document_cleanup(entity: str, count: int = 1) -> None:
    if count > 0:
        DOCUMENT_CLEANUPS.labels(entity=entity).inc(count)


def observe_approval_stage_transition(stage: str) -> None:
    STAGE_TRANSITIONS.labels(stage=stage).inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
