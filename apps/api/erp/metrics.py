from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_deal_moves_total = Counter(
    "crm_deal_moves_total",
    "Total deal moves by outcome",
    ["outcome"],
)

crm_deal_move_duration_seconds = Histogram(
    "crm_deal_move_duration_seconds",
    "Deal move duration in seconds, including lock wait",
)

crm_concurrency_conflicts_total = Counter(
    "crm_concurrency_conflicts_total",
    "Position-changing operations aborted by a lock or serialization conflict",
    ["operation"],
)

crm_deal_status_transitions_total = Counter(
    "crm_deal_status_transitions_total",
    "Deal status transitions by resulting status",
    ["status"],
)

crm_invoice_conversions_total = Counter(
    "crm_invoice_conversions_total",
    "Won deal to invoice conversions by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_move(outcome: str, duration: float) -> None:
    crm_deal_moves_total.labels(outcome=outcome).inc()
    crm_deal_move_duration_seconds.observe(duration)


def observe_concurrency_conflict(operation: str) -> None:
    crm_concurrency_conflicts_total.labels(operation=operation).inc()


def observe_status_transition(status: str) -> None:
    crm_deal_status_transitions_total.labels(status=status).inc()


def observe_invoice_conversion(outcome: str) -> None:
    crm_invoice_conversions_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
