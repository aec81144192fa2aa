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

timeline_transitions_total = Counter(
    "timeline_transitions_total",
    "Total lead timeline transitions by action",
    ["action"],
)

timeline_operation_duration_seconds = Histogram(
    "timeline_operation_duration_seconds",
    "Lead timeline operation duration in seconds",
    ["operation"],
)

timeline_gate_rejections_total = Counter(
    "timeline_gate_rejections_total",
    "Total lead timeline operations rejected by a gate",
    ["reason"],
)

timeline_lock_conflicts_total = Counter(
    "timeline_lock_conflicts_total",
    "Total optimistic lock conflicts retried by the timeline engine",
    ["operation"],
)

activity_write_failures_total = Counter(
    "activity_write_failures_total",
    "Total activity log writes that failed after a committed mutation",
    ["action"],
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


def observe_timeline_transition(action: str) -> None:
    timeline_transitions_total.labels(action=action).inc()


def observe_timeline_operation(operation: str, duration: float) -> None:
    timeline_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_gate_rejection(reason: str) -> None:
    timeline_gate_rejections_total.labels(reason=reason).inc()


def observe_lock_conflict(operation: str) -> None:
    timeline_lock_conflicts_total.labels(operation=operation).inc()


def observe_activity_write_failure(action: str) -> None:
    activity_write_failures_total.labels(action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
