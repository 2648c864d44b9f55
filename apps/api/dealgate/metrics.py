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

enforcement_decisions_total = Counter(
    "enforcement_decisions_total",
    "Total recorded enforcement decisions",
    ["action", "outcome", "reason_code"],
)

enforcement_authorize_duration_seconds = Histogram(
    "enforcement_authorize_duration_seconds",
    "Gateway authorize duration in seconds",
    ["action"],
)

enforcement_authorize_failures_total = Counter(
    "enforcement_authorize_failures_total",
    "Authorize calls that failed before a decision was committed",
    ["reason"],
)

enforcement_deal_freezes_total = Counter(
    "enforcement_deal_freezes_total",
    "Deals frozen by reason code",
    ["reason_code"],
)

enforcement_override_transitions_total = Counter(
    "enforcement_override_transitions_total",
    "Override token transitions by target status",
    ["status"],
)

enforcement_unclassified_decisions_total = Counter(
    "enforcement_unclassified_decisions_total",
    "Policy evaluations that matched no rule",
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


def observe_enforcement_decision(action: str, outcome: str, reason_code: str) -> None:
    enforcement_decisions_total.labels(action=action, outcome=outcome, reason_code=reason_code).inc()


def observe_authorize_duration(action: str, duration: float) -> None:
    enforcement_authorize_duration_seconds.labels(action=action).observe(duration)


def observe_authorize_failure(reason: str) -> None:
    enforcement_authorize_failures_total.labels(reason=reason).inc()


def observe_deal_frozen(reason_code: str) -> None:
    enforcement_deal_freezes_total.labels(reason_code=reason_code).inc()


def observe_override_transition(status: str) -> None:
    enforcement_override_transitions_total.labels(status=status).inc()


def observe_unclassified_decision() -> None:
    enforcement_unclassified_decisions_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
