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

auth_login_attempts_total = Counter(
    "auth_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)

auth_tokens_issued_total = Counter(
    "auth_tokens_issued_total",
    "Signed tokens issued by token type",
    ["token_type"],
)

auth_rate_limited_total = Counter(
    "auth_rate_limited_total",
    "Requests rejected by the per-IP rate limiter",
    ["route_group"],
)

approval_actions_total = Counter(
    "approval_actions_total",
    "Approval decisions by action and resulting request status",
    ["action", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_login_attempt(outcome: str) -> None:
    auth_login_attempts_total.labels(outcome=outcome).inc()


def observe_token_issued(token_type: str) -> None:
    auth_tokens_issued_total.labels(token_type=token_type).inc()


def observe_rate_limited(route_group: str) -> None:
    auth_rate_limited_total.labels(route_group=route_group).inc()


def observe_approval_action(action: str, outcome: str) -> None:
    approval_actions_total.labels(action=action, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
