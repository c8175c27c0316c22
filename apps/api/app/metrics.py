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

credential_tokens_issued_total = Counter(
    "credential_tokens_issued_total",
    "Single-use credential tokens issued",
    ["purpose"],
)

credential_token_consumptions_total = Counter(
    "credential_token_consumptions_total",
    "Credential token consumption attempts by outcome",
    ["purpose", "outcome"],
)

auth_session_events_total = Counter(
    "auth_session_events_total",
    "Session lifecycle events",
    ["event"],
)

scope_denials_total = Counter(
    "scope_denials_total",
    "Access-scope denials by context and reason",
    ["context", "reason"],
)

notifier_failures_total = Counter(
    "notifier_failures_total",
    "Failed outbound notifications",
    ["notification"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the auth rate limiter",
    ["path"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_login_attempt(outcome: str) -> None:
    auth_login_attempts_total.labels(outcome=outcome).inc()


def observe_token_issued(purpose: str) -> None:
    credential_tokens_issued_total.labels(purpose=purpose).inc()


def observe_token_consumption(purpose: str, outcome: str) -> None:
    credential_token_consumptions_total.labels(purpose=purpose, outcome=outcome).inc()


def observe_session_event(event: str, count: int = 1) -> None:
    if count > 0:
        auth_session_events_total.labels(event=event).inc(count)


def observe_scope_denial(context: str, reason: str) -> None:
    scope_denials_total.labels(context=context, reason=reason).inc()


def observe_notifier_failure(notification: str) -> None:
    notifier_failures_total.labels(notification=notification).inc()


def observe_rate_limited(path: str) -> None:
    rate_limited_requests_total.labels(path=path).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
