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

timeline_events_recorded_total = Counter(
    "timeline_events_recorded_total",
    "Timeline events recorded by type",
    ["event_type"],
)

timeline_write_failures_total = Counter(
    "timeline_write_failures_total",
    "Timeline writes that failed after the primary mutation",
)

client_import_rows_total = Counter(
    "client_import_rows_total",
    "Client import rows by outcome",
    ["outcome"],
)

client_import_duration_seconds = Histogram(
    "client_import_duration_seconds",
    "Client import batch duration in seconds",
    ["mode"],
)


_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
UNMATCHED_PATH = "<unmatched>"


def resolve_http_path_label(request: Request) -> str:
    """Route template with every path parameter shown as ``{id}``.

    Requests that never reached a route (unknown paths, rate-limited calls) all carry the
    ``<unmatched>`` label.
    """
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if not isinstance(template, str) or not template:
        return UNMATCHED_PATH
    return _PATH_PARAM_RE.sub("{id}", template)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_login_attempt(outcome: str) -> None:
    auth_login_attempts_total.labels(outcome=outcome).inc()


def observe_timeline_event(event_type: str) -> None:
    timeline_events_recorded_total.labels(event_type=event_type).inc()


def observe_timeline_write_failure() -> None:
    timeline_write_failures_total.inc()


def observe_import_rows(outcome: str, count: int = 1) -> None:
    if count > 0:
        client_import_rows_total.labels(outcome=outcome).inc(count)


def observe_import_duration(mode: str, duration: float) -> None:
    client_import_duration_seconds.labels(mode=mode).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
