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

renewal_runs_total = Counter(
    "renewal_runs_total",
    "Total automation runs by function and final status",
    ["function", "status"],
)

renewal_run_duration_seconds = Histogram(
    "renewal_run_duration_seconds",
    "Automation run duration in seconds",
    ["function"],
)

renewal_ledger_transitions_total = Counter(
    "renewal_ledger_transitions_total",
    "Ledger state transitions by outcome",
    ["transition", "outcome"],
)

renewal_line_items_total = Counter(
    "renewal_line_items_total",
    "Line items materialized by outcome",
    ["outcome"],
)

renewal_ops_log_failures_total = Counter(
    "renewal_ops_log_failures_total",
    "Failed best-effort automation log writes",
    ["operation"],
)


_INT_RE = re.compile(r"/\d+\b")
_DATE_RE = re.compile(r"/\d{4}-\d{2}-\d{2}\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_dates = _DATE_RE.sub("/{id}", path)
    return _INT_RE.sub("/{id}", without_dates)


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


def observe_run(function_name: str, status: str, duration: float) -> None:
    renewal_runs_total.labels(function=function_name, status=status).inc()
    renewal_run_duration_seconds.labels(function=function_name).observe(duration)


def observe_ledger_transition(transition: str, applied: bool) -> None:
    renewal_ledger_transitions_total.labels(transition=transition, outcome="applied" if applied else "skipped").inc()


def observe_line_items(created: int, deduped: int, failed: int) -> None:
    if created > 0:
        renewal_line_items_total.labels(outcome="created").inc(created)
    if deduped > 0:
        renewal_line_items_total.labels(outcome="deduped").inc(deduped)
    if failed > 0:
        renewal_line_items_total.labels(outcome="error").inc(failed)


def observe_ops_log_failure(operation: str) -> None:
    renewal_ops_log_failures_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
