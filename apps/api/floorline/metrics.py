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

workflow_runs_total = Counter(
    "workflow_runs_total",
    "Total workflow runs by trigger type and outcome",
    ["trigger_type", "status"],
)

workflow_run_duration_seconds = Histogram(
    "workflow_run_duration_seconds",
    "Workflow run duration in seconds",
    ["trigger_type"],
)

workflow_actions_total = Counter(
    "workflow_actions_total",
    "Total workflow actions by type and outcome",
    ["action_type", "status"],
)

workflow_guardrail_blocks_total = Counter(
    "workflow_guardrail_blocks_total",
    "Total workflow guardrail blocks by reason",
    ["reason"],
)

notifications_total = Counter(
    "notifications_total",
    "Total outbound notifications by channel and outcome",
    ["channel", "status"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_workflow_run(trigger_type: str, status: str, duration: float) -> None:
    workflow_runs_total.labels(trigger_type=trigger_type, status=status).inc()
    workflow_run_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_workflow_action(action_type: str, status: str) -> None:
    workflow_actions_total.labels(action_type=action_type, status=status).inc()


def observe_workflow_guardrail_block(reason: str) -> None:
    workflow_guardrail_blocks_total.labels(reason=reason).inc()


def observe_notification(channel: str, status: str) -> None:
    notifications_total.labels(channel=channel, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
