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

audited_mutations_total = Counter(
    "crmtrail_audited_mutations_total",
    "Audited entity mutations by kind, action and outcome",
    ["entity_kind", "action", "outcome"],
)

change_records_written_total = Counter(
    "crmtrail_change_records_written_total",
    "Field-level change records appended to history",
    ["entity_kind"],
)

visibility_denied_total = Counter(
    "crmtrail_visibility_denied_total",
    "Entity accesses rejected by the visibility policy",
    ["entity_kind", "role"],
)

system_events_purged_total = Counter(
    "crmtrail_system_events_purged_total",
    "System events removed by retention or admin purge",
    ["reason"],
)

realtime_events_published_total = Counter(
    "crmtrail_realtime_events_published_total",
    "Events handed to the real-time transport",
    ["event_type"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_audited_mutation(entity_kind: str, action: str, outcome: str) -> None:
    audited_mutations_total.labels(entity_kind=entity_kind, action=action, outcome=outcome).inc()


def observe_change_records(entity_kind: str, count: int) -> None:
    if count > 0:
        change_records_written_total.labels(entity_kind=entity_kind).inc(count)


def observe_visibility_denied(entity_kind: str, role: str) -> None:
    visibility_denied_total.labels(entity_kind=entity_kind, role=role).inc()


def observe_system_events_purged(reason: str, count: int) -> None:
    if count > 0:
        system_events_purged_total.labels(reason=reason).inc(count)


def observe_realtime_event(event_type: str) -> None:
    realtime_events_published_total.labels(event_type=event_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
