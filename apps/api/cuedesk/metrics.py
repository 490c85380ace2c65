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

authz_permission_decisions_total = Counter(
    "authz_permission_decisions_total",
    "Permission decisions by section, action and outcome",
    ["section", "action", "decision"],
)

authz_cross_tenant_denials_total = Counter(
    "authz_cross_tenant_denials_total",
    "Requests denied for naming a company other than the caller's own",
)

authz_policy_cache_hit_total = Counter(
    "authz_policy_cache_hit_total",
    "Authorization policy override cache hits",
)

authz_policy_cache_miss_total = Counter(
    "authz_policy_cache_miss_total",
    "Authorization policy override cache misses",
)

join_request_transitions_total = Counter(
    "join_request_transitions_total",
    "Join request state transitions by resulting status",
    ["status"],
)

claims_sync_total = Counter(
    "claims_sync_total",
    "Identity provider claims synchronization attempts by outcome",
    ["outcome"],
)

storage_transient_errors_total = Counter(
    "storage_transient_errors_total",
    "Storage failures surfaced as retryable errors",
    ["operation"],
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


def observe_permission_decision(section: str, action: str, allowed: bool) -> None:
    decision = "allow" if allowed else "deny"
    authz_permission_decisions_total.labels(section=section, action=action, decision=decision).inc()


def observe_cross_tenant_denial() -> None:
    authz_cross_tenant_denials_total.inc()


def observe_authz_policy_cache_hit() -> None:
    authz_policy_cache_hit_total.inc()


def observe_authz_policy_cache_miss() -> None:
    authz_policy_cache_miss_total.inc()


def observe_join_request_transition(status: str) -> None:
    join_request_transitions_total.labels(status=status).inc()


def observe_claims_sync(outcome: str) -> None:
    claims_sync_total.labels(outcome=outcome).inc()


def observe_storage_transient_error(operation: str) -> None:
    storage_transient_errors_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
