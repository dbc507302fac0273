from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "chunkswap_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "chunkswap_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0),
)
_REMOTE_COMMANDS = Counter(
    "chunkswap_remote_commands_total",
    "Total remote commands executed on cluster hosts",
    labelnames=("action", "result"),
)
_REMOTE_LATENCY = Histogram(
    "chunkswap_remote_command_duration_seconds",
    "Remote command latency seconds",
    labelnames=("action",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
_CHECKS = Counter(
    "chunkswap_replacement_checks_total",
    "Disk replacement validation checks",
    labelnames=("check", "result"),
)
_REPLACEMENTS = Counter(
    "chunkswap_replacement_operations_total",
    "Disk replacement operations",
    labelnames=("action", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_remote_command(*, action: str, ok: bool, duration_seconds: float) -> None:
    _REMOTE_COMMANDS.labels(action=action, result="ok" if ok else "error").inc()
    _REMOTE_LATENCY.labels(action=action).observe(duration_seconds)


def record_check(*, check: str, ok: bool) -> None:
    _CHECKS.labels(check=check, result="pass" if ok else "reject").inc()


def record_replacement(*, action: str, ok: bool) -> None:
    _REPLACEMENTS.labels(action=action, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
