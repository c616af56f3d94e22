"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "lifx_bridge_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "lifx_bridge_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DISCOVERY_EVENTS = Counter(
    "lifx_bridge_discovery_events_total",
    "Register/unregister callbacks received from the discovery library",
    ["event"],
    registry=_REGISTRY,
)
REGISTRY_TRANSITIONS = Counter(
    "lifx_bridge_registry_transitions_total",
    "Device record state transitions",
    ["transition"],
    registry=_REGISTRY,
)
DEVICE_QUERIES = Counter(
    "lifx_bridge_device_queries_total",
    "State queries served by the registry",
    ["result"],
    registry=_REGISTRY,
)
DEVICE_COMMANDS = Counter(
    "lifx_bridge_device_commands_total",
    "Commands dispatched by the registry",
    ["result"],
    registry=_REGISTRY,
)
DEVICE_CALL_DURATION = Histogram(
    "lifx_bridge_device_call_duration_seconds",
    "Time spent waiting on live device calls",
    ["operation", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
CAPABILITY_RESOLUTIONS = Counter(
    "lifx_bridge_capability_resolutions_total",
    "Hardware info lookups",
    ["result"],
    registry=_REGISTRY,
)
DEVICES = Gauge(
    "lifx_bridge_devices",
    "Known devices by reachability",
    ["status"],
    registry=_REGISTRY,
)
POLL_CYCLE_DURATION = Histogram(
    "lifx_bridge_poll_cycle_duration_seconds",
    "Time spent refreshing device state",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
SUBSYSTEM_FAILURES = Counter(
    "lifx_bridge_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "lifx_bridge_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_discovery_event(event: str) -> None:
    DISCOVERY_EVENTS.labels(event=event).inc()


def record_transition(transition: str) -> None:
    REGISTRY_TRANSITIONS.labels(transition=transition).inc()


def record_query(result: str) -> None:
    DEVICE_QUERIES.labels(result=result).inc()


def record_command(result: str) -> None:
    DEVICE_COMMANDS.labels(result=result).inc()


def observe_device_call(operation: str, result: str, duration_seconds: float) -> None:
    """Record how long a live device call took."""

    DEVICE_CALL_DURATION.labels(operation=operation, result=result).observe(duration_seconds)


def record_capability_resolution(result: str) -> None:
    CAPABILITY_RESOLUTIONS.labels(result=result).inc()


def set_device_counts(online: int, offline: int) -> None:
    """Publish the number of known devices per reachability state."""

    DEVICES.labels(status="online").set(online)
    DEVICES.labels(status="offline").set(offline)


def observe_poll_cycle(result: str, duration_seconds: float) -> None:
    POLL_CYCLE_DURATION.labels(result=result).observe(duration_seconds)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
