from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

liveness_checks_total = Counter(
    "liveness_checks_total",
    "Primary backend liveness probe results",
    labelnames=["result"],
)

cot_generations_total = Counter(
    "cot_generations_total",
    "Chain-of-thought resolutions by outcome",
    labelnames=["outcome"],
)

cot_latency_seconds = Histogram(
    "cot_latency_seconds",
    "Auxiliary chain-of-thought call latency (seconds)",
    buckets=[0.5, 1, 2, 5, 10, 20, 30, 60, 120],
)

routing_decisions_total = Counter(
    "routing_decisions_total",
    "Completion routing decisions",
    labelnames=["mode", "handler"],
)

relay_cancellations_total = Counter(
    "relay_cancellations_total",
    "Relays ended by cancellation",
    labelnames=["reason"],
)

upstream_latency_seconds = Histogram(
    "upstream_latency_seconds",
    "Time to downstream response headers (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["mode"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
