from __future__ import annotations

import httpx

from .config import ProxyConfig


def make_upstream_client(
    cfg: ProxyConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Shared outbound client for the primary backend, fallback providers and the CoT model.

    Connections are pooled per host up to `upstream_max_connections`; idle
    keep-alive connections are recycled after `upstream_keepalive_expiry_seconds`.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.upstream_timeout_seconds, connect=10.0),
        limits=httpx.Limits(
            max_connections=cfg.upstream_max_connections,
            max_keepalive_connections=cfg.upstream_max_connections,
            keepalive_expiry=cfg.upstream_keepalive_expiry_seconds,
        ),
        transport=transport,
    )
