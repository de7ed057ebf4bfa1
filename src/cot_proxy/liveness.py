from __future__ import annotations

import httpx
import structlog

from .metrics import liveness_checks_total

log = structlog.get_logger()


async def is_alive(
    client: httpx.AsyncClient,
    base_url: str,
    *,
    path: str = "/health",
    timeout_seconds: float = 5.0,
) -> bool:
    """Probe the primary backend; unreachable or slow counts as not alive."""
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    try:
        resp = await client.get(url, timeout=timeout_seconds)
    except httpx.HTTPError as e:
        log.info("liveness_probe_failed", url=url, error=type(e).__name__)
        liveness_checks_total.labels(result="unreachable").inc()
        return False

    alive = resp.is_success
    liveness_checks_total.labels(result="alive" if alive else "unhealthy").inc()
    if not alive:
        log.info("liveness_probe_unhealthy", url=url, status_code=resp.status_code)
    return alive
