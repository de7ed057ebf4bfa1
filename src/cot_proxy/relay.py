from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator

import httpx
import structlog
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from .cancellation import CancellationContext
from .errors import RelayCancelledError, RequestTimeoutError, UpstreamProtocolError
from .metrics import relay_cancellations_total, upstream_latency_seconds
from .routing import RouteDecision

log = structlog.get_logger()


async def _force_abort(ctx: CancellationContext) -> None:
    ctx.trigger_force_abort()


class StreamRelay:
    """Sends a routed request downstream and turns the answer into the caller's response."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    def _build(self, route: RouteDecision) -> httpx.Request:
        if route.json_body is not None:
            return self._client.build_request(route.method, route.url, headers=route.headers, json=route.json_body)
        return self._client.build_request(route.method, route.url, headers=route.headers, content=route.content)

    async def send(
        self,
        route: RouteDecision,
        *,
        stream: bool,
        ctx: CancellationContext,
        preserve_content_type: bool = False,
    ) -> Response:
        request = self._build(route)
        started = time.monotonic()
        try:
            upstream = await ctx.run(self._client.send(request, stream=stream))
        except httpx.TimeoutException as e:
            log.warning("relay_upstream_timeout", url=route.url, mode=route.mode)
            raise RequestTimeoutError("Upstream did not answer in time.") from e
        except httpx.HTTPError as e:
            log.warning("relay_upstream_unreachable", url=route.url, mode=route.mode, error=type(e).__name__)
            raise UpstreamProtocolError(f"Upstream request failed ({type(e).__name__}).") from e
        finally:
            upstream_latency_seconds.labels(mode=route.mode).observe(max(0.0, time.monotonic() - started))

        if stream:
            return await self._stream_response(upstream, route, ctx)
        return self._buffered_response(upstream, route, preserve_content_type=preserve_content_type)

    async def _stream_response(
        self, upstream: httpx.Response, route: RouteDecision, ctx: CancellationContext
    ) -> Response:
        if not upstream.is_success:
            log.warning(
                "relay_non_success",
                status_code=upstream.status_code,
                reason=upstream.reason_phrase,
                mode=route.mode,
            )
            await upstream.aclose()
            return Response(status_code=upstream.status_code)

        relay_ctx = ctx.child()

        async def body() -> AsyncIterator[bytes]:
            try:
                async for chunk in relay_ctx.guard(upstream.aiter_bytes()):
                    yield chunk
            except RelayCancelledError as e:
                relay_cancellations_total.labels(reason=e.reason).inc()
                log.info("relay_cancelled", reason=e.reason, mode=route.mode)
            except asyncio.CancelledError:
                relay_cancellations_total.labels(reason=CancellationContext.DISCONNECT).inc()
                log.info("relay_cancelled", reason=CancellationContext.DISCONNECT, mode=route.mode)
                raise
            finally:
                await upstream.aclose()

        return StreamingResponse(
            body(),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/event-stream"),
            background=BackgroundTask(_force_abort, ctx),
        )

    def _buffered_response(
        self, upstream: httpx.Response, route: RouteDecision, *, preserve_content_type: bool
    ) -> Response:
        if not upstream.is_success:
            log.warning("relay_non_success", status_code=upstream.status_code, mode=route.mode)
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                media_type=upstream.headers.get("content-type"),
            )
        media_type = upstream.headers.get("content-type") if preserve_content_type else "application/json"
        return Response(content=upstream.content, status_code=upstream.status_code, media_type=media_type)
