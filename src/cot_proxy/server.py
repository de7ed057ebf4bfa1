from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .audit import AuditLog
from .augment import augment_messages
from .cancellation import CancellationContext
from .config import ProxyConfig
from .cot import ChainOfThoughtGenerator, ChatCompleter
from .cot_session import CoTSession
from .credential_store import apply_stored_credentials
from .errors import (
    ChainOfThoughtError,
    ConfigurationError,
    InvalidRequestError,
    ProxyError,
    RelayCancelledError,
    RequestTimeoutError,
    ThoughtLoggingDisabledError,
    ThoughtNotFoundError,
    UpstreamProtocolError,
)
from .http_pool import make_upstream_client
from .http_security import install_middlewares
from .liveness import is_alive
from .logging import configure_logging
from .metrics import maybe_start_metrics, relay_cancellations_total, server_errors_total, server_requests_total
from .openai_compat import ChatCompletionRequest, ExtensionSettings, ThoughtResponse, make_openai_error_response
from .relay import StreamRelay
from .routing import FallbackRouter
from .tracker import Tracker, TrackerSnapshotStore

log = structlog.get_logger()

# Non-standard status used when the caller went away before a response existed.
CLIENT_CLOSED_REQUEST = 499


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request."


def create_app(
    cfg: ProxyConfig | None = None,
    *,
    tracker: Tracker | None = None,
    cot_session: ChatCompleter | None = None,
    audit: AuditLog | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
):
    try:
        from fastapi import FastAPI
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = apply_stored_credentials(cfg or ProxyConfig())
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=cfg.secrets(),
        max_field_chars=cfg.log_max_field_chars,
    )

    client = make_upstream_client(cfg, transport=transport)
    if tracker is None:
        store = TrackerSnapshotStore(cfg.tracker_snapshot_dir) if cfg.tracker_snapshot_dir else None
        tracker = Tracker(store=store)
    if cot_session is None:
        cot_session = CoTSession(
            base_url=cfg.cot_base_url,
            api_key=cfg.cot_api_key,
            client=client,
            timeout_seconds=cfg.cot_timeout_seconds,
            max_attempts=cfg.upstream_max_attempts,
            backoff_initial_seconds=cfg.upstream_backoff_initial_seconds,
            backoff_max_seconds=cfg.upstream_backoff_max_seconds,
        )
    if audit is None and (cfg.log_cot or cfg.log_full):
        audit = AuditLog(cfg.database_url)

    generator = ChainOfThoughtGenerator(tracker, cot_session)
    router = FallbackRouter(tracker)
    relay = StreamRelay(client)

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _error(request, *, status_code: int, type: str, message: str):
        server_errors_total.labels(type=type).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_openai_error_response(message=message, type=type, code=_request_id(request)).model_dump(),
        )

    def _primary_alive():
        return is_alive(
            client,
            cfg.primary_endpoint,
            path=cfg.liveness_path,
            timeout_seconds=cfg.liveness_timeout_seconds,
        )

    def _watch(request: Request, ctx: CancellationContext) -> asyncio.Task:
        return asyncio.create_task(ctx.watch_disconnect(request.is_disconnected, interval=cfg.disconnect_poll_seconds))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        await tracker.restore()
        log.info(
            "proxy_started",
            primary_endpoint=cfg.primary_endpoint,
            use_fallback=cfg.use_fallback,
            fallback_handler=cfg.fallback_handler.value,
            fallback_models=cfg.fallback_models,
        )
        try:
            yield
        finally:
            await cot_session.close()
            await client.aclose()
            if audit is not None:
                await audit.close()

    app = FastAPI(
        title="cot-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        log.warning("completion_rejected", reason=str(exc))
        return _error(request, status_code=500, type="invalid_request_error", message=str(exc))

    @app.exception_handler(ChainOfThoughtError)
    async def _cot_error_handler(request, exc: ChainOfThoughtError):
        log.error("cot_generation_failed", reason=str(exc))
        return _error(request, status_code=500, type="api_error", message=str(exc))

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        log.error("configuration_error", reason=str(exc))
        return _error(request, status_code=500, type="api_error", message=str(exc))

    @app.exception_handler(UpstreamProtocolError)
    async def _upstream_error_handler(request, exc: UpstreamProtocolError):
        return _error(request, status_code=502, type="upstream_error", message=str(exc))

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(request, exc: RequestTimeoutError):
        return _error(request, status_code=504, type="upstream_error", message=str(exc) or "Request timed out.")

    @app.exception_handler(ThoughtLoggingDisabledError)
    async def _thought_disabled_handler(request, exc: ThoughtLoggingDisabledError):
        return _error(request, status_code=400, type="invalid_request_error", message=str(exc))

    @app.exception_handler(ThoughtNotFoundError)
    async def _thought_missing_handler(request, exc: ThoughtNotFoundError):
        return _error(request, status_code=404, type="invalid_request_error", message=str(exc))

    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request, exc: ProxyError):
        log.error("proxy_error", error=str(exc), error_type=type(exc).__name__)
        return _error(request, status_code=500, type="api_error", message=str(exc))

    async def _read_json(request: Request) -> dict[str, Any]:
        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidRequestError("Request body is not valid JSON.") from e
        if not isinstance(payload, dict):
            raise InvalidRequestError("Request body must be a JSON object.")
        return payload

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        payload = await _read_json(request)
        try:
            req = ChatCompletionRequest.model_validate(payload)
            overrides = (
                ExtensionSettings.model_validate(payload) if cfg.honor_extension_settings else ExtensionSettings()
            )
        except ValidationError as e:
            raise InvalidRequestError(_validation_summary(e)) from e

        user_message = req.last_user_message()
        if user_message is None:
            raise InvalidRequestError("No user message provided.")
        effective = overrides.apply(cfg)

        ctx = CancellationContext()
        watcher = _watch(request, ctx)
        probe = asyncio.create_task(_primary_alive())
        streaming = False
        try:
            try:
                cot = await ctx.run(
                    generator.resolve(req.messages, user_message.content, effective, force=overrides.force_cot)
                )
                alive = await ctx.run(probe)
            finally:
                probe.cancel()
            messages = augment_messages(req.messages, cot, prefill=effective.prefill, postfill=effective.postfill)
            if audit is not None:
                await ctx.run(
                    audit.record(
                        cot=cot if cfg.log_cot else None,
                        messages=messages if cfg.log_full else None,
                    )
                )

            route = await router.route_completion(
                alive=alive,
                cfg=effective,
                payload=payload,
                request=req,
                messages=messages,
                inbound_headers=request.headers,
                handler_override=overrides.fallback_handler,
            )
            log.info("completion_routed", mode=route.mode, url=route.url, model=route.model, stream=req.stream)
            response = await relay.send(route, stream=req.stream, ctx=ctx)
            streaming = req.stream and response.status_code < 400
        except RelayCancelledError as e:
            relay_cancellations_total.labels(reason=e.reason).inc()
            log.info("completion_cancelled", reason=e.reason)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        finally:
            # A streaming response keeps the watcher until its force abort fires.
            if not streaming:
                watcher.cancel()

        server_requests_total.labels(path="/v1/chat/completions", status=str(response.status_code)).inc()
        return response

    @app.get("/v1/thought", response_model=ThoughtResponse)
    async def last_thought():
        if not cfg.log_cot or audit is None:
            raise ThoughtLoggingDisabledError("Saving CoT is disabled in settings.")
        content = await audit.latest_thought()
        if content is None:
            raise ThoughtNotFoundError("No chain of thought has been saved yet.")
        return ThoughtResponse(content=content)

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def passthrough(path: str, request: Request):
        content = await request.body() if request.method == "POST" else None
        stream = False
        if content:
            try:
                body = json.loads(content)
            except ValueError:
                body = None
            stream = isinstance(body, dict) and body.get("stream") is True

        ctx = CancellationContext()
        watcher = _watch(request, ctx)
        streaming = False
        try:
            alive = await ctx.run(_primary_alive())
            route = router.route_passthrough(
                alive=alive,
                cfg=cfg,
                method=request.method,
                path=path,
                query=request.url.query,
                inbound_headers=request.headers,
                content=content,
            )
            log.info("passthrough_routed", method=request.method, path=path, mode=route.mode, stream=stream)
            response = await relay.send(route, stream=stream, ctx=ctx, preserve_content_type=True)
            streaming = stream and response.status_code < 400
        except RelayCancelledError as e:
            relay_cancellations_total.labels(reason=e.reason).inc()
            log.info("passthrough_cancelled", reason=e.reason)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        finally:
            if not streaming:
                watcher.cancel()
        server_requests_total.labels(path="passthrough", status=str(response.status_code)).inc()
        return response

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("cot_proxy.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
