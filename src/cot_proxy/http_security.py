from __future__ import annotations

import re
import uuid
from collections.abc import Mapping

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .config import ProxyConfig
from .openai_compat import make_openai_error_response

REQUEST_ID_HEADER = "X-Request-Id"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.strip().lower() != "bearer" or not token:
        return None
    return token


def forward_headers(inbound: Mapping[str, str]) -> dict[str, str]:
    """Headers copied from the caller to the primary backend: credentials only."""
    out: dict[str, str] = {}
    authorization = inbound.get("authorization")
    if authorization:
        token = parse_bearer_token(authorization)
        out["Authorization"] = f"Bearer {token}" if token else authorization
    api_key = inbound.get("x-api-key")
    if api_key:
        out["x-api-key"] = api_key
    return out


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = coerce_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "path")
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
    }

    def __init__(self, app, *, no_store_prefix: str = "/v1/"):
        super().__init__(app)
        self.no_store_prefix = no_store_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        # Completions and thoughts are per-conversation.
        if request.url.path.startswith(self.no_store_prefix):
            response.headers.setdefault("Cache-Control", "no-store")
        return response


class MaxBodySizeMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, limit: int):
        super().__init__(app)
        self.limit = limit

    async def _too_large(self, request: Request) -> bool:
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.limit:
            return True
        return len(await request.body()) > self.limit

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.limit > 0 and request.method in _BODY_METHODS and await self._too_large(request):
            structlog.get_logger().warning("request_body_too_large", limit=self.limit)
            return JSONResponse(
                status_code=413,
                content=make_openai_error_response(
                    message="Request body too large.",
                    type="invalid_request_error",
                    code=getattr(request.state, "request_id", None),
                ).model_dump(),
            )
        return await call_next(request)


def install_middlewares(app, *, cfg: ProxyConfig) -> None:
    """Install request id, security headers and body limit, plus the optional host and CORS allowlists."""
    app.add_middleware(MaxBodySizeMiddleware, limit=cfg.max_request_body_bytes)
    app.add_middleware(SecurityHeadersMiddleware)
    # Added last of the three so it wraps them and short-circuited responses still get an id.
    app.add_middleware(RequestIdMiddleware)

    if cfg.allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=cfg.allowed_hosts)

    if cfg.cors_allow_origins:
        if cfg.cors_allow_credentials and "*" in cfg.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_allow_origins,
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER, "X-API-Key"],
            max_age=600,
        )
