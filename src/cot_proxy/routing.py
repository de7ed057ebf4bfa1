from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlsplit

import structlog

from .config import ProxyConfig
from .errors import UnsupportedProviderError
from .handlers import Handler, parse_handler
from .http_security import forward_headers
from .metrics import routing_decisions_total
from .openai_compat import ChatCompletionRequest, Message, messages_to_payload, request_shape_for
from .tracker import Tracker

log = structlog.get_logger()

PRIMARY_COMPLETIONS_PATH = "/v1/chat/completions"
PROVIDER_COMPLETIONS_PATH = "/chat/completions"


def join_url(base: str, path: str, query: str = "") -> str:
    base = base.rstrip("/")
    path = path.lstrip("/")
    # Provider bases already end in the API version (".../v1").
    if urlsplit(base).path.endswith("/v1") and (path == "v1" or path.startswith("v1/")):
        path = path[len("v1") :].lstrip("/")
    url = f"{base}/{path}" if path else base
    return f"{url}?{query}" if query else url


@dataclass(frozen=True)
class RouteDecision:
    mode: Literal["primary", "fallback"]
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    handler: Handler | None = None
    model: str | None = None
    json_body: dict[str, Any] | None = None
    content: bytes | None = None


def _provider_headers(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


class FallbackRouter:
    """
    Chooses between the primary backend and a fallback provider.

    Primary mode keeps the caller's payload shape and credentials. Fallback mode
    rotates through the configured models and reshapes the body for the provider.
    """

    def __init__(self, tracker: Tracker):
        self.tracker = tracker

    @staticmethod
    def use_primary(*, alive: bool, cfg: ProxyConfig) -> bool:
        return alive or not cfg.use_fallback

    async def route_completion(
        self,
        *,
        alive: bool,
        cfg: ProxyConfig,
        payload: Mapping[str, Any],
        request: ChatCompletionRequest,
        messages: list[Message],
        inbound_headers: Mapping[str, str],
        handler_override: str | None = None,
    ) -> RouteDecision:
        if self.use_primary(alive=alive, cfg=cfg):
            body = dict(payload)
            body["messages"] = messages_to_payload(messages)
            routing_decisions_total.labels(mode="primary", handler="primary").inc()
            return RouteDecision(
                mode="primary",
                url=join_url(cfg.primary_endpoint, PRIMARY_COMPLETIONS_PATH),
                headers=forward_headers(inbound_headers),
                model=request.model,
                json_body=body,
            )

        handler = parse_handler(handler_override) if handler_override else cfg.fallback_handler
        shape = request_shape_for(handler)
        if shape is None:
            raise UnsupportedProviderError(f"Fallback handler {handler.value!r} is not implemented.")
        endpoint = cfg.endpoint_for(handler)
        model = await self.tracker.next_fallback_model(cfg.fallback_models)

        provider_request = shape(model=model, messages=messages, stream=request.stream, **request.sampling_params())
        routing_decisions_total.labels(mode="fallback", handler=handler.value).inc()
        log.info("completion_fallback", handler=handler.value, model=model)
        return RouteDecision(
            mode="fallback",
            url=join_url(endpoint.base_url, PROVIDER_COMPLETIONS_PATH),
            headers=_provider_headers(endpoint.api_key),
            handler=handler,
            model=model,
            json_body=provider_request.to_payload(),
        )

    def route_passthrough(
        self,
        *,
        alive: bool,
        cfg: ProxyConfig,
        method: str,
        path: str,
        query: str,
        inbound_headers: Mapping[str, str],
        content: bytes | None,
    ) -> RouteDecision:
        headers: dict[str, str]
        if self.use_primary(alive=alive, cfg=cfg):
            mode: Literal["primary", "fallback"] = "primary"
            handler = None
            url = join_url(cfg.primary_endpoint, path, query)
            headers = forward_headers(inbound_headers)
        else:
            mode = "fallback"
            handler = cfg.fallback_handler
            endpoint = cfg.endpoint_for(handler)
            url = join_url(endpoint.base_url, path, query)
            headers = _provider_headers(endpoint.api_key)
        if content:
            headers["Content-Type"] = inbound_headers.get("content-type", "application/json")
        routing_decisions_total.labels(mode=f"passthrough_{mode}", handler=handler.value if handler else "primary").inc()
        return RouteDecision(mode=mode, url=url, headers=headers, method=method, handler=handler, content=content)
