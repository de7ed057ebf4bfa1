import json

import httpx
import pytest

from cot_proxy.config import ProxyConfig
from cot_proxy.handlers import Handler

MODELS = {"object": "list", "data": [{"id": "local", "object": "model"}]}


class Upstreams:
    def __init__(self, *, alive=True):
        self.alive = alive
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            if not self.alive:
                return httpx.Response(503)
            return httpx.Response(200)
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json=MODELS)
        if request.url.path.endswith("/completions"):
            return httpx.Response(200, content=b"data: {}\n\ndata: [DONE]\n\n", headers={"content-type": "text/event-stream"})
        return httpx.Response(404, text="not found", headers={"content-type": "text/plain"})

    def forwarded(self):
        return [r for r in self.requests if r.url.path != "/health"]


def _cfg(**kwargs) -> ProxyConfig:
    base = {
        "primary_endpoint": "http://primary.test",
        "mistral_base_url": "http://mistral.test/v1",
        "mistral_api_key": "mk",
        "enable_metrics": False,
        "credentials_path": None,
    }
    base.update(kwargs)
    return ProxyConfig(**base)


def _client(upstreams: Upstreams, cfg: ProxyConfig) -> httpx.AsyncClient:
    from cot_proxy.server import create_app

    app = create_app(cfg=cfg, transport=httpx.MockTransport(upstreams))
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_get_is_forwarded_to_live_primary_with_query():
    pytest.importorskip("fastapi")
    upstreams = Upstreams()
    async with _client(upstreams, _cfg()) as client:
        resp = await client.get("/v1/models?limit=5", headers={"Authorization": "Bearer caller"})

    assert resp.status_code == 200
    assert resp.json() == MODELS
    [forwarded] = upstreams.forwarded()
    assert str(forwarded.url) == "http://primary.test/v1/models?limit=5"
    assert forwarded.headers["authorization"] == "Bearer caller"


@pytest.mark.asyncio
async def test_get_goes_to_fallback_provider_when_primary_is_down():
    pytest.importorskip("fastapi")
    upstreams = Upstreams(alive=False)
    cfg = _cfg(use_fallback=True, fallback_handler=Handler.MISTRALAI, fallback_models=["m1"])
    async with _client(upstreams, cfg) as client:
        resp = await client.get("/v1/models", headers={"Authorization": "Bearer caller"})

    assert resp.status_code == 200
    [forwarded] = upstreams.forwarded()
    assert str(forwarded.url) == "http://mistral.test/v1/models"
    assert forwarded.headers["authorization"] == "Bearer mk"


@pytest.mark.asyncio
async def test_streaming_post_is_relayed():
    pytest.importorskip("fastapi")
    upstreams = Upstreams()
    async with _client(upstreams, _cfg()) as client:
        resp = await client.post("/v1/completions", json={"model": "local", "prompt": "Hi", "stream": True})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.content == b"data: {}\n\ndata: [DONE]\n\n"
    [forwarded] = upstreams.forwarded()
    assert forwarded.method == "POST"
    assert json.loads(forwarded.content) == {"model": "local", "prompt": "Hi", "stream": True}


@pytest.mark.asyncio
async def test_upstream_status_and_content_type_are_kept():
    pytest.importorskip("fastapi")
    async with _client(Upstreams(), _cfg()) as client:
        resp = await client.get("/v1/unknown")

    assert resp.status_code == 404
    assert resp.text == "not found"
    assert resp.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_disconnected_caller_cancels_passthrough(monkeypatch):
    pytest.importorskip("fastapi")
    from starlette.requests import Request

    async def gone(self) -> bool:
        return True

    monkeypatch.setattr(Request, "is_disconnected", gone)
    upstreams = Upstreams()
    async with _client(upstreams, _cfg(disconnect_poll_seconds=0.01)) as client:
        resp = await client.get("/v1/models")

    assert resp.status_code == 499
    assert upstreams.forwarded() == []
