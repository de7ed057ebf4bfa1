import asyncio
import json

import httpx
import pytest

from cot_proxy.config import ProxyConfig
from cot_proxy.handlers import Handler
from cot_proxy.tracker import Tracker, TrackerState

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello, Sam."}, "finish_reason": "stop"}],
}
SSE = b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\ndata: [DONE]\n\n'


class FakeBackends:
    """Primary backend, auxiliary model, and fallback providers behind one mock transport."""

    def __init__(self, *, alive=True, cot="She is wary.", cot_status=200, status=200, completion=None, stream_body=None):
        self.alive = alive
        self.cot = cot
        self.cot_status = cot_status
        self.status = status
        self.completion = completion if completion is not None else COMPLETION
        self.stream_body = stream_body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "primary.test" and request.url.path == "/health":
            if not self.alive:
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, json={"status": "ok"})
        if request.url.host == "cot.test":
            if self.cot_status != 200:
                return httpx.Response(self.cot_status, json={"error": {"message": "denied"}})
            return httpx.Response(
                200,
                json={"choices": [{"message": {"role": "assistant", "content": self.cot}, "finish_reason": "stop"}]},
            )
        if self.stream_body is not None:
            return httpx.Response(self.status, content=self.stream_body, headers={"content-type": "text/event-stream"})
        return httpx.Response(self.status, json=self.completion)

    def calls(self, host, path=None):
        return [r for r in self.requests if r.url.host == host and (path is None or r.url.path == path)]

    def bodies(self, host, path=None):
        return [json.loads(r.content) for r in self.calls(host, path)]


def _cfg(**kwargs) -> ProxyConfig:
    base = {
        "primary_endpoint": "http://primary.test",
        "cot_base_url": "http://cot.test/v1",
        "cot_api_key": "ck",
        "cot_model": "cot-model",
        "cot_prompt": "Think as {character} for {username}.",
        "character": "Aria",
        "username": "Sam",
        "cot_rotation": 0,
        "prefill": "[Continue.]",
        "postfill": "[Reply.]",
        "enable_metrics": False,
        "log_cot": False,
        "log_full": False,
        "credentials_path": None,
        "tracker_snapshot_dir": None,
        "upstream_max_attempts": 1,
    }
    base.update(kwargs)
    return ProxyConfig(**base)


def _client(backends: FakeBackends, cfg: ProxyConfig | None = None, **kwargs) -> httpx.AsyncClient:
    from cot_proxy.server import create_app

    app = create_app(cfg=cfg or _cfg(), transport=httpx.MockTransport(backends), **kwargs)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _chat(content="Hi", **extra):
    return {"model": "local", "messages": [{"role": "user", "content": content}], **extra}


@pytest.mark.asyncio
async def test_completion_injects_cot_and_forwards_to_primary():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 200
    assert resp.json() == COMPLETION

    cot_calls = backends.calls("cot.test", "/v1/chat/completions")
    assert len(cot_calls) == 1
    assert cot_calls[0].headers["authorization"] == "Bearer ck"
    cot_body = json.loads(cot_calls[0].content)
    assert cot_body["model"] == "cot-model"
    assert cot_body["messages"][-1] == {"role": "user", "content": "Think as Aria for Sam."}

    [forwarded] = backends.bodies("primary.test", "/v1/chat/completions")
    assert forwarded["model"] == "local"
    assert forwarded["messages"] == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "<chain_of_thought>She is wary.</chain_of_thought>"},
        {"role": "user", "content": "[Reply.]"},
    ]


@pytest.mark.asyncio
async def test_repeated_message_reuses_cached_cot():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        first = await client.post("/v1/chat/completions", json=_chat())
        second = await client.post("/v1/chat/completions", json=_chat())

    assert first.status_code == second.status_code == 200
    assert len(backends.calls("cot.test")) == 1
    a, b = backends.bodies("primary.test", "/v1/chat/completions")
    assert a["messages"][-2] == b["messages"][-2]


@pytest.mark.asyncio
async def test_force_cot_regenerates_for_same_message():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        await client.post("/v1/chat/completions", json=_chat())
        await client.post("/v1/chat/completions", json=_chat(force_cot=True))

    assert len(backends.calls("cot.test")) == 2


@pytest.mark.asyncio
async def test_inline_settings_change_cot_prompt():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(character="Lia", username="Max"))

    assert resp.status_code == 200
    [cot_body] = backends.bodies("cot.test")
    assert cot_body["messages"][-1]["content"] == "Think as Lia for Max."


@pytest.mark.asyncio
async def test_inline_settings_ignored_when_disabled():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends, _cfg(honor_extension_settings=False)) as client:
        await client.post("/v1/chat/completions", json=_chat(character="Lia"))

    [cot_body] = backends.bodies("cot.test")
    assert cot_body["messages"][-1]["content"] == "Think as Aria for Sam."


@pytest.mark.asyncio
async def test_only_credentials_are_forwarded_to_primary():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        await client.post(
            "/v1/chat/completions",
            json=_chat(),
            headers={"Authorization": "Bearer caller-key", "X-Api-Key": "k2", "X-Other": "nope"},
        )

    [forwarded] = backends.calls("primary.test", "/v1/chat/completions")
    assert forwarded.headers["authorization"] == "Bearer caller-key"
    assert forwarded.headers["x-api-key"] == "k2"
    assert "x-other" not in forwarded.headers


@pytest.mark.asyncio
async def test_dead_primary_routes_to_fallback_model_at_round():
    pytest.importorskip("fastapi")
    backends = FakeBackends(alive=False)
    tracker = Tracker(TrackerState(response_round=1))
    cfg = _cfg(
        use_fallback=True,
        fallback_handler=Handler.OPENROUTER,
        fallback_models=["m1", "m2"],
        openrouter_base_url="http://openrouter.test/api/v1",
        openrouter_api_key="or-key",
    )
    async with _client(backends, cfg, tracker=tracker) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(stream=False))

    assert resp.status_code == 200
    assert backends.calls("primary.test", "/v1/chat/completions") == []
    [call] = backends.calls("openrouter.test", "/api/v1/chat/completions")
    assert call.headers["authorization"] == "Bearer or-key"
    body = json.loads(call.content)
    assert body["model"] == "m2"
    assert body["min_p"] == 0.05
    assert body["stream"] is False
    assert body["messages"][-1] == {"role": "user", "content": "[Reply.]"}
    assert tracker.snapshot().response_round == 0


@pytest.mark.asyncio
async def test_dead_primary_without_fallback_still_uses_primary():
    pytest.importorskip("fastapi")
    backends = FakeBackends(alive=False)
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 200
    assert len(backends.calls("primary.test", "/v1/chat/completions")) == 1


@pytest.mark.asyncio
async def test_empty_cot_fails_without_proxying():
    pytest.importorskip("fastapi")
    backends = FakeBackends(cot="  ")
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "api_error"
    assert backends.calls("primary.test", "/v1/chat/completions") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        b"{not json",
        b"[]",
        json.dumps({"model": "m", "messages": []}).encode(),
        json.dumps({"model": "m", "messages": [{"role": "system", "content": "rules"}]}).encode(),
        json.dumps({"model": "m", "messages": [{"role": "narrator", "content": "x"}]}).encode(),
    ],
)
async def test_unusable_request_is_a_server_error_without_backend_calls(content):
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", content=content, headers={"Content-Type": "application/json"})

    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "invalid_request_error"
    assert backends.requests == []


@pytest.mark.asyncio
async def test_unknown_inline_handler_fails_when_routed_to_fallback():
    pytest.importorskip("fastapi")
    backends = FakeBackends(alive=False)
    tracker = Tracker()
    cfg = _cfg(use_fallback=True, fallback_models=["m1"], mistral_base_url="http://mistral.test/v1")
    async with _client(backends, cfg, tracker=tracker) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(fallback_handler="koboldcpp"))

    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "api_error"
    assert backends.calls("mistral.test") == []
    assert tracker.snapshot().response_round == 0


@pytest.mark.asyncio
async def test_unknown_inline_handler_is_ignored_while_primary_is_alive():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    cfg = _cfg(use_fallback=True, fallback_models=["m1"])
    async with _client(backends, cfg) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(fallback_handler="koboldcpp"))

    assert resp.status_code == 200
    assert len(backends.calls("primary.test", "/v1/chat/completions")) == 1


@pytest.mark.asyncio
async def test_inline_handler_selects_fallback_provider():
    pytest.importorskip("fastapi")
    backends = FakeBackends(alive=False)
    cfg = _cfg(
        use_fallback=True,
        fallback_models=["m1"],
        openrouter_base_url="http://openrouter.test/api/v1",
        openrouter_api_key="or-key",
    )
    async with _client(backends, cfg) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(fallback_handler="OpenRouter"))

    assert resp.status_code == 200
    assert len(backends.calls("openrouter.test", "/api/v1/chat/completions")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("cot_status", [401, 403, 429])
async def test_cot_model_refusal_is_a_server_error_not_a_caller_error(cot_status):
    pytest.importorskip("fastapi")
    backends = FakeBackends(cot_status=cot_status)
    async with _client(backends) as client:
        resp = await client.post(
            "/v1/chat/completions", json=_chat(), headers={"Authorization": "Bearer caller-ok"}
        )

    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "api_error"
    assert "retry-after" not in resp.headers
    assert backends.calls("primary.test", "/v1/chat/completions") == []


@pytest.mark.asyncio
async def test_failed_cot_cancels_pending_liveness_check():
    pytest.importorskip("fastapi")
    probe_cancelled = asyncio.Event()

    class SlowHealth(FakeBackends):
        async def __call__(self, request):
            if request.url.host == "primary.test" and request.url.path == "/health":
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    probe_cancelled.set()
                    raise
            return FakeBackends.__call__(self, request)

    async with _client(SlowHealth(cot=" ")) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 500
    await asyncio.wait_for(probe_cancelled.wait(), timeout=2)


@pytest.mark.asyncio
async def test_resent_message_inside_rotation_window_reuses_cot():
    pytest.importorskip("fastapi")
    backends = FakeBackends()
    async with _client(backends, _cfg(cot_rotation=2)) as client:
        for content in ("a", "b", "b"):
            resp = await client.post("/v1/chat/completions", json=_chat(content))
            assert resp.status_code == 200

    assert len(backends.calls("cot.test")) == 1


@pytest.mark.asyncio
async def test_streaming_completion_is_relayed_verbatim():
    pytest.importorskip("fastapi")
    backends = FakeBackends(stream_body=SSE)
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.content == SSE
    [forwarded] = backends.bodies("primary.test", "/v1/chat/completions")
    assert forwarded["stream"] is True


@pytest.mark.asyncio
async def test_streaming_error_status_is_relayed_with_empty_body():
    pytest.importorskip("fastapi")
    backends = FakeBackends(status=503, stream_body=b"overloaded")
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat(stream=True))

    assert resp.status_code == 503
    assert resp.content == b""


@pytest.mark.asyncio
async def test_buffered_error_status_is_relayed_with_body():
    pytest.importorskip("fastapi")
    backends = FakeBackends(status=400, completion={"error": {"message": "context too long"}})
    async with _client(backends) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 400
    assert resp.json() == {"error": {"message": "context too long"}}


@pytest.mark.asyncio
async def test_unreachable_primary_completion_is_bad_gateway():
    pytest.importorskip("fastapi")

    class Flaky(FakeBackends):
        def __call__(self, request):
            if request.url.host == "primary.test" and request.url.path == "/v1/chat/completions":
                self.requests.append(request)
                raise httpx.ConnectError("reset", request=request)
            return super().__call__(request)

    async with _client(Flaky()) as client:
        resp = await client.post("/v1/chat/completions", json=_chat())

    assert resp.status_code == 502
    assert resp.json()["error"]["type"] == "upstream_error"


@pytest.mark.asyncio
async def test_thought_endpoint_disabled_by_default():
    pytest.importorskip("fastapi")
    async with _client(FakeBackends()) as client:
        resp = await client.get("/v1/thought")

    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Saving CoT is disabled in settings."


@pytest.mark.asyncio
async def test_thought_endpoint_returns_last_saved_cot(tmp_path):
    pytest.importorskip("fastapi")
    cfg = _cfg(log_cot=True, log_full=True, database_url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with _client(FakeBackends(), cfg) as client:
        empty = await client.get("/v1/thought")
        await client.post("/v1/chat/completions", json=_chat())
        resp = await client.get("/v1/thought")

    assert empty.status_code == 404
    assert resp.status_code == 200
    assert resp.json() == {"content": "<chain_of_thought>She is wary.</chain_of_thought>"}


@pytest.mark.asyncio
async def test_tracker_snapshot_is_written(tmp_path):
    pytest.importorskip("fastapi")
    async with _client(FakeBackends(), _cfg(tracker_snapshot_dir=str(tmp_path))) as client:
        await client.post("/v1/chat/completions", json=_chat())

    assert (tmp_path / "last_user_message.txt").read_text(encoding="utf-8") == "Hi"
    assert (tmp_path / "last_cot_message.txt").read_text(encoding="utf-8") == (
        "<chain_of_thought>She is wary.</chain_of_thought>"
    )
