import json

import httpx
import pytest

from chat_relay.errors import UpstreamConnectError, UpstreamStreamError
from chat_relay.main import create_app
from chat_relay.routers.chat import ChatRequest, stream_chat
from chat_relay.services.observability import RELAY_TURN_METRIC, get_metric_snapshot

from fixtures.fake_upstream import sse_frames

HEADERS = {"X-User-Id": "user-1"}

TOKENS = ["The ", "Riddler ", "is ", "Edward ", "Nygma."]


def _events(body: str):
    return [frame[len("data: "):] for frame in body.split("\n\n") if frame.startswith("data: ")]


@pytest.fixture
def app(settings, store, upstream):
    return create_app(settings, store=store, upstream=upstream)


@pytest.fixture
def runtime(app):
    return app.state.runtime


@pytest.mark.asyncio
async def test_streams_sse_and_persists_turns(app, runtime, store, upstream):
    conv = await store.create_conversation("user-1")
    upstream.queue_tokens("Hello", ", ", "Bruce")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _events(response.text)
    assert [json.loads(e)["token"] for e in events[:-1]] == ["Hello", ", ", "Bruce"]
    assert events[-1] == "[DONE]"

    await runtime.tasks.wait_all(timeout=5)
    await runtime.title_worker.join()

    turns = await store.list_ordered(conv.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Hi"), ("assistant", "Hello, Bruce")]
    assert (await store.get_conversation(conv.id, "user-1")).title == "Generated Title"
    await runtime.title_worker.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"message": ""}, {"message": "   "}, {}])
async def test_empty_message_is_400(app, store, upstream, body):
    conv = await store.create_conversation("user-1")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json=body, headers=HEADERS)

    assert response.status_code == 400
    assert response.json() == {"message": "Message is required"}
    assert await store.list_ordered(conv.id) == []
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_missing_user_header_is_401(app, store):
    conv = await store.create_conversation("user-1")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"})

    assert response.status_code == 401
    assert response.json() == {"message": "Not authenticated"}


@pytest.mark.asyncio
async def test_other_users_conversation_is_404(app, store):
    conv = await store.create_conversation("user-2")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)

    assert response.status_code == 404
    assert response.json() == {"message": "Conversation not found"}


@pytest.mark.asyncio
async def test_upstream_unavailable_is_500_json(app, store, upstream):
    conv = await store.create_conversation("user-1")
    upstream.open_error = UpstreamConnectError(upstream_status=503)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)

    assert response.status_code == 500
    assert response.json() == {"message": "Internal server error"}
    turns = await store.list_ordered(conv.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Hi")]


@pytest.mark.asyncio
async def test_mid_stream_failure_ends_with_error_event(app, runtime, store, upstream):
    conv = await store.create_conversation("user-1")
    upstream.queue_stream([sse_frames("partial", done=False)], fail_with=UpstreamStreamError(detail="reset"))

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)

    assert response.status_code == 200
    assert _events(response.text) == ['{"token": "partial"}', '{"error": "Stream error"}']

    await runtime.tasks.wait_all(timeout=5)
    turns = await store.list_ordered(conv.id)
    assert [t.role for t in turns] == ["user"]


@pytest.mark.asyncio
async def test_failure_before_first_token_is_500_json(app, runtime, store, upstream):
    conv = await store.create_conversation("user-1")
    stream = upstream.queue_stream([], fail_with=UpstreamStreamError(detail="reset"))

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"message": "Stream error"}
    assert stream.closed

    await runtime.tasks.wait_all(timeout=5)
    turns = await store.list_ordered(conv.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Hi")]


@pytest.mark.asyncio
async def test_relay_runs_even_if_body_is_never_read(runtime, store, upstream):
    conv = await store.create_conversation("user-1", title="Named")
    stream = upstream.queue_stream([sse_frames(*TOKENS)])

    response = await stream_chat(conv.id, ChatRequest(message="Hi"), owner_id="user-1", runtime=runtime)
    await runtime.tasks.wait_all(timeout=5)

    assert response.media_type == "text/event-stream"
    assert stream.closed
    turns = await store.list_ordered(conv.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Hi"), ("assistant", "".join(TOKENS))]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "policy, persisted",
    [("drain", "".join(TOKENS)), ("abort", "".join(TOKENS[:3]))],
)
async def test_client_disconnect_mid_stream(runtime, settings, store, upstream, policy, persisted):
    settings.disconnect_policy = policy
    conv = await store.create_conversation("user-1", title="Named")
    chunks = [sse_frames(t, done=False) for t in TOKENS] + [b"data: [DONE]\n\n"]
    stream = upstream.queue_stream(chunks, delay=0.05)

    response = await stream_chat(conv.id, ChatRequest(message="Hi"), owner_id="user-1", runtime=runtime)
    body = response.body_iterator
    received = [await body.__anext__(), await body.__anext__()]
    # Client hangs up; the server cancels the response body
    await body.aclose()
    await runtime.tasks.wait_all(timeout=5)

    assert [json.loads(e)["token"] for e in _events("".join(received))] == TOKENS[:2]
    assert stream.closed
    turns = await store.list_ordered(conv.id)
    assert [(t.role, t.content) for t in turns] == [("user", "Hi"), ("assistant", persisted)]
    metric = get_metric_snapshot()[RELAY_TURN_METRIC]
    assert metric["client_disconnects"] == 1
    assert metric["upstream_aborts"] == (1 if policy == "abort" else 0)


@pytest.mark.asyncio
async def test_ping_health_and_metrics(app, runtime, store, upstream):
    conv = await store.create_conversation("user-1", title="Named")
    upstream.queue_tokens("ok")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.get("/api/ping")).json() == {"message": "pong"}
        assert (await client.get("/health/live")).json() == {"status": "alive"}
        health = (await client.get("/health")).json()
        await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)
        await runtime.tasks.wait_all(timeout=5)
        metrics = (await client.get("/internal/metrics")).json()
        audit = (await client.get("/internal/audit")).json()

    assert health["status"] == "ok"
    assert health["service"] == "chat-relay"
    assert metrics["metrics"]["relay.turn"]["count"] == 1.0
    assert audit == {"events": []}


@pytest.mark.asyncio
async def test_response_time_header(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/ping")
    assert response.headers["x-response-time"].endswith("ms")


@pytest.mark.asyncio
async def test_lifespan_with_sql_store(settings, upstream, tmp_path):
    settings.database_url = f"sqlite:///{tmp_path / 'relay.db'}"
    app = create_app(settings, upstream=upstream)
    runtime = app.state.runtime

    async with app.router.lifespan_context(app):
        conv = await runtime.store.create_conversation("user-1")
        upstream.queue_tokens("stored ", "reply")
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(f"/api/chat/{conv.id}", json={"message": "Hi"}, headers=HEADERS)
        await runtime.tasks.wait_all(timeout=5)
        await runtime.title_worker.join()
        turns = await runtime.store.list_ordered(conv.id)
        titled = await runtime.store.get_conversation(conv.id, "user-1")

    assert response.status_code == 200
    assert [(t.role, t.content) for t in turns] == [("user", "Hi"), ("assistant", "stored reply")]
    assert titled.title == "Generated Title"
    assert not runtime.title_worker.running
    assert not upstream.closed
