"""Agent runtime and chat clients against in-process aiohttp servers."""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from threadlink.adapters.agent_client import AgentClient, sum_assistant_usage, text_part
from threadlink.adapters.chat_client import ChatClient
from threadlink.adapters.chat_websocket import parse_posted_event, reconnect_delay
from threadlink.adapters.event_bus import EventBus
from threadlink.adapters.events import SessionIdle
from threadlink.engine.config import AgentConfig, ChatConfig
from threadlink.engine.errors import AgentRuntimeError, ChatClientError
from threadlink.engine.models import ModelSelection


@asynccontextmanager
async def serve(app: web.Application):
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/")
    finally:
        await server.close()


def _runtime_app(received: list) -> web.Application:
    async def list_sessions(request):
        return web.json_response([
            {"id": "ses_a", "directory": "/work/api", "title": "API", "time": {"updated": 1767268800000}},
            {"id": "ses_b", "directory": "/work/web", "parentID": "ses_a"},
        ])

    async def create_session(request):
        received.append(("create", request.query.get("directory"), await request.json()))
        return web.json_response({"id": "ses_new", "directory": request.query.get("directory", "/")})

    async def prompt(request):
        received.append(("prompt", request.match_info["id"], await request.json()))
        return web.Response(status=204)

    async def messages(request):
        if request.match_info["id"] == "ses_missing":
            return web.Response(status=404, text="session not found")
        return web.json_response([
            {"info": {"role": "user"}},
            {"info": {"role": "assistant", "tokens": {"input": 10, "output": 2}, "cost": 0.01}},
            {"info": {"role": "assistant", "tokens": {"input": 5}, "cost": 0.02}},
        ])

    async def events(request):
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        payloads = [
            {"type": "server.connected", "properties": {}},
            {"type": "session.idle", "properties": {"sessionID": "ses_a"}},
        ]
        for payload in payloads:
            await resp.write(f"data: {json.dumps(payload)}\n\n".encode())
        await resp.write(b"data: not json\n\n")
        return resp

    app = web.Application()
    app.router.add_get("/session", list_sessions)
    app.router.add_post("/session", create_session)
    app.router.add_post("/session/{id}/prompt_async", prompt)
    app.router.add_get("/session/{id}/message", messages)
    app.router.add_get("/event", events)
    return app


@pytest.mark.asyncio
async def test_agent_client_sessions_and_prompts():
    received: list = []
    async with serve(_runtime_app(received)) as url:
        client = AgentClient(AgentConfig(base_url=url))
        await client.start()
        try:
            sessions = await client.list_sessions()
            assert [s.id for s in sessions] == ["ses_a", "ses_b"]
            assert sessions[1].parent_id == "ses_a"

            created = await client.create_session(directory="/work/new", title="t")
            assert created.id == "ses_new"

            await client.dispatch_prompt(
                "ses_a", [text_part("hi")], model=ModelSelection("anthropic", "claude-sonnet"),
            )
            usage = await client.prior_usage("ses_a")
            assert usage.input == 15
            assert usage.cost == pytest.approx(0.03)

            with pytest.raises(AgentRuntimeError) as exc_info:
                await client.prior_usage("ses_missing")
            assert exc_info.value.status == 404
        finally:
            await client.close()

    assert received[0] == ("create", "/work/new", {"title": "t"})
    assert received[1] == ("prompt", "ses_a", {
        "parts": [{"type": "text", "text": "hi"}],
        "model": {"providerID": "anthropic", "modelID": "claude-sonnet"},
    })


@pytest.mark.asyncio
async def test_agent_client_unreachable_runtime():
    client = AgentClient(AgentConfig(base_url="http://127.0.0.1:9", request_timeout_seconds=2))
    await client.start()
    try:
        with pytest.raises(AgentRuntimeError) as exc_info:
            await client.list_sessions()
        assert exc_info.value.status is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_event_stream_feeds_the_bus():
    bus = EventBus()
    async with serve(_runtime_app([])) as url:
        client = AgentClient(AgentConfig(base_url=url))
        await client.start()
        try:
            client.start_events(bus.publish_raw)
            events = []

            async def collect():
                async for event in bus.consume():
                    events.append(event)
                    return

            await asyncio.wait_for(collect(), timeout=5)
        finally:
            await client.close()
            bus.close()

    assert isinstance(events[0], SessionIdle)
    assert events[0].session_id == "ses_a"
    assert client.events_connected is False


def test_sum_assistant_usage_skips_other_roles():
    usage = sum_assistant_usage([
        {"role": "assistant", "tokens": {"output": 3}},
        {"info": {"role": "user", "tokens": {"output": 99}}},
    ])
    assert usage.output == 3


def _chat_app(seen: list) -> web.Application:
    async def me(request):
        seen.append(request.headers.get("Authorization"))
        return web.json_response({"id": "bot-id", "username": "threadlink"})

    async def create_post(request):
        body = await request.json()
        if body["message"] == "fail":
            return web.Response(status=503, text="maintenance")
        return web.json_response({"id": "post-1", **body})

    async def patch_post(request):
        body = await request.json()
        return web.json_response({"id": request.match_info["id"], "channel_id": "c", **body})

    async def direct(request):
        seen.append(await request.json())
        return web.json_response({"id": "dm-1", "type": "D"})

    app = web.Application()
    app.router.add_get("/api/v4/users/me", me)
    app.router.add_post("/api/v4/posts", create_post)
    app.router.add_put("/api/v4/posts/{id}/patch", patch_post)
    app.router.add_post("/api/v4/channels/direct", direct)
    return app


@pytest.mark.asyncio
async def test_chat_client_posts_and_errors():
    seen: list = []
    async with serve(_chat_app(seen)) as url:
        client = ChatClient(ChatConfig(url=url, token="tok"))
        await client.start()
        try:
            assert client.bot_user_id == "bot-id"
            post = await client.create_post("c", "hello", root_id="root-1")
            assert (post.id, post.root_id, post.message) == ("post-1", "root-1", "hello")

            updated = await client.update_post("post-1", "edited")
            assert updated.message == "edited"

            channel = await client.create_direct_channel("u1")
            assert channel.is_direct

            with pytest.raises(ChatClientError) as exc_info:
                await client.create_post("c", "fail")
            assert exc_info.value.status == 503
            assert exc_info.value.is_transient
        finally:
            await client.close()

    assert seen[0] == "Bearer tok"
    assert seen[1] == ["bot-id", "u1"]


def test_parse_posted_event():
    event = {
        "event": "posted",
        "data": {
            "channel_type": "D",
            "post": json.dumps({
                "id": "p1", "channel_id": "dm-1", "user_id": "u1",
                "message": "hi", "root_id": "root-1", "file_ids": ["f1"],
            }),
        },
    }
    message = parse_posted_event(event, "bot-id")
    assert message.thread_anchor_id == "root-1"
    assert message.attachment_ids == ["f1"]
    assert message.channel_type == "D"

    own = json.loads(event["data"]["post"])
    own["user_id"] = "bot-id"
    assert parse_posted_event({"event": "posted", "data": {"post": own}}, "bot-id") is None
    assert parse_posted_event({"event": "typing", "data": {}}, "bot-id") is None
    assert parse_posted_event({"event": "posted", "data": {"post": "{bad"}}, "bot-id") is None


def test_reconnect_delay_backs_off_to_cap():
    assert reconnect_delay(0, 60) == 5.0
    assert reconnect_delay(1, 60) == 7.5
    assert reconnect_delay(20, 60) == 60


@pytest.mark.asyncio
async def test_event_bus_drops_unknown_payloads():
    bus = EventBus()
    await bus.publish_raw({"type": "lsp.updated", "properties": {}})
    await bus.publish_raw({"type": "message.part.updated", "properties": {
        "part": {"sessionID": "s", "id": "p", "type": "text"}, "delta": "x",
    }})
    assert bus.pending == 1
    bus.close()
    await bus.publish_raw({"type": "session.idle", "properties": {"sessionID": "s"}})
    assert bus.pending == 1
    assert [e async for e in bus.consume()] == []
