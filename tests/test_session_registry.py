from __future__ import annotations

import pytest

from conftest import FakeAgent, runtime_session
from threadlink.engine.session_registry import SessionRegistry


def _registry(agent: FakeAgent, **kw) -> SessionRegistry:
    return SessionRegistry(agent, **kw)


@pytest.mark.asyncio
async def test_refresh_discovers_sessions_and_skips_children():
    agent = FakeAgent([
        runtime_session("ses_alpha1234", "/work/api", minutes_ago=5),
        runtime_session("ses_beta5678", "/work/web", minutes_ago=1),
        runtime_session("ses_child999", "/work/web", parent_id="ses_beta5678"),
    ])
    registry = _registry(agent)
    appeared = []
    registry.on_new_session(lambda s: appeared.append(s.id))

    assert await registry.refresh()
    assert registry.count() == 2
    assert sorted(appeared) == ["ses_alpha1234", "ses_beta5678"]
    # most recently updated session becomes the default
    assert registry.get_default().id == "ses_beta5678"
    assert registry.last_refresh_ok is True


@pytest.mark.asyncio
async def test_refresh_failure_leaves_state_untouched():
    agent = FakeAgent([runtime_session("ses_alpha1234")])
    registry = _registry(agent)
    await registry.refresh()

    agent.fail_list = True
    assert await registry.refresh() is False
    assert registry.is_available("ses_alpha1234")
    assert registry.last_refresh_ok is False


@pytest.mark.asyncio
async def test_vanished_session_fires_gone_and_returning_fires_new():
    agent = FakeAgent([runtime_session("ses_alpha1234")])
    registry = _registry(agent)
    events = []
    registry.on_new_session(lambda s: events.append(("new", s.id)))
    registry.on_session_gone(lambda s: events.append(("gone", s.id)))

    await registry.refresh()
    agent.sessions = []
    await registry.refresh()
    assert not registry.is_available("ses_alpha1234")
    assert registry.get_default() is None

    agent.sessions = [runtime_session("ses_alpha1234")]
    await registry.refresh()
    assert events == [("new", "ses_alpha1234"), ("gone", "ses_alpha1234"), ("new", "ses_alpha1234")]


@pytest.mark.asyncio
async def test_unavailable_sessions_pruned_after_grace():
    agent = FakeAgent([runtime_session("ses_alpha1234")])
    registry = _registry(agent, unavailable_grace_seconds=0)
    await registry.refresh()
    agent.sessions = []
    await registry.refresh()
    assert registry.count() == 1
    await registry.refresh()
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_observer_failure_does_not_stop_others():
    agent = FakeAgent([runtime_session("ses_alpha1234")])
    registry = _registry(agent)
    seen = []

    async def broken(session):
        raise RuntimeError("observer blew up")

    registry.on_new_session(broken)
    registry.on_new_session(lambda s: seen.append(s.id))
    await registry.refresh()
    assert seen == ["ses_alpha1234"]


@pytest.mark.asyncio
async def test_get_resolves_id_prefix_and_project():
    agent = FakeAgent([
        runtime_session("ses_alpha1234", "/work/api-server", minutes_ago=10),
        runtime_session("ses_beta5678", "/work/web-client", minutes_ago=1),
        runtime_session("ses_gamma999", "/work/api-gateway", minutes_ago=2, slug="brave-otter"),
    ])
    registry = _registry(agent)
    await registry.refresh()

    assert registry.get("ses_beta5678").id == "ses_beta5678"
    assert registry.get("SES_ALPHA").id == "ses_alpha1234"
    assert registry.get("brave-otter").id == "ses_gamma999"
    # two sessions match "api"; the more recently updated wins
    assert registry.get("api").id == "ses_gamma999"
    assert registry.get("") is None
    assert registry.get("nothing-like-this") is None


@pytest.mark.asyncio
async def test_pinned_default_survives_refresh_while_available():
    agent = FakeAgent([
        runtime_session("ses_alpha1234", minutes_ago=10),
        runtime_session("ses_beta5678", minutes_ago=1),
    ])
    registry = _registry(agent)
    await registry.refresh()

    assert registry.set_default("ses_alpha1234")
    await registry.refresh()
    assert registry.get_default().id == "ses_alpha1234"

    agent.sessions = [runtime_session("ses_beta5678")]
    await registry.refresh()
    assert registry.get_default().id == "ses_beta5678"
    assert registry.set_default("ses_alpha1234") is False


@pytest.mark.asyncio
async def test_push_events_feed_same_observers():
    registry = _registry(FakeAgent())
    events = []
    registry.on_new_session(lambda s: events.append(("new", s.id)))
    registry.on_session_gone(lambda s: events.append(("gone", s.id)))

    info = await registry.handle_session_created(runtime_session("ses_pushed01"))
    assert info is not None and registry.is_available("ses_pushed01")
    assert await registry.handle_session_created(runtime_session("ses_kid", parent_id="ses_pushed01")) is None

    await registry.handle_session_deleted("ses_pushed01")
    await registry.handle_session_deleted("ses_pushed01")
    assert events == [("new", "ses_pushed01"), ("gone", "ses_pushed01")]


@pytest.mark.asyncio
async def test_mark_unavailable_moves_default():
    agent = FakeAgent([
        runtime_session("ses_alpha1234", minutes_ago=10),
        runtime_session("ses_beta5678", minutes_ago=1),
    ])
    registry = _registry(agent)
    await registry.refresh()
    registry.mark_unavailable("ses_beta5678")
    assert registry.get_default().id == "ses_alpha1234"
    assert registry.count_available() == 1
    assert registry.available_ids() == {"ses_alpha1234"}
