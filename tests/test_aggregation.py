from __future__ import annotations

import asyncio
import time

import pytest

from conftest import T0, FakeAgent, FakeChat, FakeClock, drain, make_mapping, runtime_session
from threadlink.adapters.events import (
    MessageCostUpdated,
    PermissionRequested,
    SessionCompacted,
    SessionError,
    SessionIdle,
    SessionStatusChanged,
    TextDelta,
    ToolStateChanged,
    dict_to_event,
)
from threadlink.engine.aggregation import QUEUED_NOTICE, ResponseAggregator
from threadlink.engine.config import StreamingConfig
from threadlink.engine.errors import AgentRuntimeError
from threadlink.engine.models import PromptPhase, SessionInfo, TokenUsage
from threadlink.engine.monitor import Monitor
from threadlink.engine.session_registry import SessionRegistry


def _aggregator(chat: FakeChat, agent: FakeAgent, clock: FakeClock, **streaming) -> ResponseAggregator:
    return ResponseAggregator(
        chat,
        agent,
        SessionRegistry(agent),
        config=StreamingConfig(**streaming),
        clock=clock,
    )


async def _step(aggregator: ResponseAggregator, clock: FakeClock, event) -> None:
    """Deliver *event* after enough time has passed for an immediate render."""
    clock.advance(1)
    await aggregator.handle_event(event)
    await drain()


def _head(aggregator: ResponseAggregator, session_id: str) -> str:
    return aggregator.get_context(session_id).stream.head_post_id


@pytest.mark.asyncio
async def test_prompt_lifecycle_ends_with_one_complete_render(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    mapping = make_mapping("S2", "T2")

    assert await aggregator.dispatch(mapping, "say hello")
    head = _head(aggregator, "S2")
    assert agent.dispatched == [("S2", [{"type": "text", "text": "say hello"}], None)]
    assert chat.posts[head].root_id == "T2"

    await _step(aggregator, clock, TextDelta(session_id="S2", part_id="p1", delta="Hello"))
    await _step(aggregator, clock, ToolStateChanged(
        session_id="S2", call_id="c1", tool="bash", status="running", title="ls",
    ))
    assert aggregator.get_context("S2").phase == PromptPhase.TOOL_RUNNING
    await _step(aggregator, clock, ToolStateChanged(
        session_id="S2", call_id="c1", tool="bash", status="completed",
    ))
    await _step(aggregator, clock, SessionIdle(session_id="S2"))

    complete = [m for m in chat.updates_for(head) if "**Complete**" in m]
    assert len(complete) == 1
    assert "Hello" in complete[0]
    assert "bash ×1" in complete[0]
    assert not aggregator.has_context("S2")
    assert any("Task Completed" in m for m in chat.replies_in("T2"))


@pytest.mark.asyncio
async def test_user_prompt_parts_stay_out_of_the_response(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S2", "T2"), "fix the bug")
    head = _head(aggregator, "S2")

    await _step(aggregator, clock, dict_to_event({
        "type": "message.part.updated",
        "properties": {"part": {
            "id": "prt_u", "sessionID": "S2", "messageID": "msg_user",
            "type": "text", "text": "[Chat message from @u]: fix the bug",
        }},
    }))
    await _step(aggregator, clock, dict_to_event({
        "type": "message.part.updated",
        "properties": {"part": {
            "id": "prt_a", "sessionID": "S2", "messageID": "msg_asst",
            "type": "text", "text": "Fixed it",
        }, "delta": "Fixed it"},
    }))
    await _step(aggregator, clock, SessionIdle(session_id="S2"))

    (complete,) = [m for m in chat.updates_for(head) if "**Complete**" in m]
    assert "Fixed it" in complete
    assert "fix the bug" not in complete


@pytest.mark.asyncio
async def test_concurrent_sessions_do_not_mix(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S3", "T3"), "first")
    await aggregator.dispatch(make_mapping("S4", "T4"), "second")
    head3, head4 = _head(aggregator, "S3"), _head(aggregator, "S4")

    await _step(aggregator, clock, TextDelta(session_id="S3", part_id="a", delta="alpha"))
    await _step(aggregator, clock, TextDelta(session_id="S4", part_id="b", delta="beta"))
    await _step(aggregator, clock, SessionIdle(session_id="S3"))

    final3 = chat.updates_for(head3)[-1]
    assert "alpha" in final3 and "beta" not in final3
    assert all("alpha" not in m for m in chat.updates_for(head4))
    assert aggregator.active_session_ids == ["S4"]
    assert aggregator.get_context("S4").response_text == "beta"
    await aggregator.shutdown()
    assert aggregator.active_session_ids == []


@pytest.mark.asyncio
async def test_renders_are_deferred_inside_the_edit_interval(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock, edit_rate_limit=10.0)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")
    ctx = aggregator.get_context("S1")

    # only the connecting render; the processing render waits for the timer
    assert len(chat.updates_for(head)) == 1
    assert ctx.flush_handle is not None

    await asyncio.sleep(0.2)
    await drain()
    assert ctx.flush_handle is None
    assert "**Processing**" in chat.updates_for(head)[-1]


@pytest.mark.asyncio
async def test_changes_during_inflight_render_get_one_follow_up(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")
    baseline = len(chat.updates_for(head))

    chat.update_gate = asyncio.Event()
    await _step(aggregator, clock, PermissionRequested(session_id="S1", title="edit main.py"))
    ctx = aggregator.get_context("S1")
    assert ctx.render_task is not None and not ctx.render_task.done()

    await aggregator.handle_event(SessionCompacted(session_id="S1"))
    await aggregator.handle_event(SessionCompacted(session_id="S1"))
    assert ctx.dirty

    clock.advance(1)
    chat.update_gate.set()
    await drain(20)
    renders = chat.updates_for(head)[baseline:]
    assert len(renders) == 2
    assert "edit main.py" in renders[0]
    assert "compacted ×2" in renders[1]


@pytest.mark.asyncio
async def test_small_text_deltas_wait_for_the_buffer(chat, agent, clock):
    # a tiny edit interval lets the processing render flush on the next loop pass
    aggregator = _aggregator(
        chat, agent, clock, buffer_size=10, max_delay_ms=60_000, edit_rate_limit=1e9,
    )
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")
    clock.advance(1)
    await drain()
    before = len(chat.updates_for(head))

    await _step(aggregator, clock, TextDelta(session_id="S1", part_id="p", delta="abc"))
    assert len(chat.updates_for(head)) == before

    await _step(aggregator, clock, TextDelta(session_id="S1", part_id="p", delta="defghijkl"))
    assert chat.updates_for(head)[-1].endswith("abcdefghijkl")


@pytest.mark.asyncio
async def test_shell_output_shows_only_the_tail(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock, shell_tail_lines=3)
    await aggregator.dispatch(make_mapping("S1", "T1"), "build")
    head = _head(aggregator, "S1")

    await _step(aggregator, clock, ToolStateChanged(
        session_id="S1", call_id="c1", tool="bash", status="running",
        output="l1\nl2\nl3\nl4\nl5\n",
    ))
    ctx = aggregator.get_context("S1")
    assert ctx.shell_lines == ["l3", "l4", "l5"]
    latest = chat.updates_for(head)[-1]
    assert "... 2 lines hidden" in latest
    assert "l1" not in latest

    await _step(aggregator, clock, ToolStateChanged(
        session_id="S1", call_id="c1", tool="bash", status="completed", output="done",
    ))
    assert ctx.shell_lines == []
    assert "lines hidden" not in chat.updates_for(head)[-1]


@pytest.mark.asyncio
async def test_costs_add_prior_usage_and_latest_per_message(chat, agent, clock):
    agent.prior = TokenUsage(input=100, cost=0.5)
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")

    await _step(aggregator, clock, MessageCostUpdated(
        session_id="S1", message_id="m1", usage=TokenUsage(input=10, cost=0.1),
    ))
    await _step(aggregator, clock, MessageCostUpdated(
        session_id="S1", message_id="m1", usage=TokenUsage(input=20, cost=0.2),
    ))
    await _step(aggregator, clock, MessageCostUpdated(
        session_id="S1", message_id="m2", usage=TokenUsage(input=5, cost=0.05),
    ))

    ctx = aggregator.get_context("S1")
    assert ctx.session_total.input == 125
    assert ctx.session_total.cost == pytest.approx(0.75)
    assert ctx.current_usage.input == 5


@pytest.mark.asyncio
async def test_dispatch_failure_renders_error_and_marks_session_unavailable(chat, clock):
    agent = FakeAgent([runtime_session("S1")])
    registry = SessionRegistry(agent)
    await registry.refresh()
    aggregator = ResponseAggregator(chat, agent, registry, clock=clock)
    agent.fail_dispatch = AgentRuntimeError("dispatch_prompt", "connection refused")

    assert await aggregator.dispatch(make_mapping("S1", "T1"), "go") is False
    assert not aggregator.has_context("S1")
    assert not registry.is_available("S1")

    head = chat.created[0].id
    final = chat.updates_for(head)[-1]
    assert "**Error**" in final
    assert "Failed to send prompt: connection refused" in final
    assert "Reply in this thread to try again" in final
    assert any("Error Occurred" in m for m in chat.replies_in("T1"))


@pytest.mark.asyncio
async def test_client_error_on_dispatch_is_not_recoverable(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    agent.fail_dispatch = AgentRuntimeError("dispatch_prompt", "bad request", 400)

    assert await aggregator.dispatch(make_mapping("S1", "T1"), "go") is False
    final = chat.updates_for(chat.created[0].id)[-1]
    assert "Reply in this thread to try again" not in final


@pytest.mark.asyncio
async def test_second_prompt_while_busy_is_queued(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    mapping = make_mapping("S1", "T1")
    await aggregator.dispatch(mapping, "first")

    assert await aggregator.dispatch(mapping, "second")
    assert QUEUED_NOTICE in chat.replies_in("T1")
    assert [parts[0]["text"] for _, parts, _ in agent.dispatched] == ["first", "second"]
    assert aggregator.active_session_ids == ["S1"]


@pytest.mark.asyncio
async def test_retry_status_then_busy(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")

    await _step(aggregator, clock, SessionStatusChanged(
        session_id="S1", status="retry", attempt=2, max_attempts=5,
        message="rate limited", next_retry_ms=(time.time() + 30) * 1000,
    ))
    ctx = aggregator.get_context("S1")
    assert ctx.phase == PromptPhase.RETRYING
    assert ctx.next_retry_at == pytest.approx(clock.now + 30, abs=2)
    latest = chat.updates_for(head)[-1]
    assert "Attempt 2/5" in latest
    assert "rate limited" in latest

    await _step(aggregator, clock, SessionStatusChanged(session_id="S1", status="busy"))
    assert ctx.phase == PromptPhase.PROCESSING


@pytest.mark.asyncio
async def test_session_error_finishes_with_error(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")

    await _step(aggregator, clock, SessionError(session_id="S1", error="model overloaded"))
    assert not aggregator.has_context("S1")
    assert "model overloaded" in chat.updates_for(head)[-1]


@pytest.mark.asyncio
async def test_question_tool_waits_for_user(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")

    await _step(aggregator, clock, ToolStateChanged(
        session_id="S1", call_id="q1", tool="question", status="running", title="Which branch?",
    ))
    ctx = aggregator.get_context("S1")
    assert ctx.phase == PromptPhase.WAITING
    assert "Which branch?" in ctx.phase_detail

    await _step(aggregator, clock, ToolStateChanged(
        session_id="S1", call_id="q1", tool="question", status="completed",
    ))
    assert ctx.phase == PromptPhase.PROCESSING
    assert ctx.tool_tally() == {"question": 1}


@pytest.mark.asyncio
async def test_stale_contexts_are_swept(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock, max_context_age_seconds=60)
    await aggregator.dispatch(make_mapping("S1", "T1"), "go")
    head = _head(aggregator, "S1")

    assert await aggregator.sweep_stale() == 0
    clock.advance(61)
    assert await aggregator.sweep_stale() == 1
    assert not aggregator.has_context("S1")
    assert "No completion signal" in chat.updates_for(head)[-1]


@pytest.mark.asyncio
async def test_monitor_alert_fires_once_without_context(chat, agent, clock):
    monitor = Monitor(chat)
    monitor.register(
        SessionInfo(
            id="S9", short_id="S9", project_name="app", directory="/work/app",
            title="app", last_updated=T0,
        ),
        "u9",
    )
    aggregator = ResponseAggregator(chat, agent, SessionRegistry(agent), monitor=monitor, clock=clock)

    await aggregator.handle_event(PermissionRequested(session_id="S9", title="run tests"))
    await aggregator.handle_event(PermissionRequested(session_id="S9", title="run tests"))

    alerts = [p for p in chat.created if p.channel_id == "dm-u9"]
    assert len(alerts) == 1
    assert "Permission requested" in alerts[0].message
    assert not monitor.is_monitored("S9")


@pytest.mark.asyncio
async def test_events_without_context_are_ignored(chat, agent, clock):
    aggregator = _aggregator(chat, agent, clock)
    await aggregator.handle_event(TextDelta(session_id="S-none", part_id="p", delta="x"))
    await aggregator.handle_event(SessionIdle(session_id="S-none"))
    assert chat.created == []
    assert chat.updates == []
