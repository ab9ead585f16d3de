from __future__ import annotations

import pytest

from conftest import FakeChat
from threadlink.engine.streamer import (
    CONSOLIDATED,
    CONTINUED_BELOW,
    ResponseStreamer,
    find_split_point,
    split_message,
)


def test_split_prefers_paragraph_then_line_then_word():
    text = "a" * 60 + "\n\n" + "b" * 30
    assert find_split_point(text, 80) == 62

    text = "a" * 60 + "\n" + "b" * 30
    assert find_split_point(text, 80) == 61

    text = "a" * 75 + " " + "b" * 30
    assert find_split_point(text, 80) == 76

    assert find_split_point("x" * 200, 80) == 80


def test_split_message_short_content_is_one_part():
    assert split_message("hello", 100) == ["hello"]


def test_split_message_parts_fit():
    content = "\n\n".join(f"paragraph {i} " + "w" * 80 for i in range(10))
    parts = split_message(content, 200)
    assert len(parts) > 1
    assert all(len(p) <= 150 for p in parts)
    assert "".join(parts).replace("\n", "") == content.replace("\n", "")


async def _streamer(chat: FakeChat, max_len: int = 200) -> ResponseStreamer:
    head = await chat.create_post("dm-1", "placeholder", root_id="root-1")
    return ResponseStreamer(chat, "dm-1", "root-1", head.id, max_post_length=max_len)


@pytest.mark.asyncio
async def test_overflow_goes_to_continuation_replies(chat):
    streamer = await _streamer(chat)
    long = "\n\n".join("p" * 90 for _ in range(4))

    await streamer.update(long)
    assert len(streamer.post_ids) > 1
    head_text = chat.posts[streamer.head_post_id].message
    assert head_text.endswith(CONTINUED_BELOW)
    last = chat.posts[streamer.continuation_post_ids[-1]].message
    assert last.startswith(f"*(continued {len(streamer.post_ids)}/{len(streamer.post_ids)})*")
    assert all(chat.posts[pid].root_id == "root-1" for pid in streamer.continuation_post_ids)


@pytest.mark.asyncio
async def test_continuations_are_reused_then_consolidated(chat):
    streamer = await _streamer(chat)
    long = "\n\n".join("p" * 90 for _ in range(4))
    await streamer.update(long)
    continuation_ids = list(streamer.continuation_post_ids)
    created = len(chat.created)

    await streamer.update(long + "\n\nmore")
    assert streamer.continuation_post_ids[: len(continuation_ids)] == continuation_ids
    assert len(chat.created) - created <= 1

    await streamer.update("short now")
    assert streamer.continuation_post_ids == []
    assert chat.posts[streamer.head_post_id].message == "short now"
    assert all(chat.posts[pid].message == CONSOLIDATED for pid in continuation_ids)


@pytest.mark.asyncio
async def test_identical_content_is_not_resent(chat):
    streamer = await _streamer(chat)
    await streamer.update("same")
    await streamer.update("same")
    assert chat.updates_for(streamer.head_post_id) == ["same"]
