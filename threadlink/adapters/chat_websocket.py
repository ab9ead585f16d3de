"""Mattermost WebSocket listener yielding inbound chat messages."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from threadlink.engine.config import ChatConfig
from threadlink.engine.models import InboundMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Awaitable[None]]

RECONNECT_BASE_SECONDS = 5.0
RECONNECT_FACTOR = 1.5


def reconnect_delay(attempt: int, cap: float) -> float:
    return min(RECONNECT_BASE_SECONDS * RECONNECT_FACTOR ** attempt, cap)


def parse_posted_event(event: dict[str, Any], bot_user_id: str) -> InboundMessage | None:
    """Turn a ``posted`` WebSocket event into an InboundMessage.

    Returns None for other events, the bot's own posts, system posts and
    malformed payloads.
    """
    if event.get("event") != "posted":
        return None
    data = event.get("data") or {}
    raw_post = data.get("post")
    try:
        post = json.loads(raw_post) if isinstance(raw_post, str) else raw_post
    except ValueError:
        logger.warning("Unparseable post payload in posted event")
        return None
    if not isinstance(post, dict) or not post.get("id"):
        return None
    if post.get("user_id") == bot_user_id or str(post.get("type") or "").startswith("system_"):
        return None
    return InboundMessage(
        post_id=str(post["id"]),
        channel_id=str(post.get("channel_id") or ""),
        sender_id=str(post.get("user_id") or ""),
        text=str(post.get("message") or ""),
        thread_anchor_id=str(post.get("root_id") or ""),
        attachment_ids=[str(f) for f in post.get("file_ids") or []],
        channel_type=str(data.get("channel_type") or ""),
    )


class ChatWebSocket:
    """Keeps a WebSocket open and hands each inbound message to a handler.

    Reconnects with exponential backoff (5s x 1.5^n, capped) until
    stopped.
    """

    def __init__(
        self,
        config: ChatConfig,
        session: aiohttp.ClientSession,
        handler: MessageHandler,
    ) -> None:
        self._config = config
        self._session = session
        self._handler = handler
        self.bot_user_id = ""
        self._seq = 0
        self._attempts = 0
        self._task: asyncio.Task | None = None
        self.connected = False

    def start(self, bot_user_id: str) -> None:
        self.bot_user_id = bot_user_id
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.connected = False

    async def _run(self) -> None:
        while True:
            try:
                await self._listen_once()
            except asyncio.CancelledError:
                logger.info("Chat WebSocket stopped")
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                logger.warning("Chat WebSocket error: %s", exc)
            self.connected = False
            delay = reconnect_delay(self._attempts, self._config.reconnect_max_seconds)
            self._attempts += 1
            logger.info("Chat WebSocket reconnecting in %.1fs (attempt %d)", delay, self._attempts)
            await asyncio.sleep(delay)

    async def _listen_once(self) -> None:
        async with self._session.ws_connect(self._config.websocket_url, heartbeat=30.0) as ws:
            self._seq += 1
            await ws.send_json({
                "seq": self._seq,
                "action": "authentication_challenge",
                "data": {"token": self._config.token},
            })
            self.connected = True
            self._attempts = 0
            logger.info("Chat WebSocket connected")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._dispatch(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        logger.info("Chat WebSocket closed")

    async def _dispatch(self, raw: str) -> None:
        try:
            event = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON WebSocket frame")
            return
        if not isinstance(event, dict):
            return
        message = parse_posted_event(event, self.bot_user_id)
        if message is None:
            return
        try:
            await self._handler(message)
        except Exception:
            logger.exception("Inbound message handler failed for post %s", message.post_id[:8])
