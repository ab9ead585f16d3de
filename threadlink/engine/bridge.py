"""The bridge: one explicit context object wiring every component.

Usage:
    bridge = Bridge(BridgeConfig.from_env())
    await bridge.start()
    ...
    await bridge.stop()

Startup order:
    load mappings -> start clients -> first registry refresh ->
    reconcile disconnected threads -> orphan stale active threads ->
    register discovery observers -> auto refresh, chat WebSocket,
    runtime event stream, stale-context sweep

Shutdown reverses it: background tasks stop, active threads are marked
disconnected and the mapping file is flushed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from threadlink.adapters.agent_client import AgentClient
from threadlink.adapters.attachments import AttachmentHandler
from threadlink.adapters.chat_client import ChatClient
from threadlink.adapters.chat_websocket import ChatWebSocket
from threadlink.adapters.event_bus import EventBus
from threadlink.adapters.events import RuntimeEvent, SessionCreated, SessionDeleted

from .aggregation import ResponseAggregator
from .commands import CommandDispatcher, SessionTargets
from .config import BridgeConfig
from .errors import AgentRuntimeError, ChatClientError, ThreadCreationError
from .inbound_router import (
    EndedSessionRoute,
    InboundRouter,
    MainCommandRoute,
    MainPromptRoute,
    ThreadPromptRoute,
    UnknownThreadRoute,
)
from .mapping_store import MappingStore
from .models import (
    InboundMessage,
    MappingStatus,
    ModelSelection,
    SessionInfo,
    ThreadSessionMapping,
)
from .monitor import Monitor
from .session_registry import SessionRegistry
from .thread_manager import ThreadManager

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60.0


def format_prompt(username: str, text: str) -> str:
    """Tag a prompt with the chat user it came from."""
    return f"[Chat message from @{username}]: {text}"


class Bridge:
    """Owns the clients, the store and the engine components.

    Everything is built in the constructor and passed explicitly; tests
    inject fakes for ``chat``, ``agent`` and ``store``.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        chat: Any = None,
        agent: Any = None,
        store: MappingStore | None = None,
    ) -> None:
        self.config = config
        sessions_cfg = config.sessions
        self.chat = chat if chat is not None else ChatClient(config.chat)
        self.agent = agent if agent is not None else AgentClient(config.agent)
        if store is None:
            store = MappingStore(
                path=sessions_cfg.mapping_path or None,
                debounce_seconds=sessions_cfg.save_debounce_seconds,
            )
        self.store = store
        self.registry = SessionRegistry(
            self.agent,
            refresh_interval=sessions_cfg.refresh_interval_seconds,
            unavailable_grace_seconds=sessions_cfg.unavailable_grace_seconds,
        )
        self.threads = ThreadManager(self.chat, self.store)
        self.router = InboundRouter(
            self.store,
            command_prefix=sessions_cfg.command_prefix,
            auto_create_sessions=sessions_cfg.auto_create_sessions,
        )
        self.targets = SessionTargets(sessions_cfg.target_mode)
        self.commands = CommandDispatcher(
            self.registry, self.store, self.targets, prefix=sessions_cfg.command_prefix,
        )
        self.monitor = Monitor(self.chat, command_prefix=sessions_cfg.command_prefix)
        self.attachments = AttachmentHandler(self.chat, config.files)
        self.aggregator = ResponseAggregator(
            self.chat,
            self.agent,
            self.registry,
            config.streaming,
            notifications=config.notifications,
            monitor=self.monitor,
            attachments=self.attachments,
        )
        self.event_bus = EventBus()
        self.websocket: ChatWebSocket | None = None
        self._ws_session: aiohttp.ClientSession | None = None
        self._consumer_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._usernames: dict[str, str] = {}
        self._owner_channel_id: str | None = None
        self._observers_registered = False
        self.running = False

    @property
    def default_model(self) -> ModelSelection | None:
        if not self.config.agent.default_model:
            return None
        try:
            return ModelSelection.parse(self.config.agent.default_model)
        except ValueError:
            logger.warning("Ignoring malformed default model %r", self.config.agent.default_model)
            return None

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self, *, listen: bool = True) -> None:
        """Bring the bridge up. With ``listen=False`` no network listeners start."""
        if self.running:
            return
        self.store.load()
        await self.chat.start()
        await self.agent.start()

        if await self.registry.refresh():
            available = self.registry.available_ids()
            await self.threads.reconcile(available)
            self.store.clean_orphaned(available)
        else:
            logger.warning("Agent runtime unreachable at startup; disconnected threads left as-is")

        if not self._observers_registered:
            self.registry.on_new_session(self._on_new_session)
            self.registry.on_session_gone(self._on_session_gone)
            self._observers_registered = True

        self.registry.start()
        self._consumer_task = asyncio.create_task(self._consume_events())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        if listen:
            self._ws_session = aiohttp.ClientSession()
            self.websocket = ChatWebSocket(self.config.chat, self._ws_session, self.handle_message)
            self.websocket.start(self.chat.bot_user_id)
            self.agent.start_events(self.event_bus.publish_raw)
        self.running = True
        logger.info(
            "Bridge started: %d session(s) available, %d mapping(s) loaded",
            self.registry.count_available(), self.store.count(),
        )

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.websocket is not None:
            await self.websocket.stop()
            self.websocket = None
        await self.agent.stop_events()
        await self.registry.stop()
        self.event_bus.close()
        for task in (self._consumer_task, self._sweep_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumer_task = None
        self._sweep_task = None
        await self.aggregator.shutdown()

        await self.threads.disconnect_all()
        self.store.shutdown()
        self.attachments.cleanup()
        self.monitor.clear()

        if self._ws_session is not None:
            await self._ws_session.close()
            self._ws_session = None
        await self.agent.close()
        await self.chat.close()
        logger.info("Bridge stopped")

    # ── Discovery observers ─────────────────────────────────

    async def _on_new_session(self, session: SessionInfo) -> None:
        owner = self.config.chat.owner_user_id
        if not owner:
            return
        mapping = self.store.get_by_session_id(session.id)
        if mapping is not None:
            if mapping.status == MappingStatus.DISCONNECTED:
                await self.threads.reconnect_thread(session.id, session_available=True)
            return
        try:
            if self._owner_channel_id is None:
                channel = await self.chat.create_direct_channel(owner)
                self._owner_channel_id = channel.id
            await self.threads.create_thread(session, owner, self._owner_channel_id)
        except (ChatClientError, ThreadCreationError) as exc:
            logger.error("Auto thread creation for session %s failed: %s", session.short_id, exc)

    async def _on_session_gone(self, session: SessionInfo) -> None:
        await self.threads.mark_orphaned(session.id)

    # ── Inbound chat ────────────────────────────────────────

    async def handle_message(self, message: InboundMessage) -> None:
        """Entry point for every inbound chat message."""
        if message.channel_type and message.channel_type != "D":
            return
        if not self.config.sessions.is_allowed(message.sender_id):
            logger.info("Ignoring message from unlisted user %s", message.sender_id[:8])
            return

        route = self.router.route(message)
        if isinstance(route, ThreadPromptRoute):
            await self._handle_thread_prompt(route, message)
        elif isinstance(route, MainCommandRoute):
            result = await self.commands.execute(route.command, message.sender_id)
            await self._reply(message.channel_id, result.message)
        elif isinstance(route, MainPromptRoute):
            if route.auto_create:
                await self._handle_auto_create(route, message)
            else:
                await self._reply(
                    message.channel_id, f"{route.error_message}\n\n{route.suggested_action}",
                )
        elif isinstance(route, (UnknownThreadRoute, EndedSessionRoute)):
            await self._reply(
                message.channel_id,
                f"{route.error_message}\n\n{route.suggested_action}",
                root_id=route.thread_root_post_id,
            )

    async def _handle_thread_prompt(self, route: ThreadPromptRoute, message: InboundMessage) -> None:
        mapping = self.store.get_by_session_id(route.session_id)
        if mapping is None:
            return
        self.threads.update_activity(mapping.session_id)
        await self._dispatch(mapping, route.prompt_text, route.attachment_ids, message.sender_id)

    async def _handle_auto_create(self, route: MainPromptRoute, message: InboundMessage) -> None:
        directory = self.config.agent.default_directory or None
        try:
            runtime = await self.agent.create_session(directory=directory)
        except AgentRuntimeError as exc:
            logger.error("Session auto-creation failed: %s", exc)
            await self._reply(message.channel_id, f":x: Could not create an agent session: {exc.reason}")
            return
        info = SessionInfo.from_runtime(runtime)
        try:
            mapping = await self.threads.create_thread(info, message.sender_id, message.channel_id)
        except ThreadCreationError as exc:
            logger.error("Thread creation for new session %s failed: %s", info.short_id, exc)
            await self._reply(message.channel_id, f":x: Could not create a thread: {exc.reason}")
            return
        await self.registry.handle_session_created(runtime)
        self.targets.set(message.sender_id, runtime.id)
        await self._dispatch(mapping, route.prompt_text, route.attachment_ids, message.sender_id)

    async def _dispatch(
        self,
        mapping: ThreadSessionMapping,
        text: str,
        attachment_ids: list[str],
        sender_id: str,
    ) -> bool:
        paths = await self.attachments.download_inbound(attachment_ids) if attachment_ids else []
        username = await self._username(sender_id)
        return await self.aggregator.dispatch(
            mapping,
            format_prompt(username, text),
            attachments=paths,
            model=mapping.selected_model or self.default_model,
        )

    async def _username(self, user_id: str) -> str:
        cached = self._usernames.get(user_id)
        if cached is not None:
            return cached
        try:
            user = await self.chat.get_user(user_id)
            name = str(user.get("username") or user_id)
        except ChatClientError as exc:
            logger.debug("Could not resolve username for %s: %s", user_id[:8], exc)
            return user_id
        self._usernames[user_id] = name
        return name

    async def _reply(self, channel_id: str, message: str, root_id: str | None = None) -> None:
        try:
            await self.chat.create_post(channel_id, message, root_id=root_id)
        except ChatClientError as exc:
            logger.error("Failed to reply in channel %s: %s", channel_id[:8], exc)

    # ── Runtime events ──────────────────────────────────────

    async def handle_event(self, event: RuntimeEvent) -> None:
        if isinstance(event, SessionCreated):
            await self.registry.handle_session_created(event.session)
            return
        if isinstance(event, SessionDeleted):
            # mark_orphaned from the gone observer skips the now ended mapping
            await self.threads.end_thread(event.session_id)
            await self.registry.handle_session_deleted(event.session_id)
        await self.aggregator.handle_event(event)

    async def _consume_events(self) -> None:
        try:
            async for event in self.event_bus.consume():
                try:
                    await self.handle_event(event)
                except Exception:
                    logger.exception("Error handling %s for session %s",
                                     event.event_type, event.session_id[:8])
        except asyncio.CancelledError:
            logger.info("Event consumer stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
                await self.aggregator.sweep_stale()
            except asyncio.CancelledError:
                logger.info("Stale-context sweep stopped")
                return
            except Exception:
                logger.exception("Stale-context sweep error")

    # ── Introspection ───────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "chat_connected": bool(self.websocket and self.websocket.connected),
            "events_connected": bool(getattr(self.agent, "events_connected", False)),
            "sessions": {
                "known": self.registry.count(),
                "available": self.registry.count_available(),
                "last_refresh_ok": self.registry.last_refresh_ok,
            },
            "mappings": self.store.stats(),
            "active_responses": len(self.aggregator.active_session_ids),
            "monitored": len(self.monitor.list()),
            "pending_events": self.event_bus.pending,
        }
