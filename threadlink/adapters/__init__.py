"""Adapters package - clients for the chat platform and the agent runtime.

This package contains the chat REST and WebSocket clients, the agent
runtime client with its event stream, the typed runtime events and the
event bus that feeds them to the bridge.
"""
from __future__ import annotations

__all__ = [
    "AgentClient",
    "AttachmentHandler",
    "ChatClient",
    "ChatWebSocket",
    "EventBus",
]

from threadlink.adapters.agent_client import AgentClient
from threadlink.adapters.attachments import AttachmentHandler
from threadlink.adapters.chat_client import ChatClient
from threadlink.adapters.chat_websocket import ChatWebSocket
from threadlink.adapters.event_bus import EventBus
