"""Async event bus between the runtime event stream and the bridge.

The SSE reader pushes raw payloads; the bridge's consumer loop pulls
typed events in delivery order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from threadlink.adapters.events import RuntimeEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging runtime payloads to the event consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[RuntimeEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def publish_raw(self, data: dict[str, Any]) -> None:
        """Parse a runtime payload and enqueue it if the bridge consumes it."""
        if self._closed:
            return
        event = dict_to_event(data)
        if event is None:
            return
        await self.emit(event)

    async def emit(self, event: RuntimeEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[RuntimeEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
