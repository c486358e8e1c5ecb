"""EventManager - in-memory fan-out for lifecycle events."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from .models import Event, EventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], Awaitable[None] | None]

DEFAULT_CHANNEL = "tasks"


class EventManager:
    """Observer registry plus per-channel queues for streaming consumers."""

    def __init__(self) -> None:
        self._channels: dict[str, set[asyncio.Queue]] = defaultdict(set)
        # None key holds callbacks registered for every event type
        self._callbacks: dict[EventType | None, list[EventCallback]] = defaultdict(list)

    def on(self, event_type: EventType | None, callback: EventCallback) -> None:
        """Register a callback for one event type, or for all when event_type is None."""
        self._callbacks[event_type].append(callback)

    def off(self, event_type: EventType | None, callback: EventCallback) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks[event_type].remove(callback)

    async def subscribe(self, channel: str = DEFAULT_CHANNEL) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._channels[channel].add(queue)
        return queue

    async def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        self._channels[channel].discard(queue)
        if not self._channels[channel]:
            del self._channels[channel]

    async def publish(self, event: Event) -> None:
        if not event.channel:
            event.channel = DEFAULT_CHANNEL

        for queue in list(self._channels.get(event.channel, [])):
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(event)

        callbacks = [*self._callbacks.get(event.event_type, []), *self._callbacks.get(None, [])]
        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event callback failed for %s", event.event_type)

    async def emit(self, event_type: EventType, **data: object) -> None:
        """Convenience: build and publish an event on the default channel."""
        await self.publish(Event(event_type=event_type, data=dict(data)))
