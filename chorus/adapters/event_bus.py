"""Async many-listener event bus.

The engine emits every event exactly once through the bus; each
subscriber gets its own queue so a slow consumer never reorders or
starves another. Events for one conversation reach every subscriber in
the order they were emitted.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from chorus.adapters.events import ChorusEvent
from chorus.engine.config import EventListener, fire_event

logger = logging.getLogger(__name__)


class Subscription:
    """One subscriber's view of the bus. Iterate with ``async for``."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[ChorusEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _put(self, event: ChorusEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "Subscriber queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def get(self, timeout: float | None = None) -> ChorusEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def get_nowait(self) -> ChorusEvent:
        return self._queue.get_nowait()

    def drain(self) -> list[ChorusEvent]:
        """Return and remove every queued event."""
        events: list[ChorusEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def __aiter__(self) -> AsyncIterator[ChorusEvent]:
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop delivery to this subscriber and detach it from the bus."""
        self._closed = True
        self._bus._remove(self)


class EventBus:
    """Fan-out of engine events to queue subscribers and async listeners."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._subscriptions: list[Subscription] = []
        self._listeners: list[EventListener] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        sub = Subscription(self, maxsize if maxsize is not None else self._maxsize)
        self._subscriptions.append(sub)
        return sub

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def emit(self, event: ChorusEvent) -> None:
        """Deliver *event* to every subscriber and listener."""
        if self._closed:
            return
        logger.debug("emit %s", event.event_type)
        for sub in list(self._subscriptions):
            await sub._put(event)
        for listener in list(self._listeners):
            await fire_event(listener, event)

    def close(self) -> None:
        """Stop all delivery permanently."""
        self._closed = True
        for sub in list(self._subscriptions):
            sub.close()
        self._listeners.clear()
