"""
Event Bus — per-node lanes for collaborator events.

Inbound events (login, logout, version change, refresh) reach the
automation scheduler here; outbound events (status changes, purge and
reload requests) reach UI collaborators.

Each node gets its own lane: a queue drained by one task. Events for the
same node are handled strictly in publish order, while a slow handler for
one node (a reset waiting on its display surface, say) never delays events
for another. Events that carry no node id share the fleet lane.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .event_types import Event, EventType

logger = logging.getLogger("fluxwarden.events.bus")

EventHandler = Callable[[Event], Awaitable[None]]

FLEET_LANE = "fleet"
WILDCARD = "*"


@dataclass
class _Lane:
    key: str
    queue: asyncio.Queue
    task: asyncio.Task | None = None


def _type_key(event_type: str | EventType) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


class EventBus:
    """
    Pub/sub dispatcher with one ordered lane per node.

    Usage:
        bus = EventBus()
        bus.subscribe(EventType.CREDENTIAL_ACQUIRED, on_login)
        await bus.start()
        await bus.publish(credential_acquired("IP01-node01", token))
        await bus.join()
        await bus.stop()

    Subscribe to "*" to receive every event.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lanes: dict[str, _Lane] = {}
        self._max_queue_size = max_queue_size
        self._running = False
        self._dispatched = 0
        self._failures = 0
        self._dropped = 0
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def subscribe(self, event_type: str | EventType, handler: EventHandler) -> None:
        key = _type_key(event_type)
        self._handlers[key].append(handler)
        logger.debug("Handler %s subscribed to %s", getattr(handler, "__qualname__", handler), key)

    def unsubscribe(self, event_type: str | EventType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(_type_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, event_type: str | EventType | None = None) -> int:
        if event_type is None:
            return sum(map(len, self._handlers.values()))
        return len(self._handlers.get(_type_key(event_type), []))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def _lane_for(self, event: Event) -> _Lane:
        key = event.node_id or FLEET_LANE
        lane = self._lanes.get(key)
        if lane is None:
            lane = _Lane(key=key, queue=asyncio.Queue(maxsize=self._max_queue_size))
            lane.task = asyncio.create_task(self._drain(lane), name=f"fluxwarden-bus-{key}")
            self._lanes[key] = lane
        return lane

    def _drop(self, event: Event, reason: str) -> None:
        self._dropped += 1
        logger.warning("Dropping %s for %s: %s", event.type, event.node_id or FLEET_LANE, reason)

    async def publish(self, event: Event) -> None:
        """Queue an event on its node's lane; dropped when the bus is stopped."""
        if not self._running:
            self._drop(event, "bus not running")
            return
        await self._lane_for(event).queue.put(event)
        self._queued()

    def publish_nowait(self, event: Event) -> None:
        if not self._running:
            self._drop(event, "bus not running")
            return
        try:
            self._lane_for(event).queue.put_nowait(event)
        except asyncio.QueueFull:
            self._drop(event, "lane full")
        else:
            self._queued()

    def _queued(self) -> None:
        self._pending += 1
        self._idle.clear()

    def _settled(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    async def join(self) -> None:
        """Wait until every lane has handled everything queued so far."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def _drain(self, lane: _Lane) -> None:
        while True:
            event = await lane.queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._settled()

    async def dispatch(self, event: Event) -> int:
        """
        Run every matching handler now, in subscription order.

        A failing handler is logged and does not stop the others.

        Returns:
            Number of handlers that completed
        """
        handlers = list(self._handlers.get(event.type, ())) + list(self._handlers.get(WILDCARD, ()))
        completed = 0
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                self._failures += 1
                logger.exception("Handler for %s failed on %r", event.type, event)
            else:
                completed += 1
        self._dispatched += 1
        return completed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("EventBus started")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Finish queued events (bounded by drain_timeout), then stop the lanes."""
        if not self._running:
            return
        try:
            await asyncio.wait_for(self.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("EventBus drain timed out; cancelling %d lanes", len(self._lanes))
        self._running = False

        lanes = list(self._lanes.values())
        self._lanes.clear()
        for lane in lanes:
            if lane.task is not None:
                lane.task.cancel()
        await asyncio.gather(*(lane.task for lane in lanes if lane.task), return_exceptions=True)
        self._pending = 0
        self._idle.set()
        logger.info(
            "EventBus stopped (%d dispatched, %d handler failures, %d dropped)",
            self._dispatched,
            self._failures,
            self._dropped,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "lanes": len(self._lanes),
            "queued": sum(lane.queue.qsize() for lane in self._lanes.values()),
            "handlers": self.handler_count(),
            "dispatched": self._dispatched,
            "failures": self._failures,
            "dropped": self._dropped,
        }
