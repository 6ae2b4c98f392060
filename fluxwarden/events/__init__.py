"""
FLUXWARDEN events: collaborator event types and the asyncio event bus.
"""

from .event_bus import EventBus, EventHandler
from .event_types import (
    Event,
    EventType,
    credential_acquired,
    credential_lost,
    node_status_changed,
    refresh_requested,
    version_changed,
)

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventType",
    "credential_acquired",
    "credential_lost",
    "node_status_changed",
    "refresh_requested",
    "version_changed",
]
