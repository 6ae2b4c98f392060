"""
Event Types — Event data structures and type definitions.

Defines the events exchanged between the engine and its external
collaborators (login capture, embedded UI, session storage, log viewer).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fluxwarden.utils import utc_now

SENSITIVE_PAYLOAD_KEYS = frozenset({"token"})


class EventType(Enum):
    """
    All event types in FLUXWARDEN.

    Categories:
    - Inbound: emitted by external collaborators, consumed by the scheduler
    - Outbound: emitted by the engine for UI and session-storage collaborators
    """

    # ========================================================================
    # Inbound Events
    # ========================================================================

    CREDENTIAL_ACQUIRED = "credential.acquired"
    """Login capture observed a new session token for a node."""

    CREDENTIAL_LOST = "credential.lost"
    """The captured session token disappeared (logout)."""

    VERSION_CHANGED = "control_plane.version_changed"
    """Embedded UI saw the node's software version string change."""

    REFRESH_REQUESTED = "node.refresh_requested"
    """Operator asked for a forced reset of one node."""

    # ========================================================================
    # Outbound Events
    # ========================================================================

    NODE_STATUS_CHANGED = "node.status_changed"
    """Credential presence changed; drives UI status indicators."""

    SESSION_PURGE_REQUESTED = "session.purge_requested"
    """Purge cookies, local storage and caches of a node's partition."""

    DISPLAY_RELOAD_REQUESTED = "display.reload_requested"
    """Reload a node's display surface so it shows a fresh login."""

    CYCLE_COMPLETED = "automation.cycle_completed"
    """One automation cycle for a node finished."""


@dataclass
class Event:
    """
    Base event class for all FLUXWARDEN events.

    Attributes:
        type: Event type (from EventType enum or custom string)
        payload: Event-specific data
        source: Where event originated (api, scheduler, recovery, ...)
        timestamp: When event occurred (auto-generated)
        metadata: Additional context (optional)
    """

    type: str | EventType
    payload: dict[str, Any]
    source: str
    timestamp: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Normalize EventType to string."""
        if isinstance(self.type, EventType):
            self.type = self.type.value

    @property
    def node_id(self) -> str | None:
        return self.payload.get("node_id")

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format, credentials masked."""
        payload = {
            key: ("[REDACTED]" if key in SENSITIVE_PAYLOAD_KEYS and value else value)
            for key, value in self.payload.items()
        }
        return {
            "type": self.type,
            "payload": payload,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    def __repr__(self) -> str:
        return f"Event(type={self.type!r}, node_id={self.node_id!r}, source={self.source!r})"


# ============================================================================
# Factories
# ============================================================================


def credential_acquired(node_id: str, token: str, source: str = "login-capture") -> Event:
    return Event(EventType.CREDENTIAL_ACQUIRED, {"node_id": node_id, "token": token}, source)


def credential_lost(node_id: str, source: str = "login-capture") -> Event:
    return Event(EventType.CREDENTIAL_LOST, {"node_id": node_id}, source)


def version_changed(
    node_id: str,
    old_version: str | None,
    new_version: str | None,
    source: str = "embedded-ui",
) -> Event:
    return Event(
        EventType.VERSION_CHANGED,
        {"node_id": node_id, "old_version": old_version, "new_version": new_version},
        source,
    )


def refresh_requested(node_id: str, source: str = "operator") -> Event:
    return Event(EventType.REFRESH_REQUESTED, {"node_id": node_id}, source)


def node_status_changed(node_id: str, has_credential: bool, source: str = "scheduler") -> Event:
    return Event(
        EventType.NODE_STATUS_CHANGED,
        {"node_id": node_id, "has_credential": has_credential},
        source,
    )
