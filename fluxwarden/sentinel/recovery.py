"""
FLUXWARDEN Sentinel — Reset/Recovery Controller

Brings a node back to a clean, login-ready state after its credential was
found to be invalid (or an operator forced a refresh):

  1. stop the node's recurring timer and clear its credential
  2. report the node as unauthenticated to UI collaborators
  3. purge the node's browser partition and reload its display surface

Each step is best-effort and isolated: a failure is logged and the
remaining steps still run. Nothing here is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from fluxwarden.control_plane.registry import Node
from fluxwarden.control_plane.vault import CredentialVault
from fluxwarden.events import Event, EventBus, EventType, node_status_changed
from fluxwarden.shared.logging import MAIN_TAG, get_tagged_logger

logger = logging.getLogger("fluxwarden.sentinel.recovery")


class DisplaySurface(Protocol):
    """Session-storage and display collaborator for one node's partition."""

    async def purge_session(self, node: Node) -> None: ...

    async def reload_display(self, node: Node) -> None: ...


class BusDisplaySurface:
    """Forwards purge and reload requests to collaborators over the event bus."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def purge_session(self, node: Node) -> None:
        await self.bus.publish(
            Event(
                EventType.SESSION_PURGE_REQUESTED,
                {
                    "node_id": node.node_id,
                    "partition": node.partition,
                    "storages": ["cookies", "localstorage", "cachestorage", "serviceworkers"],
                },
                source="recovery",
            )
        )

    async def reload_display(self, node: Node) -> None:
        await self.bus.publish(
            Event(
                EventType.DISPLAY_RELOAD_REQUESTED,
                {"node_id": node.node_id, "partition": node.partition, "url": node.ui_url},
                source="recovery",
            )
        )


@dataclass
class RecoveryReport:
    """Outcome of one reset."""

    node_id: str
    reason: str
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "reason": self.reason,
            "completed": self.completed,
            "failed": self.failed,
            "ok": self.ok,
        }


class RecoveryController:
    """Runs the reset protocol for one node at a time."""

    def __init__(
        self,
        vault: CredentialVault,
        bus: EventBus,
        surface: DisplaySurface | None = None,
    ) -> None:
        self.vault = vault
        self.bus = bus
        self.surface = surface or BusDisplaySurface(bus)

    async def reset(
        self,
        node: Node,
        stop_timer: Callable[[], None],
        reason: str = "authorization failure",
    ) -> RecoveryReport:
        """
        Tear down a node's session.

        Args:
            node: Node being reset
            stop_timer: Cancels the node's recurring cycle
            reason: Why the reset happened (logged)
        """
        log = get_tagged_logger(MAIN_TAG, node.node_id)
        report = RecoveryReport(node_id=node.node_id, reason=reason)
        log.warning("Resetting node (%s). Pausing automation.", reason)

        try:
            stop_timer()
            report.completed.append("stop_timer")
        except Exception as exc:
            report.failed["stop_timer"] = str(exc)
            log.error("Failed to stop automation timer: %s", exc)

        try:
            self.vault.clear(node.node_id)
            report.completed.append("clear_credential")
        except Exception as exc:
            report.failed["clear_credential"] = str(exc)
            log.error("Failed to clear credential: %s", exc)

        try:
            await self.bus.publish(node_status_changed(node.node_id, False, source="recovery"))
            report.completed.append("status_event")
        except Exception as exc:
            report.failed["status_event"] = str(exc)
            log.error("Failed to publish status change: %s", exc)

        try:
            await self.surface.purge_session(node)
            report.completed.append("purge_session")
        except Exception as exc:
            report.failed["purge_session"] = str(exc)
            log.error("Failed to purge session storage for %s: %s", node.partition, exc)

        try:
            await self.surface.reload_display(node)
            report.completed.append("reload_display")
        except Exception as exc:
            report.failed["reload_display"] = str(exc)
            log.error("Failed to reload display surface: %s", exc)

        if report.ok:
            log.info("Node reset complete; waiting for a fresh login.")
        else:
            logger.warning("Reset of %s finished with failures: %s", node.node_id, report.failed)
        return report
