"""
FLUXWARDEN automation scheduler.

One recurring compliance cycle per authenticated node:

    UNAUTHENTICATED --credential acquired--> SCHEDULED
    SCHEDULED --settle delay, first cycle--> ACTIVE
    ACTIVE/SCHEDULED --logout / version change--> UNAUTHENTICATED
    ACTIVE/SCHEDULED --authorization failure in a cycle--> RESETTING --> UNAUTHENTICATED

Every cycle lists the node's running workloads, matches them against the
disallowed prefixes and removes the owning primary workload of each match.

Two guards keep a node on a single timeline:
- an in-flight guard: a tick never starts while the previous cycle for the
  same node is still running (the tick is skipped instead);
- a generation counter: stopping the timer bumps the generation, so a cycle
  that was already running when its node logged out finishes without
  re-arming the timer or triggering a reset.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from fluxwarden.control_plane.node_client import (
    ListFailure,
    ListSuccess,
    NodeApiClient,
    workload_names,
)
from fluxwarden.control_plane.registry import Node, NodeRegistry
from fluxwarden.control_plane.vault import CredentialVault
from fluxwarden.events import Event, EventBus, EventType, node_status_changed
from fluxwarden.policy.matcher import policy_targets, strip_name
from fluxwarden.sentinel.recovery import RecoveryController, RecoveryReport
from fluxwarden.shared.errors import NodeNotFoundError, SealingError
from fluxwarden.shared.logging import AUTOMATION_TAG, MAIN_TAG, get_tagged_logger
from fluxwarden.shared.settings import (
    DEFAULT_AUTOMATION_INTERVAL_SECONDS,
    DEFAULT_SETTLE_DELAY_SECONDS,
    Settings,
)

logger = logging.getLogger("fluxwarden.scheduler")


class AutomationState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    RESETTING = "resetting"


@dataclass
class CycleReport:
    """What one automation cycle did."""

    node_id: str
    listed: bool = False
    workload_count: int = 0
    targets: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    auth_failure: bool = False
    interrupted: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "listed": self.listed,
            "workload_count": self.workload_count,
            "targets": self.targets,
            "removed": self.removed,
            "failed": self.failed,
            "auth_failure": self.auth_failure,
            "interrupted": self.interrupted,
            "error": self.error,
        }


class NodeAutomation:
    """Automation state machine and recurring cycle for a single node."""

    def __init__(
        self,
        node: Node,
        *,
        client: NodeApiClient,
        vault: CredentialVault,
        recovery: RecoveryController,
        bus: EventBus,
        prefixes: Sequence[str],
        interval: float = DEFAULT_AUTOMATION_INTERVAL_SECONDS,
        settle_delay: float = DEFAULT_SETTLE_DELAY_SECONDS,
    ) -> None:
        self.node = node
        self.client = client
        self.vault = vault
        self.recovery = recovery
        self.bus = bus
        self.prefixes = tuple(prefixes)
        self.interval = interval
        self.settle_delay = settle_delay
        self.cycle_count = 0
        self.skipped_ticks = 0
        self.last_report: CycleReport | None = None
        self._generation = 0
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[CycleReport] | None = None
        self._main_log = get_tagged_logger(MAIN_TAG, node.node_id)
        self._auto_log = get_tagged_logger(AUTOMATION_TAG, node.node_id)
        self.state = AutomationState.UNAUTHENTICATED

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def node_id(self) -> str:
        return self.node.node_id

    @property
    def state(self) -> AutomationState:
        return self._state

    @state.setter
    def state(self, value: AutomationState) -> None:
        self._state = value
        self.node.state = value.value

    @property
    def timer_armed(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def cycle_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _publish(self, event: Event) -> None:
        if self.bus.is_running:
            await self.bus.publish(event)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def credential_acquired(self, token: str) -> bool:
        """
        Store the credential and schedule automation if none is running.

        Returns:
            True when a new recurring cycle was scheduled
        """
        if self.state is AutomationState.RESETTING:
            self._main_log.info("Ignoring login while the node is being reset.")
            return False

        self._main_log.info("Received LOGIN notification.")
        self.vault.store(self.node_id, token)

        scheduled = False
        if self.state in (AutomationState.SCHEDULED, AutomationState.ACTIVE):
            self._main_log.info("Automation already running; credential updated.")
        else:
            self._generation += 1
            self.state = AutomationState.SCHEDULED
            self._loop_task = asyncio.create_task(
                self._run_loop(self._generation),
                name=f"fluxwarden-automation-{self.node_id}",
            )
            self.node.cycle_handle = self._loop_task
            self._main_log.info("Starting automation in %s seconds...", self.settle_delay)
            scheduled = True

        await self._publish(node_status_changed(self.node_id, True))
        return scheduled

    async def credential_lost(self) -> None:
        """Clean logout: cancel the timer and forget the credential."""
        self._main_log.info("Received LOGOUT notification.")
        if self.timer_armed:
            self._main_log.info("Stopping automation...")
        had_credential = self._teardown()
        if had_credential:
            await self._publish(node_status_changed(self.node_id, False))

    async def version_changed(self, old_version: str | None, new_version: str | None) -> bool:
        """
        Control-plane software changed; existing sessions are presumed invalid.

        Returns:
            False when the version did not actually change
        """
        self.node.control_plane_version = new_version
        if old_version == new_version:
            return False

        self._main_log.warning(
            "Control-plane version changed (%s -> %s); invalidating session.",
            old_version,
            new_version,
        )
        had_credential = self._teardown()
        if had_credential:
            await self._publish(node_status_changed(self.node_id, False))
        return True

    async def force_reset(self, reason: str = "manual refresh") -> RecoveryReport | None:
        """Operator-requested reset through the recovery path."""
        if self.state is AutomationState.RESETTING:
            self._main_log.info("Reset already in progress.")
            return None
        self._main_log.info("Force refresh requested.")
        return await self._reset(self._generation, reason)

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------
    def _stop_timer(self) -> None:
        """Disarm the recurring cycle; an in-flight cycle is left to finish."""
        self._generation += 1
        task = self._loop_task
        self._loop_task = None
        self.node.cycle_handle = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _teardown(self) -> bool:
        self._stop_timer()
        had_credential = self.vault.clear(self.node_id)
        self.state = AutomationState.UNAUTHENTICATED
        return had_credential

    async def _reset(self, generation: int, reason: str) -> RecoveryReport | None:
        if not self._is_current(generation):
            self._auto_log.info("Ignoring %s from a superseded cycle.", reason)
            return None
        self.state = AutomationState.RESETTING
        try:
            return await self.recovery.reset(self.node, self._stop_timer, reason)
        finally:
            self._stop_timer()
            self.state = AutomationState.UNAUTHENTICATED

    async def shutdown(self) -> None:
        """Stop the timer and wait for any in-flight cycle (process exit)."""
        self._stop_timer()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            try:
                await inflight
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Recurring cycle
    # ------------------------------------------------------------------
    async def _run_loop(self, generation: int) -> None:
        await asyncio.sleep(self.settle_delay)
        if self._is_current(generation):
            self._main_log.info("Initial automation cycle starting now.")
        while self._is_current(generation):
            await self._tick(generation)
            if not self._is_current(generation):
                return
            if self.state is AutomationState.SCHEDULED:
                self.state = AutomationState.ACTIVE
            await asyncio.sleep(self.interval)

    async def _tick(self, generation: int) -> None:
        if self.cycle_in_flight:
            self.skipped_ticks += 1
            self._auto_log.warning("Previous cycle still in flight; skipping this tick.")
            return
        self._inflight = asyncio.ensure_future(self.run_cycle(generation))
        # shield: cancelling the timer must not abort a cycle mid-removal
        await asyncio.shield(self._inflight)

    def _current_token(self) -> str | None:
        try:
            return self.vault.retrieve(self.node_id)
        except SealingError as exc:
            self._auto_log.error("%s", exc)
            return None

    async def run_cycle(self, generation: int | None = None) -> CycleReport:
        """
        One list-match-remove pass. Never raises for node-local failures.
        """
        if generation is None:
            generation = self._generation
        log = self._auto_log
        report = CycleReport(node_id=self.node_id)
        self.cycle_count += 1
        log.info("Cycle started.")
        log.info("Checking for target applications to remove...")

        try:
            result = await self.client.list_running(self.node)
            if isinstance(result, ListFailure):
                log.info("Could not retrieve running apps (%s). API might be down.", result.reason)
            names = workload_names(result)
            report.listed = isinstance(result, ListSuccess)
            report.workload_count = len(names)

            if isinstance(result, ListSuccess):
                log.info("Found %d running applications:", len(names))
                for name in names:
                    log.info("  - %s", strip_name(name))
                log.debug("Raw application data: %s", json.dumps(result.raw, default=str))

            attempted: set[str] = set()
            for match in policy_targets(names, self.prefixes):
                if not self._is_current(generation):
                    log.info("Credential withdrawn; ending cycle early.")
                    report.interrupted = True
                    break

                primary = match.primary_name
                if primary in attempted:
                    continue
                attempted.add(primary)
                report.targets.append(primary)
                log.info(
                    "Found target app component: %s (prefix: %s). Attempting to remove main app: %s...",
                    match.name,
                    match.matched_prefix,
                    primary,
                )

                try:
                    outcome = await self.client.remove_workload(self.node, primary, self._current_token())
                except Exception as exc:
                    report.failed[primary] = str(exc) or type(exc).__name__
                    log.exception("Error removing %s: %s", primary, exc)
                    continue
                if outcome.success:
                    report.removed.append(primary)
                    log.info("Removed %s.", primary)
                elif outcome.auth_error:
                    report.auth_failure = True
                    self._main_log.warning(
                        "Authentication failed during removal of %s. Token is invalid.", primary
                    )
                    await self._reset(generation, "authorization failure")
                    break
                else:
                    report.failed[primary] = outcome.error or "unknown error"
                    log.error("Failed to remove %s: %s", primary, outcome.error)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            report.error = str(exc)
            log.exception("Automation cycle failed: %s", exc)

        self.last_report = report
        await self._publish(
            Event(EventType.CYCLE_COMPLETED, report.to_dict(), source="scheduler")
        )
        return report

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "state": self.state.value,
            "timer_armed": self.timer_armed,
            "cycle_in_flight": self.cycle_in_flight,
            "cycle_count": self.cycle_count,
            "skipped_ticks": self.skipped_ticks,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }


class AutomationScheduler:
    """Owns one NodeAutomation per registered node and routes events to it."""

    def __init__(
        self,
        *,
        registry: NodeRegistry,
        client: NodeApiClient,
        vault: CredentialVault,
        recovery: RecoveryController,
        bus: EventBus,
        prefixes: Sequence[str],
        interval: float = DEFAULT_AUTOMATION_INTERVAL_SECONDS,
        settle_delay: float = DEFAULT_SETTLE_DELAY_SECONDS,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.interval = interval
        self.settle_delay = settle_delay
        self._automations: dict[str, NodeAutomation] = {
            node.node_id: NodeAutomation(
                node,
                client=client,
                vault=vault,
                recovery=recovery,
                bus=bus,
                prefixes=prefixes,
                interval=interval,
                settle_delay=settle_delay,
            )
            for node in registry
        }
        self._attached = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: NodeRegistry,
        client: NodeApiClient,
        vault: CredentialVault,
        recovery: RecoveryController,
        bus: EventBus,
    ) -> "AutomationScheduler":
        return cls(
            registry=registry,
            client=client,
            vault=vault,
            recovery=recovery,
            bus=bus,
            prefixes=settings.target_prefixes,
            interval=settings.automation_interval,
            settle_delay=settings.settle_delay,
        )

    def automation(self, node_id: str) -> NodeAutomation:
        automation = self._automations.get(node_id)
        if automation is None:
            raise NodeNotFoundError(node_id)
        return automation

    def automations(self) -> list[NodeAutomation]:
        return list(self._automations.values())

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------
    def attach(self) -> None:
        """Subscribe to inbound collaborator events on the bus."""
        if self._attached:
            return
        self.bus.subscribe(EventType.CREDENTIAL_ACQUIRED, self._on_credential_acquired)
        self.bus.subscribe(EventType.CREDENTIAL_LOST, self._on_credential_lost)
        self.bus.subscribe(EventType.VERSION_CHANGED, self._on_version_changed)
        self.bus.subscribe(EventType.REFRESH_REQUESTED, self._on_refresh_requested)
        self._attached = True

    def _lookup(self, event: Event) -> NodeAutomation | None:
        node_id = event.node_id
        automation = self._automations.get(node_id) if node_id else None
        if automation is None:
            logger.warning("Event %s for unknown node %r ignored.", event.type, node_id)
        return automation

    async def _on_credential_acquired(self, event: Event) -> None:
        automation = self._lookup(event)
        token = event.payload.get("token")
        if automation is None:
            return
        if not token:
            logger.warning("Login event for %s carried no token; ignored.", automation.node_id)
            return
        await automation.credential_acquired(str(token))

    async def _on_credential_lost(self, event: Event) -> None:
        automation = self._lookup(event)
        if automation is not None:
            await automation.credential_lost()

    async def _on_version_changed(self, event: Event) -> None:
        automation = self._lookup(event)
        if automation is not None:
            await automation.version_changed(
                event.payload.get("old_version"),
                event.payload.get("new_version"),
            )

    async def _on_refresh_requested(self, event: Event) -> None:
        automation = self._lookup(event)
        if automation is not None:
            await automation.force_reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def shutdown(self) -> None:
        await asyncio.gather(*(automation.shutdown() for automation in self._automations.values()))
        logger.info("Automation scheduler stopped.")

    def get_status(self) -> dict[str, Any]:
        automations = [automation.to_dict() for automation in self._automations.values()]
        return {
            "interval_seconds": self.interval,
            "settle_delay_seconds": self.settle_delay,
            "active_count": sum(1 for a in automations if a["state"] == AutomationState.ACTIVE.value),
            "nodes": automations,
        }
