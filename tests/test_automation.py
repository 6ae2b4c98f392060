"""Per-node automation state machine and cycle tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from fluxwarden.control_plane.node_client import ListFailure, ListSuccess, RemovalResult
from fluxwarden.control_plane.registry import Node, NodeRegistry
from fluxwarden.control_plane.vault import CredentialVault, FernetSecretStore
from fluxwarden.events import EventBus, credential_acquired, credential_lost, refresh_requested
from fluxwarden.scheduler import AutomationScheduler, AutomationState, NodeAutomation
from fluxwarden.sentinel.recovery import RecoveryController
from fluxwarden.shared.errors import NodeNotFoundError
from fluxwarden.shared.logging import RedactingFilter

NODE_ID = "IP01-node03"


class StubClient:
    def __init__(self, names=(), removals: dict[str, RemovalResult] | None = None, list_result=None):
        self.names = list(names)
        self.removals = removals or {}
        self.list_result = list_result
        self.list_calls = 0
        self.removed: list[tuple[str, str | None]] = []
        self.list_gate: asyncio.Event | None = None
        self.remove_gate: asyncio.Event | None = None
        self.remove_errors: dict[str, Exception] = {}

    async def list_running(self, node: Node):
        self.list_calls += 1
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.list_result is not None:
            return self.list_result
        return ListSuccess(names=list(self.names))

    async def remove_workload(self, node: Node, name: str, token: str | None) -> RemovalResult:
        self.removed.append((name, token))
        if self.remove_gate is not None:
            await self.remove_gate.wait()
        if name in self.remove_errors:
            raise self.remove_errors[name]
        return self.removals.get(name, RemovalResult(success=True, status=200))


class StubSurface:
    def __init__(self):
        self.purged: list[str] = []
        self.reloaded: list[str] = []

    async def purge_session(self, node: Node) -> None:
        self.purged.append(node.partition)

    async def reload_display(self, node: Node) -> None:
        self.reloaded.append(node.node_id)


def _node() -> Node:
    return Node(
        node_id=NODE_ID,
        name="IP01-Node03",
        ui_url="http://10.0.0.5:16146",
        api_url="http://10.0.0.5:16147",
    )


def _build(client: StubClient, *, settle_delay: float = 0.05, interval: float = 60.0, prefixes=("foo",)):
    registry = NodeRegistry([_node()])
    vault = CredentialVault(registry, FernetSecretStore(), redactor=RedactingFilter())
    bus = EventBus()
    surface = StubSurface()
    recovery = RecoveryController(vault, bus, surface)
    automation = NodeAutomation(
        registry.require(NODE_ID),
        client=client,
        vault=vault,
        recovery=recovery,
        bus=bus,
        prefixes=prefixes,
        interval=interval,
        settle_delay=settle_delay,
    )
    return automation, vault, surface


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ============================================================================
# State machine
# ============================================================================


@pytest.mark.asyncio
async def test_no_timer_without_credential() -> None:
    automation, vault, _ = _build(StubClient())
    assert automation.state is AutomationState.UNAUTHENTICATED
    assert automation.timer_armed is False
    assert automation.node.cycle_handle is None
    assert automation.node.state == "unauthenticated"


@pytest.mark.asyncio
async def test_settle_delay_then_exactly_one_cycle_then_active() -> None:
    client = StubClient(names=["/foo_MyApp", "/other"])
    automation, _, _ = _build(client, settle_delay=0.1)

    assert await automation.credential_acquired("tok-1") is True
    assert automation.state is AutomationState.SCHEDULED
    assert automation.node.cycle_handle is not None

    await asyncio.sleep(0.03)
    assert client.list_calls == 0

    await _wait_until(lambda: automation.state is AutomationState.ACTIVE)
    assert client.list_calls == 1
    assert client.removed == [("MyApp", "tok-1")]
    assert automation.last_report.removed == ["MyApp"]
    assert automation.timer_armed is True

    await automation.shutdown()
    assert automation.timer_armed is False


@pytest.mark.asyncio
async def test_duplicate_login_does_not_start_second_timer() -> None:
    client = StubClient()
    automation, vault, _ = _build(client, settle_delay=0.05)

    await automation.credential_acquired("tok-1")
    handle = automation.node.cycle_handle
    assert await automation.credential_acquired("tok-2") is False

    assert automation.node.cycle_handle is handle
    assert vault.retrieve(NODE_ID) == "tok-2"

    await _wait_until(lambda: automation.state is AutomationState.ACTIVE)
    await asyncio.sleep(0.05)
    assert client.list_calls == 1
    await automation.shutdown()


@pytest.mark.asyncio
async def test_auth_failure_resets_node_and_stops_timer() -> None:
    client = StubClient(
        names=["/foo_MyApp"],
        removals={"MyApp": RemovalResult(success=False, auth_error=True, error="Unauthorized", status=200)},
    )
    automation, vault, surface = _build(client, settle_delay=0.01, interval=0.05)

    await automation.credential_acquired("tok-1")
    await _wait_until(lambda: automation.last_report is not None)

    assert automation.last_report.auth_failure is True
    assert automation.state is AutomationState.UNAUTHENTICATED
    assert vault.has_credential(NODE_ID) is False
    assert automation.timer_armed is False
    assert automation.node.cycle_handle is None
    assert surface.purged == [f"persist:{NODE_ID}"]
    assert surface.reloaded == [NODE_ID]

    await asyncio.sleep(0.2)
    assert client.list_calls == 1

    # a fresh login re-arms automation
    assert await automation.credential_acquired("tok-2") is True
    await automation.shutdown()


@pytest.mark.asyncio
async def test_logout_cancels_scheduled_cycle_without_reset() -> None:
    client = StubClient(names=["/foo_MyApp"])
    automation, vault, surface = _build(client, settle_delay=0.1)

    await automation.credential_acquired("tok-1")
    await automation.credential_lost()
    await asyncio.sleep(0.2)

    assert client.list_calls == 0
    assert automation.state is AutomationState.UNAUTHENTICATED
    assert vault.has_credential(NODE_ID) is False
    assert surface.purged == []


@pytest.mark.asyncio
async def test_version_change_invalidates_session() -> None:
    client = StubClient()
    automation, vault, surface = _build(client, settle_delay=0.1)
    await automation.credential_acquired("tok-1")

    assert await automation.version_changed("4.0.0", "4.0.0") is False
    assert automation.timer_armed is True

    assert await automation.version_changed("4.0.0", "4.1.0") is True
    assert automation.timer_armed is False
    assert vault.has_credential(NODE_ID) is False
    assert automation.node.control_plane_version == "4.1.0"
    assert surface.purged == []


@pytest.mark.asyncio
async def test_login_during_reset_is_ignored() -> None:
    automation, vault, _ = _build(StubClient())
    automation.state = AutomationState.RESETTING

    assert await automation.credential_acquired("tok-1") is False
    assert vault.has_credential(NODE_ID) is False


# ============================================================================
# Cycle behaviour
# ============================================================================


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped() -> None:
    client = StubClient()
    client.list_gate = asyncio.Event()
    automation, _, _ = _build(client, settle_delay=10)
    await automation.credential_acquired("tok-1")

    first = asyncio.ensure_future(automation._tick(automation._generation))
    await _wait_until(lambda: client.list_calls == 1)
    await automation._tick(automation._generation)

    assert automation.skipped_ticks == 1
    assert client.list_calls == 1

    client.list_gate.set()
    await first
    await automation.shutdown()


@pytest.mark.asyncio
async def test_logout_mid_cycle_stops_remaining_removals() -> None:
    client = StubClient(names=["/foo_A", "/foo_B"])
    client.remove_gate = asyncio.Event()
    automation, vault, surface = _build(client, settle_delay=10)
    await automation.credential_acquired("tok-1")

    cycle = asyncio.ensure_future(automation.run_cycle())
    await _wait_until(lambda: len(client.removed) == 1)
    await automation.credential_lost()
    client.remove_gate.set()
    report = await cycle

    assert report.removed == ["A"]
    assert report.interrupted is True
    assert [name for name, _ in client.removed] == ["A"]
    assert automation.state is AutomationState.UNAUTHENTICATED
    assert surface.purged == []


@pytest.mark.asyncio
async def test_superseded_cycle_cannot_reset_or_rearm_after_relogin() -> None:
    client = StubClient(
        names=["/foo_A", "/foo_B"],
        removals={"A": RemovalResult(success=False, auth_error=True, error="Unauthorized", status=200)},
    )
    client.remove_gate = asyncio.Event()
    automation, vault, surface = _build(client, settle_delay=0.01, interval=60.0)

    await automation.credential_acquired("tok-1")
    await _wait_until(lambda: len(client.removed) == 1)
    old_handle = automation.node.cycle_handle

    await automation.credential_lost()
    assert await automation.credential_acquired("tok-2") is True
    new_handle = automation.node.cycle_handle
    assert new_handle is not old_handle

    # the new loop's first tick finds the old cycle still in flight
    await _wait_until(lambda: automation.skipped_ticks == 1)

    client.remove_gate.set()
    await _wait_until(lambda: not automation.cycle_in_flight)

    assert automation.last_report.auth_failure is True
    assert [name for name, _ in client.removed] == ["A"]
    assert surface.purged == []
    assert surface.reloaded == []
    assert vault.retrieve(NODE_ID) == "tok-2"
    assert old_handle.done()
    assert automation.node.cycle_handle is new_handle
    assert automation.timer_armed is True
    assert automation.state is AutomationState.ACTIVE

    await automation.shutdown()


@pytest.mark.asyncio
async def test_removal_exception_does_not_stop_remaining_targets() -> None:
    client = StubClient(names=["/foo_A", "/foo_B"])
    client.remove_errors["A"] = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
    automation, vault, surface = _build(client)
    vault.store(NODE_ID, "tok-1")

    report = await automation.run_cycle()

    assert [name for name, _ in client.removed] == ["A", "B"]
    assert report.removed == ["B"]
    assert "A" in report.failed
    assert report.error is None
    assert surface.purged == []


@pytest.mark.asyncio
async def test_non_auth_failure_continues_with_next_target() -> None:
    client = StubClient(
        names=["/foo_A", "/foo_B"],
        removals={"A": RemovalResult(success=False, error="HTTP 500", status=500)},
    )
    automation, vault, surface = _build(client)
    vault.store(NODE_ID, "tok-1")

    report = await automation.run_cycle()

    assert report.failed == {"A": "HTTP 500"}
    assert report.removed == ["B"]
    assert report.auth_failure is False
    assert vault.has_credential(NODE_ID) is True
    assert surface.purged == []


@pytest.mark.asyncio
async def test_repeated_primary_is_removed_once_per_cycle() -> None:
    client = StubClient(names=["/foo_web_MyApp", "/foo_db_MyApp"])
    automation, vault, _ = _build(client)
    vault.store(NODE_ID, "tok-1")

    report = await automation.run_cycle()

    assert report.targets == ["MyApp"]
    assert client.removed == [("MyApp", "tok-1")]


@pytest.mark.asyncio
async def test_list_failure_means_nothing_to_remove() -> None:
    client = StubClient(list_result=ListFailure(reason="HTTP 502", status=502))
    automation, vault, _ = _build(client)
    vault.store(NODE_ID, "tok-1")

    report = await automation.run_cycle()

    assert report.listed is False
    assert report.workload_count == 0
    assert client.removed == []


@pytest.mark.asyncio
async def test_client_exception_is_contained_in_cycle() -> None:
    class ExplodingClient(StubClient):
        async def list_running(self, node: Node):
            raise RuntimeError("boom")

    automation, _, _ = _build(ExplodingClient())
    report = await automation.run_cycle()
    assert report.error == "boom"


@pytest.mark.asyncio
async def test_force_reset_runs_recovery() -> None:
    automation, vault, surface = _build(StubClient(), settle_delay=10)
    await automation.credential_acquired("tok-1")

    report = await automation.force_reset()

    assert report is not None and report.ok
    assert vault.has_credential(NODE_ID) is False
    assert automation.timer_armed is False
    assert automation.state is AutomationState.UNAUTHENTICATED
    assert surface.purged == [f"persist:{NODE_ID}"]


# ============================================================================
# Scheduler event routing
# ============================================================================


@pytest.mark.asyncio
async def test_scheduler_routes_bus_events_to_node() -> None:
    registry = NodeRegistry([_node()])
    vault = CredentialVault(registry, FernetSecretStore(), redactor=RedactingFilter())
    bus = EventBus()
    surface = StubSurface()
    scheduler = AutomationScheduler(
        registry=registry,
        client=StubClient(),
        vault=vault,
        recovery=RecoveryController(vault, bus, surface),
        bus=bus,
        prefixes=("foo",),
        settle_delay=10,
    )
    scheduler.attach()
    await bus.start()
    try:
        await bus.publish(credential_acquired("IP09-node01", "tok-x"))
        await bus.publish(credential_acquired(NODE_ID, "tok-1"))
        await bus.join()
        assert scheduler.automation(NODE_ID).state is AutomationState.SCHEDULED
        assert vault.retrieve(NODE_ID) == "tok-1"

        await bus.publish(credential_lost(NODE_ID))
        await bus.join()
        assert scheduler.automation(NODE_ID).state is AutomationState.UNAUTHENTICATED

        await bus.publish(credential_acquired(NODE_ID, "tok-2"))
        await bus.publish(refresh_requested(NODE_ID))
        await bus.join()
        assert vault.has_credential(NODE_ID) is False
        assert surface.purged == [f"persist:{NODE_ID}"]

        status = scheduler.get_status()
        assert status["nodes"][0]["node_id"] == NODE_ID
        with pytest.raises(NodeNotFoundError):
            scheduler.automation("IP09-node01")
    finally:
        await scheduler.shutdown()
        await bus.stop()
