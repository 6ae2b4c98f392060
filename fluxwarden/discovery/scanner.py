"""
FLUXWARDEN Discovery Scanner

Finds live Flux nodes on the configured hosts. Each host exposes up to
eight nodes on a fixed port scheme:

    slot i (0..7): UI port = 16126 + 10*i, API port = UI port + 1

Every slot of every host is probed concurrently, so a full scan takes about
one probe timeout regardless of the number of hosts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from fluxwarden.control_plane.registry import Node
from fluxwarden.shared.logging import DISCOVERY_TAG, get_tagged_logger

BASE_UI_PORT = 16126
SLOT_PORT_STEP = 10
SLOTS_PER_HOST = 8

ProbeFn = Callable[[str], Awaitable[bool]]

logger = get_tagged_logger(DISCOVERY_TAG)


@dataclass(frozen=True)
class Slot:
    """One candidate node position on a host."""

    index: int
    ui_port: int
    api_port: int

    @property
    def number(self) -> str:
        """Two-digit, one-based slot number used in node ids."""
        return f"{self.index + 1:02d}"


def slot_ports(index: int, base_port: int = BASE_UI_PORT) -> Slot:
    ui_port = base_port + index * SLOT_PORT_STEP
    return Slot(index=index, ui_port=ui_port, api_port=ui_port + 1)


def candidate_slots(base_port: int = BASE_UI_PORT, count: int = SLOTS_PER_HOST) -> list[Slot]:
    return [slot_ports(i, base_port) for i in range(count)]


def host_label(position: int) -> str:
    """IP01, IP02, ... for hosts in configured order (0-based position)."""
    return f"IP{position + 1:02d}"


def _url_host(host: str) -> str:
    # bare IPv6 literals need brackets inside URLs
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def build_node(host: str, label: str, slot: Slot) -> Node:
    url_host = _url_host(host)
    return Node(
        node_id=f"{label}-node{slot.number}",
        name=f"{label}-Node{slot.number}",
        ui_url=f"http://{url_host}:{slot.ui_port}",
        api_url=f"http://{url_host}:{slot.api_port}",
        host=host,
        slot=slot.index,
    )


class DiscoveryScanner:
    """
    Probes host x slot pairs and returns the live nodes.

    Never raises for unreachable hosts: a host with no live slot simply
    contributes no nodes.
    """

    def __init__(
        self,
        probe: ProbeFn,
        base_port: int = BASE_UI_PORT,
        slots_per_host: int = SLOTS_PER_HOST,
    ) -> None:
        """
        Args:
            probe: async callable(api_url) -> bool, usually NodeApiClient.probe
            base_port: UI port of slot 0
            slots_per_host: number of slots probed per host
        """
        self.probe = probe
        self.base_port = base_port
        self.slots_per_host = slots_per_host

    async def _probe_slot(self, host: str, label: str, slot: Slot) -> Node | None:
        node = build_node(host, label, slot)
        logger.debug("Checking for node at %s...", node.api_url)
        try:
            alive = await self.probe(node.api_url)
        except Exception as exc:
            logger.debug("Probe of %s raised %s; treating as absent", node.api_url, exc)
            return None
        if not alive:
            return None
        logger.info("Found active node: %s at %s", node.name, node.api_url)
        return node

    async def scan_host(self, host: str, label: str) -> list[Node]:
        """Probe all slots of one host concurrently, results in slot order."""
        logger.info("Starting node discovery on %s (%s)", host, label)
        slots = candidate_slots(self.base_port, self.slots_per_host)
        results = await asyncio.gather(*(self._probe_slot(host, label, slot) for slot in slots))
        return [node for node in results if node is not None]

    async def discover(self, hosts: Sequence[str]) -> list[Node]:
        """
        Scan every host; nodes grouped by host in input order, then by slot.
        """
        if not hosts:
            logger.warning("No scan hosts configured.")
            return []

        per_host = await asyncio.gather(
            *(self.scan_host(host, host_label(position)) for position, host in enumerate(hosts))
        )
        nodes = [node for host_nodes in per_host for node in host_nodes]
        logger.info("Discovery complete. Found %d active nodes.", len(nodes))
        return nodes
