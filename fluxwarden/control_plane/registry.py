"""
FLUXWARDEN node registry.

Authoritative in-memory set of discovered nodes and their mutable runtime
state. Built once from discovery output and never resized afterwards.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from fluxwarden.shared.errors import DuplicateNodeError, NodeNotFoundError
from fluxwarden.utils import iso_now


@dataclass
class Node:
    """One discovered control-plane endpoint and its runtime state."""

    node_id: str
    name: str
    ui_url: str
    api_url: str
    host: str = ""
    slot: int = 0
    # Opaque credential bytes (sealed when a secret store is available).
    credential: bytes | None = None
    credential_sealed: bool = False
    # Present iff a recurring automation cycle is scheduled or active.
    cycle_handle: asyncio.Task | None = None
    authenticated: bool = False
    state: str = "unauthenticated"
    control_plane_version: str | None = None
    discovered_at: str = field(default_factory=iso_now)

    @property
    def partition(self) -> str:
        """Isolated browser partition holding this node's session state."""
        return f"persist:{self.node_id}"

    @property
    def has_credential(self) -> bool:
        return self.credential is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "name": self.name,
            "ui_url": self.ui_url,
            "api_url": self.api_url,
            "host": self.host,
            "slot": self.slot,
            "partition": self.partition,
            "has_credential": self.has_credential,
            "authenticated": self.authenticated,
            "state": self.state,
            "control_plane_version": self.control_plane_version,
            "discovered_at": self.discovered_at,
        }


class NodeRegistry:
    """Fixed mapping of node id -> Node, with O(1) lookups."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._nodes: dict[str, Node] = {}
        for node in nodes:
            if node.node_id in self._nodes:
                raise DuplicateNodeError(node.node_id)
            self._nodes[node.node_id] = node

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def list_nodes(self) -> list[dict[str, Any]]:
        return [node.to_dict() for node in self._nodes.values()]

    def authenticated_count(self) -> int:
        return sum(1 for node in self._nodes.values() if node.has_credential)

    def get_fleet_state(self) -> dict[str, Any]:
        nodes = self.list_nodes()
        return {
            "node_count": len(nodes),
            "authenticated_count": self.authenticated_count(),
            "nodes": nodes,
            "generated_at": iso_now(),
        }
