"""
FLUXWARDEN control-plane primitives.

Node registry, credential vault and the client for each node's
control-plane API. Nothing here schedules work.
"""

from .node_client import ListFailure, ListSuccess, NodeApiClient, RemovalResult
from .registry import Node, NodeRegistry
from .vault import CredentialVault, FernetSecretStore, PassthroughSecretStore, select_secret_store

__all__ = [
    "CredentialVault",
    "FernetSecretStore",
    "ListFailure",
    "ListSuccess",
    "Node",
    "NodeApiClient",
    "NodeRegistry",
    "PassthroughSecretStore",
    "RemovalResult",
    "select_secret_store",
]
