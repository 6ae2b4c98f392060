"""
FLUXWARDEN — Shared Error Definitions

Common exceptions used across all FLUXWARDEN components.

Transport failures and authorization failures against a node's control
plane are *not* exceptions: the API client reports them as result values
so a single node's trouble never propagates past its own cycle.
"""


class FluxWardenError(Exception):
    """Base exception for all FLUXWARDEN errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(FluxWardenError):
    """Raised when configuration cannot be interpreted at all."""
    pass


class InvalidHostError(ConfigurationError):
    """Raised when a scan target is not a valid address or hostname."""
    def __init__(self, host: str):
        self.host = host
        super().__init__(f"Invalid scan host: {host!r}")


# =============================================================================
# Registry Errors
# =============================================================================
class RegistryError(FluxWardenError):
    """Base exception for node registry errors."""
    pass


class NodeNotFoundError(RegistryError):
    """Raised when a node id is not in the registry."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class DuplicateNodeError(RegistryError):
    """Raised when discovery output contains the same node id twice."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id: {node_id}")


# =============================================================================
# Credential Errors
# =============================================================================
class CredentialError(FluxWardenError):
    """Base exception for credential vault errors."""
    pass


class SealingError(CredentialError):
    """Raised when a sealed credential cannot be unsealed."""
    def __init__(self, node_id: str, reason: str = ""):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Cannot unseal credential for {node_id}: {reason}")
