"""Network discovery of Flux nodes."""

from .scanner import BASE_UI_PORT, SLOTS_PER_HOST, DiscoveryScanner

__all__ = ["BASE_UI_PORT", "SLOTS_PER_HOST", "DiscoveryScanner"]
