"""
FLUXWARDEN — Flux Fleet Discovery & Automation Engine

Finds Flux nodes on configured hosts, holds their login credentials and
keeps removing running workloads whose names match disallowed prefixes.

Main Components:
- fluxwarden.discovery: Slot probing and node construction
- fluxwarden.control_plane: Node registry, credential vault, node API client
- fluxwarden.policy: Prefix matching and primary-name derivation
- fluxwarden.scheduler: Per-node automation state machine and cycles
- fluxwarden.sentinel: Reset/recovery after credential invalidation
- fluxwarden.events: Event bus for collaborator events
- fluxwarden.api: FastAPI event ingress
- fluxwarden.shared: Settings, logging, errors

Usage:
    from fluxwarden.shared.settings import load_settings
    from fluxwarden.shared.logging import setup_logging

    settings = load_settings()
    setup_logging(settings.effective_log_level)
"""

# Version
__version__ = "1.0.0"
