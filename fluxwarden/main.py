"""
FLUXWARDEN — Main Entry Point

Wires all components together and provides the startup sequence:
discover nodes, build the registry, then wait for credential events and
run each authenticated node's compliance cycle.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from fluxwarden.control_plane import (
    CredentialVault,
    NodeApiClient,
    NodeRegistry,
    select_secret_store,
)
from fluxwarden.discovery import DiscoveryScanner
from fluxwarden.events import Event, EventBus
from fluxwarden.scheduler import AutomationScheduler
from fluxwarden.sentinel.recovery import DisplaySurface, RecoveryController
from fluxwarden.shared.logging import MAIN_TAG, get_tagged_logger, setup_logging
from fluxwarden.shared.settings import PROJECT_NAME, VERSION, Settings, load_settings

logger = logging.getLogger("fluxwarden.main")


class FluxWardenApp:
    """
    Process root. Owns the registry and passes it to every component.

    Example:
        app = await FluxWardenApp.create(load_settings())
        await app.submit(credential_acquired("IP01-node01", token))
        ...
        await app.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        client: NodeApiClient,
        registry: NodeRegistry,
        vault: CredentialVault,
        bus: EventBus,
        recovery: RecoveryController,
        scheduler: AutomationScheduler,
    ):
        self.settings = settings
        self.client = client
        self.registry = registry
        self.vault = vault
        self.bus = bus
        self.recovery = recovery
        self.scheduler = scheduler

    @classmethod
    async def create(
        cls,
        settings: Settings,
        client: NodeApiClient | None = None,
        surface: DisplaySurface | None = None,
    ) -> "FluxWardenApp":
        """
        Discover nodes and initialize every component.

        Args:
            settings: Loaded configuration
            client: Control-plane API client (default built from settings)
            surface: Session/display collaborator (default: requests over the bus)
        """
        logger.info("=" * 60)
        logger.info("%s %s - Starting initialization", PROJECT_NAME, VERSION)
        logger.info("=" * 60)

        client = client or NodeApiClient(
            timeout_seconds=settings.request_timeout,
            auth_header=settings.auth_header,
            debug=settings.debug,
        )
        scanner = DiscoveryScanner(probe=client.probe)
        nodes = await scanner.discover(settings.scan_hosts)
        registry = NodeRegistry(nodes)

        vault = CredentialVault(registry, select_secret_store(settings.seal_credentials))

        bus = EventBus()
        recovery = RecoveryController(vault, bus, surface)
        scheduler = AutomationScheduler.from_settings(
            settings,
            registry=registry,
            client=client,
            vault=vault,
            recovery=recovery,
            bus=bus,
        )
        scheduler.attach()
        await bus.start()

        logger.info(
            "Initialization complete: %d nodes, interval %ss, prefixes %s",
            len(registry),
            settings.automation_interval,
            ", ".join(settings.target_prefixes) or "(none)",
        )
        return cls(settings, client, registry, vault, bus, recovery, scheduler)

    async def submit(self, event: Event) -> None:
        """Hand an inbound collaborator event to the engine."""
        await self.bus.publish(event)

    def node_summaries(self) -> list[dict[str, Any]]:
        return [
            {
                "id": node.node_id,
                "name": node.name,
                "ui_url": node.ui_url,
                "api_url": node.api_url,
                "partition": node.partition,
                "has_credential": node.has_credential,
                "state": node.state,
            }
            for node in self.registry
        ]

    def get_health(self) -> dict[str, Any]:
        return {
            "status": "ok" if len(self.registry) else "no_nodes",
            "node_count": len(self.registry),
            "authenticated_count": self.registry.authenticated_count(),
            "credential_sealing": not self.vault.degraded,
            "event_bus": self.bus.stats(),
        }

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("%s - Shutting down...", PROJECT_NAME)
        await self.scheduler.shutdown()
        await self.bus.stop()
        logger.info("%s - Shutdown complete", PROJECT_NAME)


# Entry point
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fluxwarden",
        description="Discover Flux nodes and remove workloads matching disallowed prefixes.",
    )
    parser.add_argument("--settings", help="Path to settings.ini (default: ./settings.ini)")
    parser.add_argument("--host", help="Event API bind host")
    parser.add_argument("--port", type=int, help="Event API bind port")
    return parser.parse_args(argv)


async def run(settings: Settings, host: str | None = None, port: int | None = None) -> int:
    import uvicorn

    from fluxwarden.api.main import app as api_app
    from fluxwarden.api.routes import app_state

    engine = await FluxWardenApp.create(settings)
    if not len(engine.registry):
        get_tagged_logger(MAIN_TAG).error(
            "No active Flux nodes found on the configured hosts. Shutting down."
        )
        await engine.shutdown()
        return 1

    app_state.engine = engine
    config = uvicorn.Config(
        api_app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level="debug" if settings.debug else "info",
    )
    try:
        await uvicorn.Server(config).serve()
    finally:
        app_state.engine = None
        await engine.shutdown()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.settings)
    setup_logging(settings.effective_log_level)
    return asyncio.run(run(settings, args.host, args.port))


if __name__ == "__main__":
    sys.exit(main())
