"""
FLUXWARDEN API Routes - collaborator event endpoints.

The embedded UI, login capture and operators talk to the engine through
these handlers. Every state change is published on the event bus; the
scheduler picks it up from there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Query

from fluxwarden.api import schemas
from fluxwarden.events import (
    Event,
    credential_acquired,
    credential_lost,
    refresh_requested,
    version_changed,
)
from fluxwarden.main import FluxWardenApp
from fluxwarden.shared.errors import NodeNotFoundError
from fluxwarden.shared.logging import get_log_history
from fluxwarden.shared.settings import VERSION

logger = logging.getLogger("fluxwarden.api")

router = APIRouter(prefix="/v1", tags=["fluxwarden"])


@dataclass
class AppState:
    """Application state container."""

    engine: FluxWardenApp | None = None
    # True when the API lifespan created the engine and must shut it down.
    owns_engine: bool = False


app_state = AppState()


def get_engine() -> FluxWardenApp:
    """Dependency: Get the running engine."""
    if app_state.engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return app_state.engine


def _require_node(engine: FluxWardenApp, node_id: str) -> None:
    try:
        engine.registry.require(node_id)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def _submit(engine: FluxWardenApp, event: Event) -> schemas.EventAccepted:
    if not engine.bus.is_running:
        raise HTTPException(status_code=503, detail="Event bus not running")
    await engine.submit(event)
    return schemas.EventAccepted(node_id=event.node_id or "", event=event.type)


@router.get("/health", response_model=schemas.HealthResponse)
async def health(engine: FluxWardenApp = Depends(get_engine)) -> schemas.HealthResponse:
    return schemas.HealthResponse(version=VERSION, **engine.get_health())


@router.get("/nodes", response_model=schemas.NodeListResponse)
async def list_nodes(engine: FluxWardenApp = Depends(get_engine)) -> schemas.NodeListResponse:
    """Node summaries for rendering UI slots."""
    summaries = [schemas.NodeSummary(**item) for item in engine.node_summaries()]
    return schemas.NodeListResponse(nodes=summaries, count=len(summaries))


@router.post(
    "/nodes/{node_id}/credential",
    response_model=schemas.EventAccepted,
    status_code=202,
)
async def post_credential(
    node_id: str,
    request: schemas.CredentialRequest,
    engine: FluxWardenApp = Depends(get_engine),
) -> schemas.EventAccepted:
    """Login captured: hand the credential to the engine."""
    _require_node(engine, node_id)
    return await _submit(engine, credential_acquired(node_id, request.token, source="api"))


@router.delete(
    "/nodes/{node_id}/credential",
    response_model=schemas.EventAccepted,
    status_code=202,
)
async def delete_credential(
    node_id: str,
    engine: FluxWardenApp = Depends(get_engine),
) -> schemas.EventAccepted:
    """Clean logout."""
    _require_node(engine, node_id)
    return await _submit(engine, credential_lost(node_id, source="api"))


@router.post(
    "/nodes/{node_id}/version",
    response_model=schemas.EventAccepted,
    status_code=202,
)
async def post_version(
    node_id: str,
    request: schemas.VersionChangeRequest,
    engine: FluxWardenApp = Depends(get_engine),
) -> schemas.EventAccepted:
    _require_node(engine, node_id)
    return await _submit(
        engine,
        version_changed(node_id, request.old_version, request.new_version, source="api"),
    )


@router.post(
    "/nodes/{node_id}/refresh",
    response_model=schemas.EventAccepted,
    status_code=202,
)
async def post_refresh(
    node_id: str,
    engine: FluxWardenApp = Depends(get_engine),
) -> schemas.EventAccepted:
    """Operator-forced reset: purge the session and reload the node's display."""
    _require_node(engine, node_id)
    logger.info("Manual refresh requested for %s", node_id)
    return await _submit(engine, refresh_requested(node_id, source="api"))


@router.get("/logs", response_model=schemas.LogsResponse)
async def get_logs(
    limit: int = Query(100, ge=1, le=500),
    engine: FluxWardenApp = Depends(get_engine),
) -> schemas.LogsResponse:
    """Most recent redacted log lines."""
    lines = get_log_history().history(limit)
    return schemas.LogsResponse(lines=lines, count=len(lines))
