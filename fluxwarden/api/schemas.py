"""
FLUXWARDEN API Schemas - Pydantic models for the collaborator event API.

Defines request/response models for:
- POST /v1/nodes/{id}/credential - Login captured in a node's UI
- POST /v1/nodes/{id}/version - Control-plane version observed
- GET /v1/nodes, GET /v1/health, GET /v1/logs
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Requests
# ============================================================================


class CredentialRequest(BaseModel):
    """Credential captured from a node's embedded UI after login."""

    token: str = Field(..., min_length=1, description="Opaque zelidauth value")


class VersionChangeRequest(BaseModel):
    old_version: Optional[str] = None
    new_version: Optional[str] = None


# ============================================================================
# Responses
# ============================================================================


class NodeSummary(BaseModel):
    """Per-node summary used to render UI slots (never includes the credential)."""

    id: str
    name: str
    ui_url: str
    api_url: str
    partition: str
    has_credential: bool
    state: str


class NodeListResponse(BaseModel):
    nodes: list[NodeSummary]
    count: int


class EventAccepted(BaseModel):
    """Acknowledgement that an inbound event was queued for the engine."""

    node_id: str
    event: str
    accepted: bool = True


class HealthResponse(BaseModel):
    status: str
    version: str
    node_count: int
    authenticated_count: int
    credential_sealing: bool
    event_bus: dict[str, Any] = Field(default_factory=dict)


class LogsResponse(BaseModel):
    lines: list[str]
    count: int
