"""
FLUXWARDEN FastAPI Service - Main Application.

Event API for the embedded UI, login capture and operators.

Usage:
    # Standalone (runs discovery in the lifespan)
    uvicorn fluxwarden.api.main:app --host 127.0.0.1 --port 8770

    # Normally started by `fluxwarden`, which discovers nodes first
    # and exits when none are found.

Endpoints:
    GET /v1/health - Health check
    GET /v1/nodes - Node summaries
    POST /v1/nodes/{id}/credential - Login captured
    DELETE /v1/nodes/{id}/credential - Logout
    POST /v1/nodes/{id}/version - Control-plane version observed
    POST /v1/nodes/{id}/refresh - Force a reset
    GET /v1/logs - Recent log lines
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fluxwarden.api.routes import app_state, router
from fluxwarden.main import FluxWardenApp
from fluxwarden.shared.logging import setup_logging
from fluxwarden.shared.settings import PROJECT_NAME, VERSION, load_settings

logger = logging.getLogger("fluxwarden.api")


# ============================================================================
# Lifespan Management
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Reuses an engine the entry point already built; otherwise discovers
    nodes and builds one here.
    """
    # ---- Startup ----
    logger.info("%s API starting...", PROJECT_NAME)

    if app_state.engine is None:
        settings = load_settings()
        setup_logging(settings.effective_log_level)
        app_state.engine = await FluxWardenApp.create(settings)
        app_state.owns_engine = True
        if not len(app_state.engine.registry):
            logger.error("No active Flux nodes found; event endpoints will reject every node.")

    logger.info("%s API ready", PROJECT_NAME)

    yield

    # ---- Shutdown ----
    logger.info("%s API shutting down...", PROJECT_NAME)
    if app_state.owns_engine and app_state.engine is not None:
        await app_state.engine.shutdown()
        app_state.engine = None
        app_state.owns_engine = False
    logger.info("%s API shutdown complete", PROJECT_NAME)


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title=f"{PROJECT_NAME} API",
    description="Flux node discovery and workload compliance engine",
    version=VERSION,
    lifespan=lifespan,
)

# The embedded UI runs on localhost ports.
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/")
async def root():
    return {
        "service": f"{PROJECT_NAME} API",
        "version": VERSION,
        "status": "running",
        "docs": "/docs",
    }
