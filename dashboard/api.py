"""
Dashboard - API.

============================================================
RESPONSIBILITY
============================================================
Read-only REST surface over a running IngestionService.

- /health               aggregated health (503 when unhealthy)
- /api/v1/status        service status
- /api/v1/networks      per-network connection state and
                        windowed block / transaction stats
- /api/v1/metrics/*     counters and performance
- /api/v1/admin/config  running configuration (secrets masked)
============================================================
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orchestrator.core import IngestionService

from .routers import admin, health, metrics, networks, status

logger = logging.getLogger(__name__)


def create_app(service: IngestionService) -> FastAPI:
    """
    Build the status application bound to a service instance.

    Args:
        service: The running (or about to run) ingestion service
    """
    app = FastAPI(
        title="Chain Ingestion Status API",
        description="Health, network state and metrics of the ingestion pipeline",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.service = service

    app.include_router(health.router)
    app.include_router(status.router)
    app.include_router(networks.router)
    app.include_router(metrics.router)
    app.include_router(admin.router)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "service": "Chain Ingestion Status API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    return app
