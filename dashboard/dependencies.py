"""
Shared FastAPI dependencies.
"""
from fastapi import HTTPException, Request

from orchestrator.core import IngestionService


def get_service(request: Request) -> IngestionService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ingestion service not attached")
    return service
