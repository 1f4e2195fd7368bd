from fastapi import APIRouter, Depends

from dashboard.dependencies import get_service
from dashboard.schemas import DataResponse
from orchestrator.core import IngestionService

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])


@router.get("/config", response_model=DataResponse)
def get_config(service: IngestionService = Depends(get_service)):
    """
    Running configuration, read only.

    The Redis password and any credentials in RPC / WebSocket
    URLs are masked.
    """
    return DataResponse(success=True, data=service.get_config_view())
