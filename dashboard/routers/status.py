from fastapi import APIRouter, Depends

from dashboard.dependencies import get_service
from dashboard.schemas import DataResponse
from orchestrator.core import IngestionService

router = APIRouter(prefix="/api/v1", tags=["Status"])


@router.get("/status", response_model=DataResponse)
def get_status(service: IngestionService = Depends(get_service)):
    """
    Service status: running flag, uptime, per-network state and
    publisher / filter / risk / dedup counters.
    """
    return DataResponse(success=True, data=service.get_status())
