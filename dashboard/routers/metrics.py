from fastapi import APIRouter, Depends

from dashboard.dependencies import get_service
from dashboard.schemas import DataResponse, PerformanceMetrics, PerformanceResponse
from orchestrator.core import IngestionService

router = APIRouter(prefix="/api/v1/metrics", tags=["Metrics"])


@router.get("/stats", response_model=DataResponse)
def get_stats(service: IngestionService = Depends(get_service)):
    """Counter and gauge summary across all networks."""
    return DataResponse(success=True, data=service.metrics.get_summary())


@router.get("/performance", response_model=PerformanceResponse)
def get_performance(service: IngestionService = Depends(get_service)):
    """Throughput and error rate over the rolling window."""
    return PerformanceResponse(
        success=True,
        data=PerformanceMetrics(**service.metrics.get_performance_metrics()),
    )
