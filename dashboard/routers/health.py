from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from dashboard.dependencies import get_service
from dashboard.schemas import ComponentStatus, HealthResponse
from monitoring.health_checks import HealthState
from orchestrator.core import IngestionService

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health(service: IngestionService = Depends(get_service)):
    """
    Aggregated service health.

    Returns 503 when a critical component (store, publisher) is down
    or no network is healthy.
    """
    report = await service.health_check()
    body = HealthResponse(
        status=report.state.value,
        timestamp=report.checked_at,
        uptime_seconds=round(service.uptime_seconds, 3),
        components=[
            ComponentStatus(
                name=c.name,
                healthy=c.healthy,
                critical=c.critical,
                detail=c.detail,
            )
            for c in report.components
        ],
    )
    status_code = 503 if report.state == HealthState.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
