from fastapi import APIRouter, Depends, HTTPException

from core.exceptions import ConfigurationError, PipelineError
from dashboard.dependencies import get_service
from dashboard.schemas import (
    DataResponse,
    NetworkListResponse,
    NetworkStatsResponse,
    NetworkStatus,
    VolumeResponse,
)
from orchestrator.core import IngestionService
from storage.timeseries import parse_window

router = APIRouter(prefix="/api/v1/networks", tags=["Networks"])


@router.get("", response_model=NetworkListResponse)
def list_networks(service: IngestionService = Depends(get_service)):
    """Connection state of every configured network."""
    data = [
        NetworkStatus(**service.get_network_status(name))
        for name in service.network_names()
    ]
    return NetworkListResponse(success=True, data=data)


@router.get("/{network}/stats", response_model=NetworkStatsResponse)
async def get_network_stats(network: str, service: IngestionService = Depends(get_service)):
    stats = await service.get_network_stats(network)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Unknown network: {network}")
    return NetworkStatsResponse(success=True, data=stats)


def _seconds(value: str, name: str) -> int:
    try:
        return parse_window(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {e}")


async def _series_query(network: str, query):
    try:
        result = await query
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=e.message)
    except PipelineError as e:
        raise HTTPException(status_code=503, detail=f"Time series unavailable: {e.message}")
    if result is None:
        raise HTTPException(status_code=404, detail=f"Unknown network: {network}")
    return result


@router.get("/{network}/transactions/stats", response_model=DataResponse)
async def get_transaction_stats(
    network: str,
    window: str = "1h",
    service: IngestionService = Depends(get_service),
):
    """Accepted-transaction count, value and gas over the window (e.g. 15m, 1h, 7d)."""
    window_seconds = _seconds(window, "window")
    data = await _series_query(network, service.get_transaction_stats(network, window_seconds))
    return DataResponse(success=True, data=data)


@router.get("/{network}/blocks/stats", response_model=DataResponse)
async def get_block_stats(
    network: str,
    window: str = "1h",
    service: IngestionService = Depends(get_service),
):
    """Block count, range and average block time over the window."""
    window_seconds = _seconds(window, "window")
    data = await _series_query(network, service.get_block_stats(network, window_seconds))
    return DataResponse(success=True, data=data)


@router.get("/{network}/transactions/volume", response_model=VolumeResponse)
async def get_transaction_volume(
    network: str,
    window: str = "24h",
    bucket: str = "1h",
    service: IngestionService = Depends(get_service),
):
    """Transferred wei summed per bucket, oldest first."""
    window_seconds = _seconds(window, "window")
    bucket_seconds = _seconds(bucket, "bucket")
    data = await _series_query(
        network,
        service.get_transaction_volume(network, window_seconds, bucket_seconds),
    )
    return VolumeResponse(success=True, data=data)
