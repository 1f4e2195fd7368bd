"""
Pydantic schemas for the status API responses.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =======================
# COMMON
# =======================

class BaseResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class DataResponse(BaseResponse):
    data: Any = None


# =======================
# 1. HEALTH
# =======================

class ComponentStatus(BaseModel):
    name: str
    healthy: bool
    critical: bool = False
    detail: str = ""


class HealthResponse(BaseModel):
    status: str  # healthy, degraded, unhealthy, unknown
    timestamp: datetime
    uptime_seconds: float = 0
    version: str = "1.0.0"
    components: List[ComponentStatus] = Field(default_factory=list)


# =======================
# 2. NETWORKS
# =======================

class NetworkStatus(BaseModel):
    name: str
    chain_id: int
    status: str  # disconnected, connecting, connected, degraded
    connected: bool
    is_healthy: bool
    enabled: bool = True
    source: str  # push, poll
    latest_block: Optional[int] = None
    last_processed: Optional[int] = None
    consecutive_errors: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_update_time: datetime
    disabled_reason: Optional[str] = None


class NetworkListResponse(BaseResponse):
    data: List[NetworkStatus]


class NetworkStatsResponse(BaseResponse):
    data: Dict[str, Any]


# =======================
# 3. METRICS
# =======================

class PerformanceMetrics(BaseModel):
    processed_tx_per_second: float
    processed_blocks_per_hour: float
    error_rate: float
    avg_processing_time_ms: float


class PerformanceResponse(BaseResponse):
    data: PerformanceMetrics


# =======================
# 4. TIME SERIES
# =======================

class VolumeBucket(BaseModel):
    bucket_start: int  # unix seconds
    count: int
    value: str  # wei, decimal string


class VolumeResponse(BaseResponse):
    data: List[VolumeBucket]
