"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics for capacity planning
- Manual invalidation for debugging or data corrections
- Recompute trigger for a single user
- Batch job trigger (normally run by the scheduler)
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from thanalytica.cache.service import CacheStoreError
from thanalytica.container import ServiceContainer
from thanalytica.jobs.batch import JobAbortedError
from thanalytica.metrics.engine import Timeframe

from api.dependencies import get_container, is_valid_user_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cache", tags=["Cache Management"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    backend: str = Field(..., description="Database dialect backing the cache")
    cached_users: int = Field(default=0, description="Number of cache records")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    enabled: bool
    total_documents: int
    oversized_documents: int
    total_size: int
    average_size: int
    hits: int
    misses: int
    writes: int
    hit_rate_percent: float


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    user_id: str
    sub_caches_invalidated: List[str] = []
    duration_ms: float


class RecomputeResponse(BaseModel):
    """Recompute trigger response."""
    user_id: str
    timeframe: Optional[str] = None
    status: str = Field(..., description="scheduled or already_running")


class JobTriggerResponse(BaseModel):
    """Batch job trigger response."""
    job: str
    status: str = "started"


# =============================================================================
# ENDPOINTS
# =============================================================================

def _require_user_id(user_id: str) -> None:
    if not is_valid_user_id(user_id):
        raise HTTPException(status_code=400, detail="Invalid userId")


@router.get("/health", response_model=CacheHealthResponse)
def cache_health_check(container: ServiceContainer = Depends(get_container)):
    """
    Check cache infrastructure health.

    Use this endpoint for monitoring and alerting systems.
    """
    health = container.cache.health_check()

    return CacheHealthResponse(
        status="healthy" if health["healthy"] else "unhealthy",
        backend=container.db_engine.dialect.name,
        cached_users=health.get("cached_users", 0),
        timestamp=container.clock(),
    )


@router.get("/stats", response_model=CacheStatsResponse)
def get_cache_stats(container: ServiceContainer = Depends(get_container)):
    """
    Get current cache statistics.

    Hit/miss counters are per process and reset on restart.
    """
    try:
        stats = container.cache.get_cache_stats()
    except CacheStoreError as e:
        logger.error(f"Failed to read cache stats: {e}")
        raise HTTPException(status_code=503, detail="Cache store unavailable")

    return CacheStatsResponse(enabled=container.cache.config.enabled, **stats)


@router.post("/invalidate/{user_id}", response_model=InvalidationResponse)
def invalidate_user_cache(
    user_id: str,
    sub_caches: Optional[List[str]] = Query(
        default=None,
        description="Sub-caches to clear (daily, weekly, monthly, lifetime, dashboard). All when omitted.",
    ),
    container: ServiceContainer = Depends(get_container),
):
    """
    Invalidate cached metrics for a user.

    Use this after manual data corrections. The next read returns 202 and
    triggers a recompute.
    """
    _require_user_id(user_id)
    start = time.perf_counter()

    try:
        cleared = container.cache.invalidate_cache(user_id, sub_caches)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CacheStoreError as e:
        logger.error(f"Manual invalidation failed for {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Cache store unavailable")

    return InvalidationResponse(
        success=True,
        user_id=user_id,
        sub_caches_invalidated=cleared,
        duration_ms=(time.perf_counter() - start) * 1000,
    )


@router.post("/recompute/{user_id}", response_model=RecomputeResponse, status_code=202)
def trigger_recompute(
    user_id: str,
    timeframe: Optional[str] = Query(default=None, description="Single timeframe to recompute"),
    container: ServiceContainer = Depends(get_container),
):
    """
    Recompute a user's metrics in the background.

    Shares the single-flight guard with the read endpoints, so a recompute
    already running for the user is not duplicated.
    """
    _require_user_id(user_id)
    if timeframe is not None:
        try:
            timeframe = Timeframe(timeframe).value
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid timeframe: {timeframe}")

    started = container.dispatcher.trigger(user_id, timeframe)

    return RecomputeResponse(
        user_id=user_id,
        timeframe=timeframe,
        status="scheduled" if started else "already_running",
    )


@router.post("/jobs/{job_name}", response_model=JobTriggerResponse, status_code=202)
def trigger_job(
    job_name: str,
    background_tasks: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
):
    """
    Run one of the batch jobs now.

    Jobs: daily-recompute, weekly-correlation, cache-cleanup.
    The job runs after the response is sent; its report is logged.
    """
    if job_name not in container.jobs.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")

    def job_task():
        try:
            report = container.jobs.run_job(job_name)
            logger.info(f"Manual job {job_name} finished: {_summary(report.to_dict())}")
        except JobAbortedError as e:
            logger.error(f"Manual job {job_name} aborted: {e}")
        except Exception as e:
            logger.error(f"Manual job {job_name} failed: {e}")

    background_tasks.add_task(job_task)

    return JobTriggerResponse(job=job_name)


def _summary(report: Dict[str, Any]) -> str:
    return (
        f"{report['succeeded']}/{report['users_total']} users succeeded, "
        f"{report['failed']} failed"
    )
