"""
Metrics Read API

Cache-aside read endpoints used by the dashboard UI:
- GET /dashboard/{user_id}
- GET /metrics/{user_id}/{timeframe}

Contract:
- Cache hit: 200 with the cached data, Cache-Control and ETag headers.
  A matching If-None-Match returns 304. Nothing is written on this path.
- Cache miss (absent, expired, or the cache could not be read): a
  background recompute is triggered and 202 "processing" is returned
  straight away with a Retry-After hint. The request never waits for
  the calculation.
- Invalid input: 400 before the cache is touched.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from thanalytica.cache.headers import (
    CacheHeadersBuilder,
    check_not_modified,
    envelope_etag,
    processing_headers,
)
from thanalytica.cache.service import CacheStoreError
from thanalytica.container import ServiceContainer
from thanalytica.metrics.engine import Timeframe
from thanalytica.utils.clock import from_iso

from api.dependencies import get_container, is_valid_user_id

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Metrics"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CachedDataResponse(BaseModel):
    """Served from cache."""
    data: Dict[str, Any]
    cached: bool = True
    lastUpdated: str
    executionTime: int = Field(..., description="Handler time in milliseconds")
    timeframe: Optional[str] = None


class ProcessingResponse(BaseModel):
    """Cache is being rebuilt; retry later."""
    message: str
    status: str = "processing"
    retryAfter: int
    executionTime: int


class ErrorResponse(BaseModel):
    error: str


# =============================================================================
# HELPERS
# =============================================================================

def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def _processing(container: ServiceContainer, message: str, start: float) -> JSONResponse:
    retry_after = container.settings.RETRY_AFTER_SECONDS
    body = ProcessingResponse(
        message=message,
        retryAfter=retry_after,
        executionTime=_elapsed_ms(start),
    )
    return JSONResponse(
        status_code=202,
        content=body.model_dump(),
        headers=processing_headers(retry_after),
    )


def _cached(
    request: Request,
    container: ServiceContainer,
    user_id: str,
    cache_key: str,
    envelope: Dict[str, Any],
    preset: str,
    start: float,
    timeframe: Optional[str] = None,
):
    last_updated = envelope["lastUpdated"]
    body = CachedDataResponse(
        data=envelope["data"],
        lastUpdated=last_updated,
        executionTime=_elapsed_ms(start),
        timeframe=timeframe,
    ).model_dump(exclude_none=timeframe is None)

    if not container.cache.config.http_cache_enabled:
        return JSONResponse(status_code=200, content=body,
                            headers=CacheHeadersBuilder("realtime").build())

    not_modified = check_not_modified(
        request, envelope_etag(user_id, cache_key, envelope), from_iso(last_updated)
    )
    if not_modified:
        return not_modified

    headers = CacheHeadersBuilder(preset).for_envelope(user_id, cache_key, envelope).build()
    return JSONResponse(status_code=200, content=body, headers=headers)


def _read(container: ServiceContainer, user_id: str, sub_cache) -> Optional[Dict[str, Any]]:
    """Cache read where a store failure counts as a miss."""
    try:
        return container.cache.get_sub_cache(user_id, sub_cache)
    except CacheStoreError as e:
        logger.warning(f"Cache read failed for {user_id}, treating as miss: {e}")
        return None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get(
    "/dashboard/{user_id}",
    response_model=CachedDataResponse,
    responses={202: {"model": ProcessingResponse}, 400: {"model": ErrorResponse}},
)
def get_dashboard(
    user_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Dashboard summary for a user.

    Hero metrics, quick stats, recent achievements, next actions and
    correlation highlights, served from the 1-hour dashboard cache.
    """
    start = time.perf_counter()

    if not is_valid_user_id(user_id):
        return _error(400, "Invalid userId")

    try:
        envelope = _read(container, user_id, "dashboard_cache")
        if envelope is None:
            container.dispatcher.trigger(user_id)
            return _processing(
                container,
                "Dashboard is being calculated. Please try again in a few seconds.",
                start,
            )

        return _cached(request, container, user_id, "dashboard", envelope, "dashboard", start)

    except Exception as e:
        logger.error(f"Dashboard request failed for {user_id}: {e}")
        return _error(500, "Internal server error")


@router.get(
    "/metrics/{user_id}/{timeframe}",
    response_model=CachedDataResponse,
    responses={202: {"model": ProcessingResponse}, 400: {"model": ErrorResponse}},
)
def get_metrics(
    user_id: str,
    timeframe: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """
    Metrics for one timeframe: daily, weekly, monthly or lifetime.

    A miss recomputes only that timeframe (plus the dashboard built on it).
    """
    start = time.perf_counter()

    try:
        period = Timeframe(timeframe)
    except ValueError:
        period = None
    if period is None or not is_valid_user_id(user_id):
        return _error(400, "Invalid parameters")

    try:
        envelope = _read(container, user_id, period.sub_cache)
        if envelope is None:
            container.dispatcher.trigger(user_id, period.value)
            return _processing(
                container,
                f"{period.value.capitalize()} metrics are being calculated. Please try again shortly.",
                start,
            )

        return _cached(
            request, container, user_id, period.sub_cache.value, envelope, "metrics", start,
            timeframe=period.value,
        )

    except Exception as e:
        logger.error(f"Metrics request failed for {user_id}/{timeframe}: {e}")
        return _error(500, "Internal server error")
