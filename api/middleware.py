"""
Request Timeout Middleware

Caps how long a request may take. Requests over the limit get a 504.

Only the request is abandoned: background recomputes run on the
dispatcher's own thread pool and are not affected.
"""

import asyncio
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """
    Returns 504 when a request exceeds ``timeout_seconds``.

    Usage:
        app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=8.0)
    """

    def __init__(self, app, timeout_seconds: float = 8.0):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request timed out after {self.timeout_seconds}s: "
                f"{request.method} {request.url.path}"
            )
            return JSONResponse(status_code=504, content={"error": "Request timed out"})
