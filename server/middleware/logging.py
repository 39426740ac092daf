"""
Access log for the decision API, one structlog event per request
"""

import time

from fastapi import Request

from config import get_logger

logger = get_logger(__name__).bind(component="api")

# Prometheus scrape target
_QUIET_PATHS = frozenset({"/metrics"})


async def log_requests(request: Request, call_next):
    if request.url.path in _QUIET_PATHS:
        return await call_next(request)

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request failed",
            method=request.method,
            path=request.url.path,
            duration_seconds=round(time.perf_counter() - started, 3),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    logger.info(
        "request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        user_id=getattr(request.state, "user_id", None),
        duration_seconds=round(time.perf_counter() - started, 3),
    )
    return response
