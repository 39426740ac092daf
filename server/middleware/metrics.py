"""
Prometheus instrumentation for decision API requests

Counts requests by (endpoint, method, status_code) and times them by
(endpoint, method). Session and round ids are folded out of the path so
label cardinality stays bounded.
"""

import time

from fastapi import Request

from server.metrics import metrics

# Path segment -> placeholder for the id segment that follows it
_ID_PLACEHOLDERS = {
    "decision-sessions": ":session_id",
    "decision-rounds": ":round_id",
}


async def metrics_middleware(request: Request, call_next):
    endpoint = _normalize_endpoint(request.url.path)
    started = time.perf_counter()
    status_code = 500  # Unhandled exceptions count as 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        metrics.api_requests.labels(
            endpoint=endpoint, method=request.method, status_code=status_code
        ).inc()
        metrics.api_request_duration.labels(
            endpoint=endpoint, method=request.method
        ).observe(time.perf_counter() - started)


def _normalize_endpoint(path: str) -> str:
    """Replace id segments with placeholders.

    /api/v1/decision-sessions/3f2a.../votes -> /api/v1/decision-sessions/:session_id/votes
    /api/v1/decision-rounds/9b1c.../close   -> /api/v1/decision-rounds/:round_id/close
    """
    parts = [part for part in path.split("/") if part]
    normalized = [
        _ID_PLACEHOLDERS.get(parts[i - 1], part) if i > 0 else part
        for i, part in enumerate(parts)
    ]
    return "/" + "/".join(normalized)
