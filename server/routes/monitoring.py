"""
Service info, health and Prometheus exposition
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import Response

from config import config, get_logger
from server.metrics import get_metrics_text

logger = get_logger(__name__).bind(component="monitoring")

API_VERSION = "1.0.0"

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "hivemind decision API",
        "status": "running",
        "version": API_VERSION,
        "endpoints": {
            "create_session": "POST /api/v1/decision-sessions",
            "decision_view": "GET /api/v1/decision-sessions/{sessionId}",
            "user_votes": "GET /api/v1/decision-sessions/{sessionId}/votes",
            "cast_vote": "POST /api/v1/decision-sessions/{sessionId}/votes",
            "start_round": "POST /api/v1/decision-sessions/{sessionId}/rounds",
            "close_round": "POST /api/v1/decision-rounds/{roundId}/close",
            "round_result": "GET /api/v1/decision-rounds/{roundId}/result",
            "health": "GET /api/health",
            "metrics": "GET /metrics",
        },
    }


async def _check_database(request: Request) -> Dict[str, Any]:
    db = getattr(request.app.state, "db", None)
    if db is None:
        return {"status": "not_configured"}

    try:
        async with db.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as e:
        logger.error("database health check failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}

    return {"status": "healthy", "pool_size": db.pool.get_size()}


@router.get("/api/health")
async def health_check(request: Request):
    """Overall status is unhealthy only when a configured database is unreachable"""
    checks: Dict[str, Any] = {
        "database": await _check_database(request),
        "decision_analysis": {
            "status": "available" if config.GEMINI_API_KEY else "disabled",
            "model": config.ANALYSIS_MODEL,
        },
        "configuration": {
            "status": "healthy",
            "is_development": config.is_development(),
            "credit_budget": config.CREDIT_BUDGET,
        },
    }
    overall = "unhealthy" if checks["database"]["status"] == "unhealthy" else "healthy"

    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
        "checks": checks,
    }


@router.get("/metrics")
async def prometheus_metrics():
    return Response(content=get_metrics_text(), media_type="text/plain; version=0.0.4")
