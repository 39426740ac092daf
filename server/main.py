"""
hivemind Decision API Server

FastAPI application exposing the quadratic-voting ledger and round lifecycle.
Routes, dependencies and middleware are organized into focused modules.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import config, get_logger
from database.db_postgres import Database
from decision.analysis import DecisionAnalyst
from decision.service import DecisionService
from exceptions import HivemindError
from server.auth import init_jwt
from server.metrics import metrics
from server.middleware.logging import log_requests
from server.middleware.metrics import metrics_middleware
from server.middleware.request_id import RequestIDMiddleware, get_request_id
from server.routes import decisions, monitoring
from server.utils.responses import error_response, status_for_code

logger = get_logger(__name__).bind(component="api")


def build_decision_service(db: Database) -> DecisionService:
    """Wire the decision core onto the Postgres repositories"""
    analyst = None
    if config.GEMINI_API_KEY:
        analyst = DecisionAnalyst(config.GEMINI_API_KEY, model_name=config.ANALYSIS_MODEL)

    return DecisionService(
        store=db.decisions,
        membership=db.hives,
        conversations=db.hives,
        analyst=analyst,
        credit_budget=config.CREDIT_BUDGET,
        max_attempts=config.STORE_MAX_RETRIES,
        retry_delay=config.STORE_RETRY_DELAY,
        analysis_timeout=config.ANALYSIS_TIMEOUT_SECONDS,
        metrics=metrics,
    )


async def handle_hivemind_error(request: Request, exc: HivemindError):
    """Render any HivemindError as {"success": false, "error": {code, message}}"""
    status_code = getattr(exc, "http_status", None) or status_for_code(exc.code)
    if status_code >= 500:
        metrics.record_error(component="api", error=exc)
        logger.error(
            "request failed",
            path=request.url.path,
            error_code=exc.code,
            error=str(exc),
            retryable=exc.is_retryable,
        )
        return JSONResponse(
            status_code=status_code,
            content=error_response(exc.code, exc.message, requestId=get_request_id(request)),
        )

    logger.info("request rejected", path=request.url.path, error_code=exc.code)
    return JSONResponse(status_code=status_code, content=error_response(exc.code, exc.message))


async def handle_validation_error(request: Request, exc: RequestValidationError):
    """Request body/path validation failures -> 400 VALIDATION_ERROR"""
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))

    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", message),
    )


def create_app(service: Optional[DecisionService] = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        service: Pre-built DecisionService. When given, no database pool is
            created (used by tests with the in-memory store).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize and cleanup async database connection pool"""
        if service is not None:
            yield
            return

        db = await Database.create()
        await db.init_schema()
        logger.info("initialized PostgreSQL database with async connection pool")

        app.state.db = db
        app.state.decision_service = build_decision_service(db)

        yield

        try:
            active_connections = db.pool.get_size()
            logger.info(
                "closing connection pool",
                active_connections=active_connections,
                min_size=db.pool.get_min_size(),
                max_size=db.pool.get_max_size(),
            )
            await db.close()
            logger.info("closed PostgreSQL connection pool")
        except Exception as e:
            # Don't crash on shutdown - log and continue
            logger.error("error closing connection pool", error=str(e), exc_info=True)

    app = FastAPI(title="hivemind decision API", description="Quadratic voting rounds", lifespan=lifespan)
    if service is not None:
        app.state.decision_service = service

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    # Request ID middleware (must be early in stack for tracing)
    app.add_middleware(RequestIDMiddleware)

    # FastAPI middleware stack: last registered runs first (metrics -> logging)
    @app.middleware("http")
    async def log_requests_middleware(request, call_next):
        return await log_requests(request, call_next)

    @app.middleware("http")
    async def metrics_middleware_wrapper(request, call_next):
        return await metrics_middleware(request, call_next)

    app.add_exception_handler(HivemindError, handle_hivemind_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    app.include_router(monitoring.router)           # Root, health, metrics
    app.include_router(decisions.sessions_router)   # Decision sessions, votes, rounds
    app.include_router(decisions.rounds_router)     # Round close and results

    return app


if config.JWT_SECRET:
    init_jwt(config.JWT_SECRET)
    logger.info("JWT authentication initialized")
else:
    logger.warning("HIVEMIND_JWT_SECRET not set. All authenticated endpoints will return 401.")

app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info("starting hivemind API server", config_summary=config.summary())

    uvicorn.run(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        access_log=False,  # Custom middleware logging replaces uvicorn access logs
    )
