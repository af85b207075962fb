"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from pixmuse.api.routes import accounts, jobs, results, uploads, webhooks

# Import timezone enforcement (sets TZ=UTC)
from pixmuse.core import timezone  # noqa: F401
from pixmuse.core.config import Settings, configure_logging
from pixmuse.core.database import setup_db_session
from pixmuse.services.broadcaster import ProgressBroadcaster
from pixmuse.services.exceptions import InsufficientCreditsError, ServiceError
from pixmuse.services.job_runner import JobRunner
from pixmuse.services.providers.factory import create_job_client
from pixmuse.services.result_store import ResultStore
from pixmuse.uow import create_uow_factory

logger = structlog.get_logger()

HTTP_ERROR_CODES = {
    400: "validation_error",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build the database session factory, select
      the job provider, recover jobs orphaned by a previous process
    - Shutdown: Cancel in-flight jobs (recovered on next start)
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    job_client = create_job_client(settings)
    broadcaster = ProgressBroadcaster()
    result_store = ResultStore()
    job_runner = JobRunner(
        uow_factory=uow_factory,
        job_client=job_client,
        broadcaster=broadcaster,
        settings=settings,
        result_store=result_store,
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_client = job_client
    app.state.broadcaster = broadcaster
    app.state.result_store = result_store
    app.state.job_runner = job_runner

    # Reservations of jobs interrupted by a restart are returned before new
    # jobs are accepted
    recovered = await job_runner.recover_orphaned_jobs()
    if recovered:
        logger.info("startup.recovery_completed", recovered=recovered)
    else:
        logger.debug("startup.recovery_no_orphans")

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        provider=job_client.name,
    )

    yield

    logger.info("application.shutdown", in_flight_jobs=len(job_runner.active_job_ids))
    await job_runner.shutdown()


async def service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ServiceError)
    body: dict[str, Any] = {"error": exc.code, "detail": str(exc)}
    if isinstance(exc, InsufficientCreditsError):
        body["required"] = exc.required
        body["available"] = exc.available

    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, error=str(exc), code=exc.code)
    else:
        logger.info("request.rejected", path=request.url.path, error=str(exc), code=exc.code)

    return JSONResponse(status_code=exc.status_code, content=body)


async def http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, StarletteHTTPException)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
            "detail": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    # Schema errors share the 400 validation_error shape of service-level checks
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Explicit settings (tests); loaded from the environment otherwise

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PixMuse API",
        description="Credit-gated LoRA training and image generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Routers carry their own /api/... prefix
    app.include_router(accounts.router)
    app.include_router(uploads.router)
    app.include_router(jobs.router)
    app.include_router(results.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
