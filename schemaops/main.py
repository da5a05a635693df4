from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy.ext.asyncio import AsyncEngine

from schemaops.config import settings
from schemaops.database import InvalidDatabaseURL, check_connection, dispose_engine, get_engine
from schemaops.logging_config import setup_logging
from schemaops.middleware.correlation import CorrelationIdMiddleware
from schemaops.schemas.migration import HealthResponse
from schemaops.services.discovery import MigrationDiscoveryError
from schemaops.services.runner import run_migrations

# Import models so they are registered with Base.metadata
import schemaops.models  # noqa: F401

logger = structlog.get_logger()


async def run_startup_migrations() -> None:
    """Converge the schema before serving; a failure only stops startup when fail-fast is on."""
    try:
        report = await run_migrations(get_engine(), settings)
    except Exception as exc:
        logger.error("startup_migrations_aborted", error=str(exc), error_type=type(exc).__name__)
        if settings.MIGRATIONS_FAIL_FAST:
            raise
        return
    if not report.ok:
        logger.error("startup_migrations_failed", migration=report.failed, error=report.error)
        if settings.MIGRATIONS_FAIL_FAST:
            raise RuntimeError(report.error)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_schemaops", env=settings.ENVIRONMENT)
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        await run_startup_migrations()
    yield
    await dispose_engine()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Exception handlers: every error body is {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": exc.errors(),
            }
        },
    )


@app.exception_handler(MigrationDiscoveryError)
async def discovery_exception_handler(request: Request, exc: MigrationDiscoveryError) -> JSONResponse:
    logger.error("migration_set_invalid", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": {"code": "MIGRATION_SET_INVALID", "message": str(exc)}},
    )


@app.exception_handler(InvalidDatabaseURL)
async def database_url_exception_handler(request: Request, exc: InvalidDatabaseURL) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"code": "DATABASE_NOT_CONFIGURED", "message": str(exc)}},
    )


app.add_middleware(CorrelationIdMiddleware)


@app.get("/health", tags=["System"], response_model=HealthResponse)
async def health(response: Response, engine: AsyncEngine = Depends(get_engine)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        async with engine.connect() as conn:
            await check_connection(conn)
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from schemaops.routes.migrations import router as migrations_router  # noqa: E402
from schemaops.jobs.internal import router as jobs_router  # noqa: E402

app.include_router(migrations_router, prefix="/api/v1/migrations", tags=["Migrations"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
