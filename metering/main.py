"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy.exc import SQLAlchemyError

from metering.api.job_routes import router as job_router
from metering.api.routes import router
from metering.api.settings_routes import router as settings_router
from metering.api.status_routes import router as status_router
from metering.config import settings
from metering.db.migration_runner import run_migrations
from metering.db.session import close_engines, get_write_engine
from metering.exceptions import (
    ClientError,
    ConcurrencyError,
    DatabaseError,
    IdempotencyConflictError,
    JobAuthenticationError,
    MeteringError,
    PolicyDeniedError,
    SettingsValidationError,
    UnknownFeatureError,
    UnknownSettingsNamespaceError,
)
from metering.models.api import ClientErrorReason, ErrorResponse, PolicyDeniedResponse, PolicyReason
from metering.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from metering.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_write_engine())

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


def _error(status_code: int, reason: str, message: str | None) -> JSONResponse:
    body = ErrorResponse(reason=reason, message=message)
    return JSONResponse(
        status_code=status_code, content=body.model_dump(mode="json", by_alias=True)
    )


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # ctx may contain non-serializable objects
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": sanitized_errors},
    )


@app.exception_handler(PolicyDeniedError)
async def policy_denied_handler(request: Request, exc: PolicyDeniedError) -> JSONResponse:
    status_code = (
        status.HTTP_401_UNAUTHORIZED
        if exc.reason == PolicyReason.NO_SESSION
        else status.HTTP_403_FORBIDDEN
    )
    logger.info("policy_denied", path=request.url.path, reason=exc.reason.value)
    body = PolicyDeniedResponse(
        reason=exc.reason,
        suggestion=exc.suggestion,
        message=exc.message,
        remaining_quota=exc.remaining_quota,
        remaining_credit=exc.remaining_credit,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@app.exception_handler(ClientError)
async def client_error_handler(request: Request, exc: ClientError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc.reason.value, exc.message)


@app.exception_handler(IdempotencyConflictError)
async def idempotency_conflict_handler(
    request: Request, exc: IdempotencyConflictError
) -> JSONResponse:
    logger.warning(
        "idempotency_conflict", path=request.url.path, idempotency_key=exc.idempotency_key
    )
    return _error(
        status.HTTP_409_CONFLICT,
        exc.reason.value,
        "Idempotency key was already used with different inputs",
    )


@app.exception_handler(JobAuthenticationError)
async def job_auth_handler(request: Request, exc: JobAuthenticationError) -> JSONResponse:
    return _error(status.HTTP_401_UNAUTHORIZED, ClientErrorReason.UNAUTHORIZED.value, str(exc))


@app.exception_handler(UnknownSettingsNamespaceError)
@app.exception_handler(UnknownFeatureError)
async def not_found_handler(request: Request, exc: MeteringError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", str(exc))


@app.exception_handler(SettingsValidationError)
async def settings_validation_handler(
    request: Request, exc: SettingsValidationError
) -> JSONResponse:
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_SETTINGS", exc.message)


@app.exception_handler(ConcurrencyError)
@app.exception_handler(DatabaseError)
@app.exception_handler(SQLAlchemyError)
async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """Store failures surface as a generic 503 without internals."""
    metrics.record_error(type(exc).__name__, "http_request")
    logger.error("store_unavailable", path=request.url.path, error=str(exc))
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        ClientErrorReason.UNAVAILABLE.value,
        "Service temporarily unavailable",
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing; every log line of the request carries its id."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    with log_context(request_id=request_id):
        return await _timed_request(request, call_next)


async def _timed_request(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    start_time = time.time()
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint)
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Entitlements, usage and credits
app.include_router(settings_router)  # Tenant settings namespaces
app.include_router(job_router)  # Scheduler jobs
app.include_router(status_router)  # Health and status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=status.HTTP_404_NOT_FOUND)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "metering.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
