"""
Main Application - FastAPI application setup.

The lifespan owns the background schedulers: they start after the database
is ready and are stopped before the engine is disposed.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.auth_routes import router as auth_router
from app.api.rate_limit import client_ip, limiter, retry_after_minutes
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engine, get_engine, get_session
from app.exceptions import (
    AccountLockedError,
    AccountSuspendedError,
    GoogleSignInUnavailableError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    PlanNotFoundError,
    StorageUnavailableError,
    SubscriptionNotFoundError,
)
from app.models.api import ErrorResponse
from app.observability import get_logger, setup_logging, setup_tracing
from app.observability.logging import log_context
from app.observability.metrics import get_metrics_handler, track_http_request
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.login_attempts import lock_messages
from app.services.scheduler import CleanupScheduler, RecurringJob, SubscriptionScheduler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_schedulers() -> list[RecurringJob]:
    """Schedulers enabled by configuration."""
    jobs: list[RecurringJob] = []
    if settings.subscription_scheduler_enabled:
        jobs.append(SubscriptionScheduler())
    if settings.cleanup_scheduler_enabled:
        jobs.append(CleanupScheduler())
    return jobs


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

    instrument_sqlalchemy(get_engine())

    schedulers = build_schedulers()
    for job in schedulers:
        await job.start()
    app.state.schedulers = schedulers

    yield

    logger.info("application_shutting_down")
    for job in schedulers:
        await job.stop()
    await close_engine()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)
app.state.limiter = limiter


# ============================================================================
# Exception mapping
# ============================================================================


def _error(status_code: int, body: ErrorResponse, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(InvalidCredentialsError)
async def invalid_credentials_handler(request: Request, exc: InvalidCredentialsError) -> JSONResponse:
    return _error(
        401,
        ErrorResponse(
            error="Invalid email or password",
            error_ar="البريد الإلكتروني أو كلمة المرور غير صحيحة",
            remaining_attempts=exc.remaining_attempts,
        ),
    )


@app.exception_handler(AccountLockedError)
async def account_locked_handler(request: Request, exc: AccountLockedError) -> JSONResponse:
    # Remaining duration only; never the timestamp or what triggered the lock
    message, message_ar = lock_messages(exc.minutes_remaining)
    return _error(
        403,
        ErrorResponse(
            error=message,
            error_ar=message_ar,
            is_locked=True,
            minutes_remaining=exc.minutes_remaining,
        ),
    )


@app.exception_handler(AccountSuspendedError)
async def account_suspended_handler(request: Request, exc: AccountSuspendedError) -> JSONResponse:
    return _error(
        403,
        ErrorResponse(
            error="This account has been suspended. Please contact support.",
            error_ar="تم إيقاف هذا الحساب. برجاء التواصل مع الدعم.",
            is_suspended=True,
            suspended_reason=exc.reason,
        ),
    )


@app.exception_handler(InvalidOrExpiredTokenError)
async def invalid_token_handler(request: Request, exc: InvalidOrExpiredTokenError) -> JSONResponse:
    return _error(401, ErrorResponse(error=exc.message), headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(PlanNotFoundError)
async def plan_not_found_handler(request: Request, exc: PlanNotFoundError) -> JSONResponse:
    logger.error("plan_not_found", plan=exc.plan_name, path=request.url.path)
    return _error(404, ErrorResponse(error=str(exc)))


@app.exception_handler(SubscriptionNotFoundError)
async def subscription_not_found_handler(
    request: Request, exc: SubscriptionNotFoundError
) -> JSONResponse:
    return _error(404, ErrorResponse(error=str(exc)))


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    logger.error("storage_unavailable", operation=exc.operation, path=request.url.path)
    return _error(503, ErrorResponse(error="Service temporarily unavailable"))


@app.exception_handler(GoogleSignInUnavailableError)
async def google_unavailable_handler(
    request: Request, exc: GoogleSignInUnavailableError
) -> JSONResponse:
    return _error(503, ErrorResponse(error=str(exc)))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("auth_rate_limited", path=request.url.path, client_ip=client_ip(request))
    return _error(
        429,
        ErrorResponse(
            error="Too many authentication attempts, please try again later.",
            error_ar="محاولات تسجيل دخول كثيرة، برجاء المحاولة لاحقاً.",
            retry_after_minutes=retry_after_minutes(settings.auth_rate_limit),
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log validation errors without echoing request bodies (they carry passwords)."""
    errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors,
    )
    return JSONResponse(status_code=422, content={"detail": errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    with log_context(request_id=request_id), track_http_request(endpoint, method) as tracker:
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=time.time() - start_time,
                exc_info=True,
            )
            raise

        tracker.set_status_code(response.status_code)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response


# Register routes
app.include_router(auth_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness plus a database round-trip."""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_check_database_failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "down"})
    return JSONResponse(content={"status": "ok", "database": "up"})


render_metrics = get_metrics_handler()


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return PlainTextResponse(render_metrics(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
