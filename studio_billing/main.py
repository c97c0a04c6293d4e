"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from studio_billing.api.admin_routes import router as admin_router
from studio_billing.api.callback_routes import router as callback_router
from studio_billing.api.dependencies import AppComponents
from studio_billing.api.routes import router
from studio_billing.config import settings
from studio_billing.db.migration_runner import run_migrations
from studio_billing.db.session import close_engines, get_write_session
from studio_billing.models.api import TaskKind
from studio_billing.observability import get_logger, metrics, setup_logging, setup_tracing
from studio_billing.observability.tracing import instrument_fastapi
from studio_billing.services.provider_gateway import HttpProviderGateway, PassthroughAssetStore
from studio_billing.services.retry_policy import RetryPolicy
from studio_billing.services.retry_scheduler import RetryScheduler
from studio_billing.services.settings_cache import SettingsCache

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_components() -> AppComponents:
    """Create the long-lived collaborators shared by all requests."""
    gateway = HttpProviderGateway.from_settings(settings)
    components: AppComponents

    async def resubmit(kind: TaskKind, task_id: UUID) -> object:
        async with get_write_session() as session:
            return await components.task_service(session).resubmit(task_id, kind)

    components = AppComponents(
        settings_cache=SettingsCache(settings.settings_cache_ttl_seconds),
        gateway=gateway,
        asset_store=PassthroughAssetStore(),
        scheduler=RetryScheduler(resubmit),
        policy=RetryPolicy.from_settings(settings),
        callback_url=settings.provider_callback_url,
    )
    return components


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    components = build_components()
    app.state.components = components

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await components.scheduler.shutdown()
    if isinstance(components.gateway, HttpProviderGateway):
        await components.gateway.aclose()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Trust X-Forwarded-Proto from the reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

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
            request_id=request_id,
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
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Wallet and generation API (for the web layer)
app.include_router(callback_router)  # Provider push notifications
app.include_router(admin_router)  # Sweep and settings


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "studio_billing.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
