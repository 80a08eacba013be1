import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pollgate.app.api.long_poll import router as long_poll_router
from pollgate.app.api.rate_limit import router as rate_limit_router
from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_logger, setup_logging
from pollgate.app.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    WaitTimeoutError,
)
from pollgate.app.middleware.rate_limit import RateLimiterRegistry, RateLimitMiddleware
from pollgate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from pollgate.app.services.long_poll import LongPollCoordinator, ResourceMutator


def build_coordinator() -> LongPollCoordinator:
    """Create the coordinator with the configured demo events (EVENT#00, ...)."""
    coordinator = LongPollCoordinator(default_timeout_ms=settings.long_poll_timeout_ms)
    for i in range(settings.long_poll_resource_count):
        coordinator.add_resource(
            f"{settings.long_poll_resource_prefix}{i:02d}",
            settings.long_poll_initial_value,
        )
    return coordinator


def create_app(
    coordinator: Optional[LongPollCoordinator] = None,
    rate_limiters: Optional[RateLimiterRegistry] = None,
    start_mutator: Optional[bool] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator: Long-poll coordinator (built from settings if omitted)
        rate_limiters: Limiter registry (built from settings if omitted)
        start_mutator: Run the background resource mutator
            (None = settings.long_poll_mutator_enabled)

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    coordinator = coordinator or build_coordinator()
    rate_limiters = rate_limiters or RateLimiterRegistry.from_settings()
    if start_mutator is None:
        start_mutator = settings.long_poll_mutator_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Probes Redis and starts the resource mutator on startup; stops the
        mutator, releases parked requests and closes Redis on shutdown.
        """
        distributed = rate_limiters.distributed
        if distributed is not None and distributed.enabled:
            if not await distributed.connect():
                logger.warning("Redis not available - distributed rate limiting disabled")

        mutator = ResourceMutator(coordinator)
        if start_mutator:
            await mutator.start()

        logger.info(
            "Application startup complete",
            extra={
                "resources": len(coordinator.resources()),
                "redis": distributed.connected if distributed is not None else False,
                "debug_mode": settings.debug,
            },
        )

        yield

        await mutator.stop()
        coordinator.close()
        await rate_limiters.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="pollgate",
        description="Long-poll coordination and rate-limit admission control",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.rate_limiters = rate_limiters

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware, registry=rate_limiters)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-RateLimit-Algorithm",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(long_poll_router)
    app.include_router(rate_limit_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with shared-store connectivity."""
        distributed = rate_limiters.distributed
        connected = distributed.connected if distributed is not None else False
        return {"status": "ok", "redis": "connected" if connected else "disconnected"}

    def _poll_error(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "message": message, "data": {}},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle NotFoundError and return HTTP 404 response."""
        return _poll_error(exc.status_code, exc.message)

    @app.exception_handler(InvalidArgumentError)
    async def invalid_argument_handler(request: Request, exc: InvalidArgumentError) -> JSONResponse:
        """Handle InvalidArgumentError and return HTTP 400 response."""
        return _poll_error(exc.status_code, exc.message)

    @app.exception_handler(WaitTimeoutError)
    async def wait_timeout_handler(request: Request, exc: WaitTimeoutError) -> JSONResponse:
        """Handle WaitTimeoutError and return HTTP 408 response."""
        return _poll_error(exc.status_code, exc.message)

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
        """Handle RateLimitedError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ServiceUnavailableError)
    async def service_unavailable_handler(
        request: Request, exc: ServiceUnavailableError
    ) -> JSONResponse:
        """Handle ServiceUnavailableError and return HTTP 503 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "Service Unavailable", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged
        server-side and correlated by request ID.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "traceback": traceback.format_exc(),
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
