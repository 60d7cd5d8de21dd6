"""
Main FastAPI application for the Anchorpipe API.

This module provides the application factory with middleware, exception
handlers and the lifespan that opens and closes the database, Redis and
Kafka connections.
"""

import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Callable, Dict, Optional, cast

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .. import __version__
from ..core.config import AnchorpipeConfig, get_config
from ..core.database import close_tortoise, init_tortoise
from ..core.errors import AnchorpipeError, PayloadValidationError
from ..core.logging import correlation_id_var, get_logger, new_correlation_id
from ..core.messaging import ingestion_publisher
from ..core.metrics import metrics
from ..core.redis import close_redis, initialize_redis
from ..core.security.brute_force import get_brute_force_protector, run_periodic_cleanup
from ..core.siem import reset_siem_forwarder
from .routes import ROUTERS

REQUEST_ID_HEADER = "X-Request-ID"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    def __init__(self, app: Any, hsts: bool = False) -> None:
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "geolocation=(), microphone=(), camera=()"
        )
        if self.hsts:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        if "server" in response.headers:
            del response.headers["server"]

        return cast(Response, response)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger = get_logger("api.app")
    config = get_config()
    logger.info(
        "Starting Anchorpipe API server", environment=config.environment.value
    )

    await init_tortoise(
        config.database.url, generate_schemas=config.database.generate_schemas
    )
    try:
        await initialize_redis()
    except RedisError as e:
        logger.warning("Redis unavailable, using in-memory stores", error=str(e))

    cleanup_task = asyncio.create_task(
        run_periodic_cleanup(
            get_brute_force_protector(),
            config.brute_force.cleanup_interval_seconds,
        )
    )

    yield

    logger.info("Shutting down Anchorpipe API server")
    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task

    await ingestion_publisher.close()
    await reset_siem_forwarder()
    await close_redis()
    await close_tortoise()


def create_app(config: Optional[AnchorpipeConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Configuration to build the app with; defaults to get_config()
    """
    config = config or get_config()

    app = FastAPI(
        title="Anchorpipe API",
        description=(
            "CI-native flaky test management: authentication, repository RBAC, "
            "audit logging, data subject requests and HMAC signed test report "
            "ingestion."
        ),
        version=__version__,
        docs_url=None if config.is_production() else "/docs",
        redoc_url=None if config.is_production() else "/redoc",
        lifespan=lifespan,
    )

    _setup_middleware(app, config)
    _setup_exception_handlers(app)
    _setup_routes(app)

    return app


def _setup_middleware(app: FastAPI, config: AnchorpipeConfig) -> None:
    """Set up application middleware."""
    app.add_middleware(SecurityHeadersMiddleware, hsts=config.is_production())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_resolved,
        allow_credentials=config.api.cors_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-FR-Sig", REQUEST_ID_HEADER],
        expose_headers=[
            REQUEST_ID_HEADER,
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=config.api.cors_max_age,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any) -> Any:
        logger = get_logger("api.middleware")
        incoming = request.headers.get(REQUEST_ID_HEADER)
        if incoming:
            correlation_id_var.set(incoming[:64])
            request_id = incoming[:64]
        else:
            request_id = new_correlation_id()

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.record_request(
            request.method, endpoint, response.status_code, duration
        )
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _error_body(request: Request, detail: Any, **extra: Any) -> Dict[str, Any]:
    return {"detail": detail, "path": request.url.path, **extra}


def _setup_exception_handlers(app: FastAPI) -> None:
    """Set up exception handlers."""
    logger = get_logger("api.exceptions")

    @app.exception_handler(AnchorpipeError)
    async def domain_exception_handler(
        request: Request, exc: AnchorpipeError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Domain error", error=exc.message, path=request.url.path)
        else:
            logger.info(
                "Request rejected",
                status_code=exc.status_code,
                error=exc.message,
                path=request.url.path,
            )
        extra: Dict[str, Any] = {}
        if isinstance(exc, PayloadValidationError) and exc.details:
            extra["details"] = exc.details
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, **extra),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("Validation error", errors=exc.errors(), path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(
                request, "Validation error", errors=jsonable_errors(exc)
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception", status_code=exc.status_code, detail=exc.detail
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error("Unexpected error", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "Internal server error"),
        )


def jsonable_errors(exc: RequestValidationError) -> Any:
    """Validation errors without the non-serializable ``ctx`` values."""
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


def _setup_routes(app: FastAPI) -> None:
    """Mount every router under /api."""
    for router in ROUTERS:
        app.include_router(router, prefix="/api")


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "anchorpipe.api.app:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        reload=config.api.reload and config.is_development(),
    )


if __name__ == "__main__":
    run()
