"""
Main FastAPI application.

Payment orchestration API with:
- CORS configuration
- Error handling mapped from the payment error taxonomy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payment_engine import __version__
from payment_engine.config import Settings, get_settings
from payment_engine.core.errors import PaymentError
from payment_engine.monitoring.logging import setup_logging

from .container import ServiceContainer
from .routes import monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built services; built from settings on startup when omitted
        settings: Settings to use, defaults to the environment
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        if getattr(app.state, "container", None) is None:
            app.state.container = ServiceContainer.from_settings(settings)
        try:
            await app.state.container.startup()
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        try:
            await app.state.container.shutdown()
        except Exception as e:
            logger.error("application_shutdown_error", error=str(e))

    app = FastAPI(
        title="Payment Engine",
        description=(
            "Multi-provider payment orchestration: Stripe and Razorpay intents, "
            "a guarded payment state machine, refunds, verified webhooks and "
            "reconciliation against gateway records."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url="/openapi.json",
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add request ID to all requests for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "payment_error",
            code=exc.code,
            error=exc.message,
            path=request.url.path,
            **{k: v for k, v in exc.details.items() if isinstance(v, (str, int, float))},
        )
        return error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else "Invalid request"
        return error_response(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "An unexpected error occurred. Please try again later.",
        )

    app.include_router(payment_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "payment_engine.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
