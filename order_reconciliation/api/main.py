"""
Main FastAPI application.

Order reconciliation API with:
- CORS configuration
- Domain error to HTTP status mapping
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
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_reconciliation import __version__
from order_reconciliation.config import Settings, get_settings
from order_reconciliation.container import Services, build_services
from order_reconciliation.core.errors import (
    InvalidStateError,
    OrderNotFoundError,
    RefundInProgressError,
)
from order_reconciliation.integrations.gateway import (
    GatewayError,
    GatewayTimeout,
    PaymentNotSettledError,
)
from order_reconciliation.integrations.webhook_handler import WebhookError
from order_reconciliation.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def _error(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, **extra},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain and gateway errors to HTTP responses."""

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found_handler(request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "order_not_found", str(exc))

    @app.exception_handler(RefundInProgressError)
    async def refund_in_progress_handler(
        request: Request, exc: RefundInProgressError
    ) -> JSONResponse:
        return _error(
            status.HTTP_409_CONFLICT,
            "refund_in_progress",
            str(exc),
            current_state=exc.current_state,
        )

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
        return _error(
            status.HTTP_409_CONFLICT,
            "invalid_state",
            str(exc),
            current_state=exc.current_state,
        )

    @app.exception_handler(PaymentNotSettledError)
    async def not_settled_handler(request: Request, exc: PaymentNotSettledError) -> JSONResponse:
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "payment_not_settled",
            str(exc),
            retryable=True,
            gateway_status=exc.gateway_status,
        )

    @app.exception_handler(GatewayTimeout)
    async def gateway_timeout_handler(request: Request, exc: GatewayTimeout) -> JSONResponse:
        return _error(
            status.HTTP_504_GATEWAY_TIMEOUT, "gateway_timeout", str(exc), retryable=True
        )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        logger.error("gateway_error", error=str(exc), error_type=exc.error_type.value)
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            "gateway_error",
            str(exc),
            retryable=exc.retryable,
        )

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
        logger.warning("webhook_rejected", error=str(exc), error_type=type(exc).__name__)
        return _error(status.HTTP_400_BAD_REQUEST, "webhook_rejected", str(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred. Please try again later.",
        )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Services are built at startup from settings unless passed in; passed-in
    services are used as is and not closed on shutdown.
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services(settings)

        yield

        logger.info("application_shutdown")
        if owned:
            await app.state.services.close()

    app = FastAPI(
        title="Order Reconciliation Engine",
        description=(
            "Payment and order reconciliation for a retail storefront: idempotent payment "
            "confirmation from user polls, admin overrides and gateway webhooks, "
            "cancellation with refunds, and audit history."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Tag every request with an id and log its duration."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
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
        finally:
            structlog.contextvars.clear_contextvars()

    register_exception_handlers(app)

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Run the API under uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "order_reconciliation.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
