"""
Main FastAPI application.

Serves the gateway callback endpoints with:
- Request ID tracking
- Structured logging
- Settlement error mapping
- Health and Prometheus metrics endpoints
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from order_settlement.config import get_settings
from order_settlement.core.errors import SettlementError
from order_settlement.core.orders import OrderService
from order_settlement.core.payments import PaymentService
from order_settlement.core.reconciler import NotificationReconciler
from order_settlement.database.connection import close_db, get_session_factory, init_db
from order_settlement.integrations.registry import GatewayRegistry
from order_settlement.monitoring.health import HealthCheck
from order_settlement.monitoring.logging import setup_logging

from .routes import callback_router, monitoring_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


def build_reconciler(http_client: Optional[httpx.AsyncClient] = None) -> NotificationReconciler:
    """Wire the services behind the callback endpoints."""
    session_factory = get_session_factory()
    gateways = GatewayRegistry.from_settings(settings, http_client=http_client)
    orders = OrderService(session_factory)
    payments = PaymentService(session_factory, orders, gateways, settings=settings)
    return NotificationReconciler(payments, gateways)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    await init_db()
    logger.info("database_initialized")

    http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    if getattr(app.state, "reconciler", None) is None:
        app.state.reconciler = build_reconciler(http_client)
    if getattr(app.state, "health_check", None) is None:
        app.state.health_check = HealthCheck()

    try:
        yield
    finally:
        logger.info("application_shutdown")
        await http_client.aclose()
        await close_db()
        logger.info("database_connections_closed")


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
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
    except Exception as e:
        logger.error("request_failed", error=str(e), duration_seconds=time.time() - start_time)
        raise
    finally:
        structlog.contextvars.clear_contextvars()


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Map settlement errors raised outside callback handling to JSON responses."""
    logger.warning("settlement_error", error=exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(
    reconciler: Optional[NotificationReconciler] = None,
    health_check: Optional[HealthCheck] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        reconciler: Optional pre-wired reconciler; built at startup otherwise
        health_check: Optional health check service

    Returns:
        FastAPI: Configured application
    """
    application = FastAPI(
        title="Order Settlement",
        description="Gateway callback reconciliation for orders and payments.",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.reconciler = reconciler
    application.state.health_check = health_check

    application.middleware("http")(add_request_id_middleware)
    application.add_exception_handler(SettlementError, settlement_error_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    application.include_router(callback_router)
    application.include_router(monitoring_router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run("order_settlement.api.main:app", host="0.0.0.0", port=8000, reload=settings.debug)


if __name__ == "__main__":
    run()
