"""
HTTP routes: gateway callbacks and monitoring.

Callback responses are whatever the gateway expects (MoMo: 204 empty body;
VNPay: 200 with an RspCode JSON body), so these handlers return raw
responses built from the adapter's acknowledgement.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_settlement.core.lifecycle import PaymentMethod
from order_settlement.core.reconciler import NotificationReconciler
from order_settlement.integrations.base import GatewayAcknowledgement
from order_settlement.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

callback_router = APIRouter(prefix="/payments/callbacks", tags=["callbacks"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_reconciler(request: Request) -> NotificationReconciler:
    return request.app.state.reconciler


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def to_response(ack: GatewayAcknowledgement) -> Response:
    if ack.body is None:
        return Response(status_code=ack.status_code)
    return JSONResponse(status_code=ack.status_code, content=ack.body)


@callback_router.post(
    "/momo",
    summary="MoMo IPN endpoint",
    description="Signed JSON notification from MoMo",
)
async def momo_callback(
    request: Request,
    reconciler: NotificationReconciler = Depends(get_reconciler),
) -> Response:
    """Handle a MoMo instant payment notification."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("api_momo_callback_invalid_json")
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    ack = await reconciler.handle_callback(PaymentMethod.MOMO, payload)
    return to_response(ack)


@callback_router.api_route(
    "/vnpay",
    methods=["GET", "POST"],
    summary="VNPay IPN endpoint",
    description="Signed query-string notification from VNPay",
)
async def vnpay_callback(
    request: Request,
    reconciler: NotificationReconciler = Depends(get_reconciler),
) -> Response:
    """Handle a VNPay IPN; fields arrive in the query string."""
    payload = dict(request.query_params)
    ack = await reconciler.handle_callback(PaymentMethod.VNPAY, payload)
    return to_response(ack)


@monitoring_router.get(
    "/health",
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> JSONResponse:
    """Health check endpoint for monitoring."""
    result: Dict[str, Any] = await health_check.check_all()
    code = status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=result)


@monitoring_router.get("/health/live", summary="Liveness check")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
