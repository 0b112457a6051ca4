"""Payment gateway adapters."""
from .base import (
    CallbackVerification,
    GatewayAcknowledgement,
    GatewayAdapter,
    GatewayContext,
    GatewayInitiationResult,
    RefundResult,
)
from .cod import CashOnDeliveryAdapter
from .momo_client import MoMoClient
from .registry import GatewayRegistry
from .vnpay_client import VNPayClient

__all__ = [
    "CallbackVerification",
    "CashOnDeliveryAdapter",
    "GatewayAcknowledgement",
    "GatewayAdapter",
    "GatewayContext",
    "GatewayInitiationResult",
    "GatewayRegistry",
    "MoMoClient",
    "RefundResult",
    "VNPayClient",
]
