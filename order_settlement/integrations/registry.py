"""Selects the gateway adapter for a payment method."""
from typing import Dict, Iterable, Optional

import httpx

from order_settlement.config import Settings, get_settings
from order_settlement.core.errors import UnsupportedOperation
from order_settlement.core.lifecycle import PaymentMethod, parse_payment_method
from order_settlement.integrations.base import GatewayAdapter
from order_settlement.integrations.cod import CashOnDeliveryAdapter
from order_settlement.integrations.momo_client import MoMoClient
from order_settlement.integrations.vnpay_client import VNPayClient


class GatewayRegistry:
    """One adapter per payment method."""

    def __init__(self, adapters: Iterable[GatewayAdapter]):
        self._adapters: Dict[PaymentMethod, GatewayAdapter] = {
            adapter.method: adapter for adapter in adapters
        }

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "GatewayRegistry":
        """Registry with the COD, MoMo and VNPay adapters."""
        settings = settings or get_settings()
        return cls(
            [
                CashOnDeliveryAdapter(),
                MoMoClient(settings=settings, http_client=http_client),
                VNPayClient(settings=settings, http_client=http_client),
            ]
        )

    def get(self, method: "PaymentMethod | str") -> GatewayAdapter:
        """
        Adapter for ``method``.

        Raises:
            InvalidRequest: Unknown method name
            UnsupportedOperation: No adapter registered for the method
        """
        payment_method = parse_payment_method(method)
        adapter = self._adapters.get(payment_method)
        if adapter is None:
            raise UnsupportedOperation(f"No gateway adapter for {payment_method.value}")
        return adapter

    def __contains__(self, method: object) -> bool:
        return method in self._adapters
