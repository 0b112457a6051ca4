"""Cash-on-delivery adapter: settles locally, never talks to a gateway."""
from decimal import Decimal
from typing import Any, Mapping

from order_settlement.core.errors import SettlementError, UnsupportedOperation
from order_settlement.core.lifecycle import PaymentMethod
from order_settlement.database.models import Payment
from order_settlement.integrations.base import (
    CallbackVerification,
    GatewayAcknowledgement,
    GatewayAdapter,
    GatewayContext,
    GatewayInitiationResult,
    RefundResult,
)


class CashOnDeliveryAdapter(GatewayAdapter):
    """
    Degenerate adapter.

    Initiation succeeds immediately with no redirect. There are no
    callbacks and refunds are handled outside the system.
    """

    method = PaymentMethod.COD
    name = "cod"

    async def initiate(self, payment: Payment, context: GatewayContext) -> GatewayInitiationResult:
        return GatewayInitiationResult(gateway_reference=payment.transaction_id)

    def verify_callback(self, payload: Mapping[str, Any]) -> CallbackVerification:
        raise UnsupportedOperation("Cash on delivery has no gateway callbacks")

    async def refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        raise UnsupportedOperation("Cash on delivery payments cannot be refunded online")

    def acknowledge(self) -> GatewayAcknowledgement:
        return GatewayAcknowledgement(status_code=200, body={"status": "ok"})

    def reject(self, error: SettlementError) -> GatewayAcknowledgement:
        return GatewayAcknowledgement(status_code=error.http_status, body=error.to_dict(), accepted=False)
