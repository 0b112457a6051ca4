"""
Gateway notification reconciler.

Stateless per call: route the callback to the adapter for its payment
method, verify it, find the payment, cross-check the amount, apply the
outcome and answer in the gateway's own acknowledgement format.
"""
import time
from typing import Any, Mapping

import structlog

from order_settlement.core.errors import AmountMismatch, SettlementError, UnrecognizedTransaction
from order_settlement.core.lifecycle import PaymentMethod, PaymentStatus
from order_settlement.core.payments import PaymentService
from order_settlement.integrations.base import CallbackVerification, GatewayAcknowledgement
from order_settlement.integrations.registry import GatewayRegistry
from order_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class NotificationReconciler:
    """Turns raw gateway callbacks into payment outcomes."""

    def __init__(self, payments: PaymentService, gateways: GatewayRegistry):
        self.payments = payments
        self.gateways = gateways

    async def reconcile(
        self, method: "PaymentMethod | str", payload: Mapping[str, Any]
    ) -> PaymentStatus:
        """
        Verify a callback and apply its outcome.

        Nothing is written unless verification succeeds.

        Returns:
            PaymentStatus: Recorded payment status after the call

        Raises:
            InvalidSignature: Signature mismatch
            UnrecognizedTransaction: No payment for the embedded id
            AmountMismatch: Reported amount differs from the payment amount
            ConflictingNotification: Outcome contradicts the recorded status
            UnsupportedOperation: Method has no callbacks (COD)
        """
        adapter = self.gateways.get(method)
        with structlog.contextvars.bound_contextvars(gateway=adapter.name):
            verification = adapter.verify_callback(payload)
            with structlog.contextvars.bound_contextvars(
                transaction_id=verification.transaction_id
            ):
                return await self._apply(verification)

    async def _apply(self, verification: CallbackVerification) -> PaymentStatus:
        payment = await self.payments.find_payment(verification.transaction_id)
        if payment is None:
            logger.warning("notification_unrecognized_transaction")
            raise UnrecognizedTransaction(
                f"No payment for transaction {verification.transaction_id}",
                transaction_id=verification.transaction_id,
            )

        if verification.amount is not None and verification.amount != payment.amount:
            logger.error(
                "notification_amount_mismatch",
                reported=str(verification.amount),
                recorded=str(payment.amount),
            )
            raise AmountMismatch(
                f"Gateway reported {verification.amount}, payment is {payment.amount}",
                transaction_id=payment.transaction_id,
            )

        return await self.payments.apply_gateway_outcome(
            verification.transaction_id,
            verification.outcome,
            gateway_transaction_id=verification.gateway_transaction_id,
            raw_response=verification.raw_payload,
        )

    async def handle_callback(
        self, method: "PaymentMethod | str", payload: Mapping[str, Any]
    ) -> GatewayAcknowledgement:
        """
        Reconcile a callback and build the gateway-specific response.

        Settlement errors become the adapter's rejection response; anything
        else propagates.
        """
        adapter = self.gateways.get(method)
        start = time.perf_counter()
        with structlog.contextvars.bound_contextvars(gateway=adapter.name):
            try:
                status = await self.reconcile(adapter.method, payload)
            except SettlementError as e:
                metrics.record_notification(adapter.name, e.error_code, time.perf_counter() - start)
                logger.info("notification_rejected", error=e)
                return adapter.reject(e)

            metrics.record_notification(adapter.name, "processed", time.perf_counter() - start)
            logger.info("notification_processed", status=status.value)
            return adapter.acknowledge()
