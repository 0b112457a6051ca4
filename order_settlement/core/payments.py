"""
Payment aggregate service.

Flow for gateway payments:
1. Validate order ownership, order status and amount
2. Reject if another attempt is pending or already succeeded
3. Persist a PENDING payment (commit)
4. Call the gateway adapter outside any transaction
5. Record the gateway reference, or FAILED on business rejection

Status changes after step 3 are compare-and-swap UPDATEs on
``(id, status)``: of several concurrent deliveries of the same
notification exactly one applies the transition and its side effects.
"""
import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_settlement.config import Settings, get_settings
from order_settlement.core.audit import new_correlation_id, record_payment_event
from order_settlement.core.collaborators import Principal
from order_settlement.core.errors import (
    AmountMismatch,
    ConflictingNotification,
    ConflictingPayment,
    Forbidden,
    GatewayRejected,
    GatewayUnavailable,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
    RefundRejected,
    UnrecognizedTransaction,
)
from order_settlement.core.lifecycle import (
    RETRYABLE_PAYMENT_STATUSES,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ensure_payment_transition,
    parse_payment_method,
)
from order_settlement.core.money import AmountLike, parse_amount
from order_settlement.core.orders import OrderService, coerce_uuid, locked_order_status
from order_settlement.database.models import Order, Payment, utcnow
from order_settlement.integrations.base import (
    GatewayContext,
    GatewayInitiationResult,
    RefundResult,
    truncate,
)
from order_settlement.integrations.registry import GatewayRegistry
from order_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY_OUTCOMES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED})

# Set on a PENDING payment whose initiation hit GatewayUnavailable; the next
# initiate_payment call with the same method re-drives that payment.
STALLED_INITIATION = "Gateway unavailable during initiation"

EVENT_TYPES = {
    PaymentStatus.SUCCESS: "payment.succeeded",
    PaymentStatus.FAILED: "payment.failed",
    PaymentStatus.CANCELLED: "payment.cancelled",
    PaymentStatus.REFUNDED: "payment.refunded",
}


def generate_transaction_id() -> str:
    """Internal transaction id: ``TXN_<epoch millis>_<8 upper hex>``."""
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


@dataclass(frozen=True)
class PaymentInitiation:
    """What the buyer needs to complete a payment."""

    payment: Payment
    redirect_url: Optional[str] = None
    qr_payload: Optional[str] = None
    gateway_reference: Optional[str] = None

    @property
    def transaction_id(self) -> str:
        return self.payment.transaction_id

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.payment.status)


class PaymentService:
    """
    Payment initiation, gateway outcome application and refunds.

    Handles the complete payment lifecycle with compare-and-swap status
    updates and an audit row for every change.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orders: OrderService,
        gateways: GatewayRegistry,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment service.

        Args:
            session_factory: Async session factory
            orders: Order service (payment-confirmed transition)
            gateways: Adapter registry
            settings: Optional settings
        """
        self.session_factory = session_factory
        self.orders = orders
        self.gateways = gateways
        self.settings = settings or get_settings()

    def _truncate(self, text: Optional[str]) -> Optional[str]:
        return truncate(text, self.settings.gateway_response_max_length)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    async def _find(db: AsyncSession, transaction_id: str) -> Optional[Payment]:
        return await db.scalar(select(Payment).where(Payment.transaction_id == transaction_id))

    async def find_payment(self, transaction_id: str) -> Optional[Payment]:
        async with self.session_factory() as db:
            return await self._find(db, transaction_id)

    async def get_payment(self, transaction_id: str) -> Payment:
        """
        Payment by internal transaction id.

        Raises:
            NotFound: Unknown transaction id
        """
        payment = await self.find_payment(transaction_id)
        if payment is None:
            raise NotFound(f"Payment {transaction_id} not found", transaction_id=transaction_id)
        return payment

    async def find_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Optional[Payment]:
        async with self.session_factory() as db:
            return await db.scalar(
                select(Payment).where(Payment.gateway_transaction_id == gateway_transaction_id)
            )

    async def list_payments(self, order_id: "uuid.UUID | str") -> List[Payment]:
        """All attempts for an order, oldest first."""
        async with self.session_factory() as db:
            result = await db.scalars(
                select(Payment)
                .where(Payment.order_id == coerce_uuid(order_id))
                .order_by(Payment.created_at, Payment.id)
            )
            return list(result.all())

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def _settle(
        self,
        db: AsyncSession,
        payment: Payment,
        outcome: PaymentStatus,
        correlation_id: str,
        gateway_transaction_id: Optional[str] = None,
        raw_response: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-swap a PENDING payment to ``outcome``.

        On SUCCESS the order's payment-confirmed transition runs in the same
        transaction. The caller commits.

        Returns:
            bool: False if the payment was no longer PENDING
        """
        ensure_payment_transition(PaymentStatus.PENDING, outcome)

        now = utcnow()
        values: Dict[str, Any] = {
            "status": outcome,
            "processed_at": now,
            "updated_at": now,
            "failure_reason": failure_reason,
        }
        if gateway_transaction_id:
            values["gateway_transaction_id"] = gateway_transaction_id
        if raw_response is not None:
            values["gateway_response"] = self._truncate(raw_response)

        # Row locks are taken order first, then payment, as cancel_order does.
        await db.execute(locked_order_status(payment.order_id))
        result = await db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await db.refresh(payment)

        record_payment_event(
            db,
            payment_id=payment.id,
            event_type=EVENT_TYPES[outcome],
            event_data={
                "status": outcome.value,
                "gateway_transaction_id": gateway_transaction_id,
                "failure_reason": failure_reason,
            },
            correlation_id=correlation_id,
        )

        if outcome is PaymentStatus.SUCCESS:
            order_status = await self.orders.mark_payment_confirmed(db, payment.order_id)
            if order_status is OrderStatus.CANCELLED:
                record_payment_event(
                    db,
                    payment_id=payment.id,
                    event_type="payment.succeeded_for_closed_order",
                    event_data={"order_id": str(payment.order_id), "order_status": order_status.value},
                    correlation_id=correlation_id,
                )
                logger.warning(
                    "payment_succeeded_for_closed_order",
                    transaction_id=payment.transaction_id,
                    order_id=str(payment.order_id),
                )

        logger.info(
            "payment_status_changed",
            correlation_id=correlation_id,
            transaction_id=payment.transaction_id,
            status=outcome.value,
        )
        return True

    async def _mark_stalled(self, payment: Payment, correlation_id: str, error: str) -> None:
        """Flag a PENDING attempt whose initiation ended in a gateway outage."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.PENDING,
                    Payment.failure_reason.is_(None),
                )
                .values(failure_reason=STALLED_INITIATION, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                record_payment_event(
                    db,
                    payment_id=payment.id,
                    event_type="payment.initiation_stalled",
                    event_data={"error": error},
                    correlation_id=correlation_id,
                )
            await db.commit()

    async def _resume_stalled(
        self, db: AsyncSession, payment: Payment, correlation_id: str
    ) -> bool:
        """
        Claim a stalled attempt for another initiation call.

        Clearing the flag is the claim, so of several concurrent callers
        only one drives the gateway again. Commits on success.
        """
        result = await db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == PaymentStatus.PENDING,
                Payment.failure_reason == STALLED_INITIATION,
            )
            .values(failure_reason=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        record_payment_event(
            db,
            payment_id=payment.id,
            event_type="payment.initiation_resumed",
            event_data={"method": PaymentMethod(payment.payment_method).value},
            correlation_id=correlation_id,
        )
        await db.commit()
        await db.refresh(payment)
        logger.info(
            "payment_initiation_resumed",
            correlation_id=correlation_id,
            transaction_id=payment.transaction_id,
        )
        return True

    async def _create_pending_payment(
        self,
        order_id: "uuid.UUID | str",
        method: PaymentMethod,
        amount: AmountLike,
        principal: Principal,
        correlation_id: str,
    ) -> Payment:
        async with self.session_factory() as db:
            order = await db.get(Order, coerce_uuid(order_id))
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            if not principal.can_access(order.user_id):
                logger.warning(
                    "payment_initiation_forbidden",
                    order_id=str(order.id),
                    requester=principal.user_id,
                )
                raise Forbidden("Not allowed to pay for this order", order_id=str(order.id))
            if order.status is not OrderStatus.PENDING:
                raise InvalidStateTransition(
                    "order",
                    OrderStatus(order.status).value,
                    OrderStatus.PROCESSING.value,
                    reason="payments can only be initiated for pending orders",
                )

            amount = parse_amount(amount)
            if amount != order.total:
                raise AmountMismatch(
                    f"Amount {amount} does not match order total {order.total}",
                    amount=amount,
                    order_total=order.total,
                )

            existing = await db.scalars(select(Payment).where(Payment.order_id == order.id))
            blocking = [p for p in existing.all() if p.status not in RETRYABLE_PAYMENT_STATUSES]
            if blocking:
                stalled = blocking[0]
                if (
                    len(blocking) == 1
                    and stalled.payment_method is method
                    and await self._resume_stalled(db, stalled, correlation_id)
                ):
                    return stalled
                raise ConflictingPayment(
                    f"Order {order.id} already has a {PaymentStatus(stalled.status).value} payment",
                    order_id=str(order.id),
                )

            payment = Payment(
                order_id=order.id,
                transaction_id=generate_transaction_id(),
                payment_method=method,
                status=PaymentStatus.PENDING,
                amount=order.total,
            )
            db.add(payment)
            try:
                await db.flush()
                record_payment_event(
                    db,
                    payment_id=payment.id,
                    event_type="payment.created",
                    event_data={
                        "order_id": str(order.id),
                        "amount": str(payment.amount),
                        "method": method.value,
                    },
                    correlation_id=correlation_id,
                )
                await db.commit()
            except IntegrityError as e:
                # Lost the race on uq_payments_pending_per_order.
                await db.rollback()
                raise ConflictingPayment(
                    f"Order {order_id} already has a pending payment", order_id=str(order_id)
                ) from e
            return payment

    async def initiate_payment(
        self,
        order_id: "uuid.UUID | str",
        method: "PaymentMethod | str",
        amount: AmountLike,
        principal: Principal,
        return_url: Optional[str] = None,
        client_ip: str = "127.0.0.1",
    ) -> PaymentInitiation:
        """
        Start a payment attempt for an order.

        Args:
            order_id: Order being paid
            method: Payment method
            amount: Must equal the order total
            principal: Order owner or administrator
            return_url: Optional customer redirect after checkout
            client_ip: Buyer IP forwarded to gateways that want it

        Returns:
            PaymentInitiation: Payment plus redirect / QR data

        Raises:
            NotFound, Forbidden: Unknown order or foreign requester
            InvalidStateTransition: Order is not PENDING
            AmountMismatch: Amount differs from the order total
            ConflictingPayment: Another attempt is pending or succeeded
            GatewayUnavailable: Gateway unreachable; payment stays PENDING and
                the next call with the same method re-drives it
            GatewayRejected: Gateway refused; payment is FAILED
        """
        payment_method = parse_payment_method(method)
        adapter = self.gateways.get(payment_method)
        correlation_id = new_correlation_id()

        logger.info(
            "payment_initiation_started",
            correlation_id=correlation_id,
            order_id=str(order_id),
            method=payment_method.value,
        )

        payment = await self._create_pending_payment(
            order_id, payment_method, amount, principal, correlation_id
        )
        context = GatewayContext(
            order_id=str(payment.order_id),
            description=f"Payment for order {payment.order_id}",
            return_url=return_url,
            client_ip=client_ip,
        )

        try:
            result: GatewayInitiationResult = await adapter.initiate(payment, context)
        except GatewayUnavailable as e:
            await self._mark_stalled(payment, correlation_id, str(e))
            metrics.record_payment_initiation(payment_method.value, "unavailable")
            logger.warning(
                "payment_initiation_gateway_unavailable",
                correlation_id=correlation_id,
                transaction_id=payment.transaction_id,
                error=str(e),
            )
            raise
        except GatewayRejected as e:
            async with self.session_factory() as db:
                payment = await db.get(Payment, payment.id)
                await self._settle(
                    db,
                    payment,
                    PaymentStatus.FAILED,
                    correlation_id,
                    raw_response=e.details.get("raw_response"),
                    failure_reason=e.message,
                )
                await db.commit()
            metrics.record_payment_initiation(payment_method.value, "failed")
            logger.error(
                "payment_initiation_rejected",
                correlation_id=correlation_id,
                transaction_id=payment.transaction_id,
                error=e.message,
            )
            raise

        async with self.session_factory() as db:
            payment = await db.get(Payment, payment.id)
            if payment_method is PaymentMethod.COD:
                await self._settle(db, payment, PaymentStatus.SUCCESS, correlation_id)
            elif result.raw_response is not None and payment.gateway_response is None:
                payment.gateway_response = self._truncate(result.raw_response)
            await db.commit()

        metrics.record_payment_initiation(payment_method.value, PaymentStatus(payment.status).value.lower())
        logger.info(
            "payment_initiated",
            correlation_id=correlation_id,
            transaction_id=payment.transaction_id,
            status=PaymentStatus(payment.status).value,
        )
        return PaymentInitiation(
            payment=payment,
            redirect_url=result.redirect_url,
            qr_payload=result.qr_payload,
            gateway_reference=result.gateway_reference,
        )

    async def apply_gateway_outcome(
        self,
        transaction_id: str,
        outcome: "PaymentStatus | str",
        gateway_transaction_id: Optional[str] = None,
        raw_response: Optional[str] = None,
    ) -> PaymentStatus:
        """
        Apply a verified gateway outcome exactly once.

        Redelivery of an outcome that is already recorded (including SUCCESS
        after a refund) is a no-op returning the recorded status.

        Args:
            transaction_id: Internal transaction id embedded in the callback
            outcome: SUCCESS, FAILED or CANCELLED
            gateway_transaction_id: Gateway-side id, stored on first apply
            raw_response: Callback payload, stored truncated

        Returns:
            PaymentStatus: Recorded status after the call

        Raises:
            UnrecognizedTransaction: No payment with that id
            ConflictingNotification: Outcome contradicts the recorded status
        """
        try:
            reported = PaymentStatus(outcome)
        except ValueError:
            raise InvalidRequest(f"Unknown payment outcome: {outcome!r}") from None
        if reported not in GATEWAY_OUTCOMES:
            raise InvalidRequest(f"Gateways cannot report {reported.value}")

        correlation_id = new_correlation_id()
        async with self.session_factory() as db:
            payment = await self._find(db, transaction_id)
            if payment is None:
                raise UnrecognizedTransaction(
                    f"No payment for transaction {transaction_id}", transaction_id=transaction_id
                )

            if payment.status is PaymentStatus.PENDING:
                applied = await self._settle(
                    db,
                    payment,
                    reported,
                    correlation_id,
                    gateway_transaction_id=gateway_transaction_id,
                    raw_response=raw_response,
                    failure_reason=(
                        None if reported is PaymentStatus.SUCCESS else f"Gateway reported {reported.value}"
                    ),
                )
                if applied:
                    await db.commit()
                    return reported
                # Another delivery won the race; judge against what it recorded.
                await db.refresh(payment)

            recorded = PaymentStatus(payment.status)
            if recorded is reported or (
                reported is PaymentStatus.SUCCESS and recorded is PaymentStatus.REFUNDED
            ):
                record_payment_event(
                    db,
                    payment_id=payment.id,
                    event_type="notification.duplicate",
                    event_data={"reported": reported.value, "recorded": recorded.value},
                    correlation_id=correlation_id,
                )
                await db.commit()
                logger.info(
                    "notification_duplicate",
                    transaction_id=transaction_id,
                    status=recorded.value,
                )
                return recorded

            record_payment_event(
                db,
                payment_id=payment.id,
                event_type="notification.conflict",
                event_data={
                    "reported": reported.value,
                    "recorded": recorded.value,
                    "gateway_transaction_id": gateway_transaction_id,
                    "payload": self._truncate(raw_response),
                },
                correlation_id=correlation_id,
            )
            await db.commit()
            logger.error(
                "notification_conflict",
                correlation_id=correlation_id,
                transaction_id=transaction_id,
                reported=reported.value,
                recorded=recorded.value,
            )
            raise ConflictingNotification(
                f"Gateway reported {reported.value} for {transaction_id} "
                f"but {recorded.value} is recorded",
                transaction_id=transaction_id,
                reported=reported.value,
                recorded=recorded.value,
            )

    async def _claim_refund(self, payment: Payment) -> None:
        """
        Stamp ``refund_requested_at`` on a SUCCESS payment that has none.

        Only the caller holding the stamp talks to the gateway.

        Raises:
            InvalidStateTransition: Not SUCCESS, or another refund holds the claim
        """
        async with self.session_factory() as db:
            now = utcnow()
            claimed = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.SUCCESS,
                    Payment.refund_requested_at.is_(None),
                )
                .values(refund_requested_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                current = PaymentStatus(
                    await db.scalar(select(Payment.status).where(Payment.id == payment.id))
                )
                logger.warning(
                    "refund_claim_lost",
                    transaction_id=payment.transaction_id,
                    status=current.value,
                )
                raise InvalidStateTransition(
                    "payment",
                    current.value,
                    PaymentStatus.REFUNDED.value,
                    reason=(
                        "a refund is already in progress"
                        if current is PaymentStatus.SUCCESS
                        else "payment was modified concurrently"
                    ),
                )
            await db.commit()

    async def _release_refund_claim(self, payment_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.SUCCESS)
                .values(refund_requested_at=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _request_refund(self, payment: Payment, amount: Decimal) -> RefundResult:
        method = PaymentMethod(payment.payment_method)
        adapter = self.gateways.get(method)
        try:
            return await adapter.refund(payment, amount)
        except GatewayUnavailable as e:
            metrics.record_refund(method.value, "unavailable")
            logger.warning(
                "refund_gateway_unavailable", transaction_id=payment.transaction_id, error=str(e)
            )
            raise
        except GatewayRejected as e:
            metrics.record_refund(method.value, "rejected")
            logger.error("refund_rejected", transaction_id=payment.transaction_id, error=e.message)
            if isinstance(e, RefundRejected):
                raise
            raise RefundRejected(e.message, **e.details) from e

    async def refund_payment(self, transaction_id: str, amount: AmountLike) -> Payment:
        """
        Refund a successful payment.

        The payment is claimed before the gateway is called, so concurrent
        refunds of one payment reach the gateway at most once. The status
        only changes once the gateway has accepted the refund.

        Raises:
            NotFound: Unknown transaction id
            InvalidStateTransition: Payment is not SUCCESS or is being refunded
            InvalidRequest: Amount not positive or above the payment amount
            UnsupportedOperation: Method has no online refunds (COD)
            GatewayUnavailable: Gateway unreachable; status unchanged
            RefundRejected: Gateway refused; status unchanged
        """
        refund_amount = parse_amount(amount)
        payment = await self.get_payment(transaction_id)
        method = PaymentMethod(payment.payment_method)

        if payment.status is not PaymentStatus.SUCCESS:
            raise InvalidStateTransition(
                "payment", PaymentStatus(payment.status).value, PaymentStatus.REFUNDED.value
            )
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise InvalidRequest(
                f"Refund amount must be between 0.01 and {payment.amount}",
                amount=refund_amount,
            )

        await self._claim_refund(payment)
        try:
            result = await self._request_refund(payment, refund_amount)
        except BaseException:
            # Status is unchanged, so a later refund may try again.
            await asyncio.shield(self._release_refund_claim(payment.id))
            raise

        correlation_id = new_correlation_id()
        async with self.session_factory() as db:
            now = utcnow()
            updated = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.SUCCESS,
                    Payment.refund_requested_at.is_not(None),
                )
                .values(status=PaymentStatus.REFUNDED, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                current = await db.scalar(select(Payment.status).where(Payment.id == payment.id))
                raise InvalidStateTransition(
                    "payment",
                    PaymentStatus(current).value,
                    PaymentStatus.REFUNDED.value,
                    reason="payment was modified concurrently",
                )
            record_payment_event(
                db,
                payment_id=payment.id,
                event_type=EVENT_TYPES[PaymentStatus.REFUNDED],
                event_data={
                    "amount": str(refund_amount),
                    "refund_reference": result.refund_reference,
                },
                correlation_id=correlation_id,
            )
            await db.commit()
            refunded = await db.get(Payment, payment.id, populate_existing=True)

        metrics.record_refund(method.value, "refunded")
        logger.info(
            "payment_refunded",
            correlation_id=correlation_id,
            transaction_id=transaction_id,
            amount=str(refund_amount),
        )
        return refunded
