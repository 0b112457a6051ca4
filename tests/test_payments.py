"""
Tests for payment initiation, gateway outcomes and refunds.
"""
import asyncio
import json
import re
import uuid
from contextlib import contextmanager
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event, update
from sqlalchemy.dialects import postgresql

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
    UnsupportedOperation,
)
from order_settlement.core.lifecycle import OrderStatus, PaymentStatus
from order_settlement.core.orders import OrderLineRequest, locked_order_status
from order_settlement.core.payments import generate_transaction_id
from order_settlement.core.signing import SignatureAlgorithm, verify_signature
from order_settlement.database.models import Order

TOTAL = Decimal("26.00")


@pytest_asyncio.fixture
async def momo_payment(placed_order, payments, buyer):
    """Pending MoMo payment for the 26.00 order."""
    return await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)


@pytest_asyncio.fixture
async def paid_momo(momo_payment, payments):
    await payments.apply_gateway_outcome(
        momo_payment.transaction_id, PaymentStatus.SUCCESS, gateway_transaction_id="4088878653"
    )
    return momo_payment


@pytest.mark.unit
class TestTransactionIds:
    def test_format(self):
        assert re.fullmatch(r"TXN_\d{13}_[0-9A-F]{8}", generate_transaction_id())

    def test_unique(self):
        assert len({generate_transaction_id() for _ in range(100)}) == 100


@pytest.mark.unit
class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_cash_on_delivery_settles_immediately(
        self, orders, payments, stock, buyer, events
    ):
        await stock("var-x", 2)
        order = await orders.create_order(
            [OrderLineRequest("prod-1", 2, variant_id="var-x")], {"city": "Hanoi"}, "COD", buyer
        )

        initiation = await payments.initiate_payment(order.id, "COD", TOTAL, buyer)

        assert initiation.status is PaymentStatus.SUCCESS
        assert initiation.redirect_url is None
        assert (await orders.get_order(order.id, buyer)).status is OrderStatus.PROCESSING
        assert [e.event_type for e in await events()] == ["payment.created", "payment.succeeded"]

    @pytest.mark.asyncio
    async def test_momo_creates_signed_request(
        self, momo_payment, fake_gateway, test_settings, placed_order, payments
    ):
        assert momo_payment.status is PaymentStatus.PENDING
        assert momo_payment.redirect_url == "https://test-payment.momo.vn/pay/abc123"
        assert momo_payment.qr_payload.startswith("momo://")
        assert momo_payment.payment.amount == TOTAL
        assert momo_payment.payment.gateway_response is not None

        request = fake_gateway.requests[0]
        assert request.url.path == "/v2/gateway/api/create"
        body = json.loads(request.content)
        assert body["amount"] == 2600
        assert body["orderId"] == momo_payment.transaction_id
        signed = {k: v for k, v in body.items() if k not in ("signature", "lang")}
        signed["accessKey"] = test_settings.momo_access_key
        assert verify_signature(
            signed, body["signature"], test_settings.momo_secret_key, SignatureAlgorithm.HMAC_SHA256
        )

        attempts = await payments.list_payments(placed_order.id)
        assert [p.transaction_id for p in attempts] == [momo_payment.transaction_id]

    @pytest.mark.asyncio
    async def test_vnpay_returns_checkout_url_without_http_call(
        self, placed_order, payments, buyer, fake_gateway, test_settings
    ):
        initiation = await payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer)

        assert initiation.status is PaymentStatus.PENDING
        assert initiation.redirect_url.startswith(test_settings.vnpay_payment_url + "?")
        assert f"vnp_TxnRef={initiation.transaction_id}" in initiation.redirect_url
        assert "vnp_Amount=2600" in initiation.redirect_url
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_amount_must_match_total(self, placed_order, payments, buyer):
        with pytest.raises(AmountMismatch):
            await payments.initiate_payment(placed_order.id, "MOMO", Decimal("25.00"), buyer)

        assert await payments.list_payments(placed_order.id) == []

    @pytest.mark.asyncio
    async def test_float_amount_rejected(self, placed_order, payments, buyer):
        with pytest.raises(InvalidRequest):
            await payments.initiate_payment(placed_order.id, "MOMO", 26.0, buyer)

    @pytest.mark.asyncio
    async def test_foreign_user(self, placed_order, payments, other_user):
        with pytest.raises(Forbidden):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, other_user)

    @pytest.mark.asyncio
    async def test_unknown_order(self, payments, buyer):
        with pytest.raises(NotFound):
            await payments.initiate_payment(uuid.uuid4(), "MOMO", TOTAL, buyer)

    @pytest.mark.asyncio
    async def test_cancelled_order(self, placed_order, orders, payments, buyer):
        await orders.cancel_order(placed_order.id, buyer)

        with pytest.raises(InvalidStateTransition):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

    @pytest.mark.asyncio
    async def test_second_attempt_while_pending(self, momo_payment, placed_order, payments, buyer):
        with pytest.raises(ConflictingPayment):
            await payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer)

    @pytest.mark.asyncio
    async def test_gateway_rejection_fails_payment_and_allows_retry(
        self, placed_order, payments, buyer, fake_gateway
    ):
        fake_gateway.momo_create = {"resultCode": 1001, "message": "Insufficient balance"}

        with pytest.raises(GatewayRejected):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

        [failed] = await payments.list_payments(placed_order.id)
        assert failed.status is PaymentStatus.FAILED
        assert "Insufficient balance" in failed.failure_reason

        retry = await payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer)
        assert retry.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_http_4xx_is_a_rejection(self, placed_order, payments, buyer, fake_gateway):
        fake_gateway.status_code = 400

        with pytest.raises(GatewayRejected):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

        [failed] = await payments.list_payments(placed_order.id)
        assert failed.status is PaymentStatus.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", ["connect", "http_503"])
    async def test_unavailable_gateway_leaves_payment_pending(
        self, placed_order, payments, buyer, fake_gateway, failure
    ):
        if failure == "connect":
            fake_gateway.error = httpx.ConnectError("connection refused")
        else:
            fake_gateway.status_code = 503

        with pytest.raises(GatewayUnavailable):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

        [pending] = await payments.list_payments(placed_order.id)
        assert pending.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_same_method_resumes_stalled_attempt(
        self, placed_order, payments, buyer, fake_gateway, events
    ):
        fake_gateway.error = httpx.ConnectError("connection refused")
        with pytest.raises(GatewayUnavailable):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)
        [stalled] = await payments.list_payments(placed_order.id)

        fake_gateway.error = None
        resumed = await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

        assert resumed.transaction_id == stalled.transaction_id
        assert resumed.status is PaymentStatus.PENDING
        assert resumed.redirect_url == "https://test-payment.momo.vn/pay/abc123"
        assert resumed.payment.failure_reason is None
        assert len(await payments.list_payments(placed_order.id)) == 1
        assert len(await events("payment.initiation_stalled")) == 1
        assert len(await events("payment.initiation_resumed")) == 1

    @pytest.mark.asyncio
    async def test_stalled_attempt_blocks_other_methods(
        self, placed_order, payments, buyer, fake_gateway
    ):
        fake_gateway.error = httpx.ConnectError("connection refused")
        with pytest.raises(GatewayUnavailable):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

        with pytest.raises(ConflictingPayment):
            await payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer)

    @pytest.mark.asyncio
    async def test_attempt_in_flight_is_not_resumed(self, momo_payment, placed_order, payments, buyer):
        """Only attempts that hit an outage are re-driven."""
        with pytest.raises(ConflictingPayment):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)

    @pytest.mark.asyncio
    async def test_lookups(self, momo_payment, payments):
        found = await payments.get_payment(momo_payment.transaction_id)
        assert found.id == momo_payment.payment.id
        assert await payments.find_payment("TXN_0_DEADBEEF") is None
        with pytest.raises(NotFound):
            await payments.get_payment("TXN_0_DEADBEEF")


@pytest.mark.unit
class TestApplyGatewayOutcome:
    @pytest.mark.asyncio
    async def test_success_confirms_order(
        self, momo_payment, placed_order, payments, orders, buyer
    ):
        status = await payments.apply_gateway_outcome(
            momo_payment.transaction_id, "SUCCESS", gateway_transaction_id="4088878653"
        )

        assert status is PaymentStatus.SUCCESS
        payment = await payments.get_payment(momo_payment.transaction_id)
        assert payment.gateway_transaction_id == "4088878653"
        assert payment.processed_at is not None
        assert (await orders.get_order(placed_order.id, buyer)).status is OrderStatus.PROCESSING
        found = await payments.find_by_gateway_transaction_id("4088878653")
        assert found.id == payment.id

    @pytest.mark.asyncio
    async def test_redelivery_is_a_noop(self, momo_payment, payments, events):
        first = await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")
        second = await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        assert first is second is PaymentStatus.SUCCESS
        assert len(await events("payment.succeeded")) == 1
        assert len(await events("notification.duplicate")) == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_order_pending(
        self, momo_payment, placed_order, payments, orders, buyer
    ):
        status = await payments.apply_gateway_outcome(momo_payment.transaction_id, "FAILED")

        assert status is PaymentStatus.FAILED
        assert (await orders.get_order(placed_order.id, buyer)).status is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_contradicting_outcome_is_a_conflict(self, momo_payment, payments, events):
        await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        with pytest.raises(ConflictingNotification):
            await payments.apply_gateway_outcome(
                momo_payment.transaction_id, "FAILED", raw_response='{"resultCode": 1001}'
            )

        payment = await payments.get_payment(momo_payment.transaction_id)
        assert payment.status is PaymentStatus.SUCCESS
        [conflict] = await events("notification.conflict")
        assert conflict.event_data["reported"] == "FAILED"
        assert conflict.event_data["recorded"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_success_after_order_cancel_is_a_conflict(
        self, momo_payment, placed_order, payments, orders, buyer
    ):
        """Cancelling the order cancelled the pending payment first."""
        await orders.cancel_order(placed_order.id, buyer)

        with pytest.raises(ConflictingNotification):
            await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        assert (await orders.get_order(placed_order.id, buyer)).status is OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_success_for_closed_order_is_recorded(
        self, momo_payment, placed_order, payments, orders, buyer, session_factory, events
    ):
        """The order closes without touching the payment (outside writer)."""
        async with session_factory() as db:
            await db.execute(
                update(Order)
                .where(Order.id == placed_order.id)
                .values(status=OrderStatus.CANCELLED)
            )
            await db.commit()

        status = await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        assert status is PaymentStatus.SUCCESS
        assert (await orders.get_order(placed_order.id, buyer)).status is OrderStatus.CANCELLED
        assert len(await events("payment.succeeded_for_closed_order")) == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, payments):
        with pytest.raises(UnrecognizedTransaction):
            await payments.apply_gateway_outcome("TXN_0_DEADBEEF", "SUCCESS")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", ["REFUNDED", "PENDING", "MAYBE"])
    async def test_gateways_cannot_report_other_statuses(self, momo_payment, payments, outcome):
        with pytest.raises(InvalidRequest):
            await payments.apply_gateway_outcome(momo_payment.transaction_id, outcome)

    @pytest.mark.asyncio
    async def test_mark_payment_confirmed_never_reopens(
        self, placed_order, orders, buyer, session_factory
    ):
        await orders.cancel_order(placed_order.id, buyer)

        async with session_factory() as db:
            status = await orders.mark_payment_confirmed(db, placed_order.id)
            await db.commit()

        assert status is OrderStatus.CANCELLED


@pytest.mark.unit
class TestRefunds:
    @pytest.mark.asyncio
    async def test_momo_full_refund(self, paid_momo, payments, fake_gateway, events):
        refunded = await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        assert refunded.status is PaymentStatus.REFUNDED
        request = fake_gateway.requests[-1]
        assert request.url.path == "/v2/gateway/api/refund"
        body = json.loads(request.content)
        assert body["transId"] == "4088878653"
        assert body["amount"] == 2600
        [event] = await events("payment.refunded")
        assert event.event_data["amount"] == "26.00"

    @pytest.mark.asyncio
    async def test_success_redelivered_after_refund(self, paid_momo, payments):
        await payments.refund_payment(paid_momo.transaction_id, Decimal("10.00"))

        status = await payments.apply_gateway_outcome(paid_momo.transaction_id, "SUCCESS")

        assert status is PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0.00"), Decimal("26.01"), Decimal("-1.00")])
    async def test_amount_bounds(self, paid_momo, payments, amount):
        with pytest.raises(InvalidRequest):
            await payments.refund_payment(paid_momo.transaction_id, amount)

    @pytest.mark.asyncio
    async def test_pending_payment_cannot_be_refunded(self, momo_payment, payments):
        with pytest.raises(InvalidStateTransition):
            await payments.refund_payment(momo_payment.transaction_id, TOTAL)

    @pytest.mark.asyncio
    async def test_refund_twice(self, paid_momo, payments):
        await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        with pytest.raises(InvalidStateTransition):
            await payments.refund_payment(paid_momo.transaction_id, TOTAL)

    @pytest.mark.asyncio
    async def test_gateway_refusal_keeps_success(self, paid_momo, payments, fake_gateway):
        fake_gateway.momo_refund = {"resultCode": 1002, "message": "Transaction rejected"}

        with pytest.raises(RefundRejected):
            await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        payment = await payments.get_payment(paid_momo.transaction_id)
        assert payment.status is PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_gateway_outage_keeps_success(self, paid_momo, payments, fake_gateway):
        fake_gateway.status_code = 502

        with pytest.raises(GatewayUnavailable):
            await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        payment = await payments.get_payment(paid_momo.transaction_id)
        assert payment.status is PaymentStatus.SUCCESS
        assert payment.refund_requested_at is None

    @pytest.mark.asyncio
    async def test_refund_can_be_retried_after_outage(self, paid_momo, payments, fake_gateway):
        fake_gateway.status_code = 502
        with pytest.raises(GatewayUnavailable):
            await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        fake_gateway.status_code = 200
        refunded = await payments.refund_payment(paid_momo.transaction_id, TOTAL)

        assert refunded.status is PaymentStatus.REFUNDED
        assert refunded.refund_requested_at is not None

    @pytest.mark.asyncio
    async def test_momo_refund_needs_gateway_transaction_id(self, momo_payment, payments):
        await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        with pytest.raises(RefundRejected):
            await payments.refund_payment(momo_payment.transaction_id, TOTAL)

    @pytest.mark.asyncio
    async def test_vnpay_partial_refund(self, placed_order, payments, buyer, fake_gateway):
        initiation = await payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer)
        await payments.apply_gateway_outcome(
            initiation.transaction_id, "SUCCESS", gateway_transaction_id="14226112"
        )

        refunded = await payments.refund_payment(initiation.transaction_id, Decimal("6.00"))

        assert refunded.status is PaymentStatus.REFUNDED
        body = json.loads(fake_gateway.requests[-1].content)
        assert body["vnp_Command"] == "refund"
        assert body["vnp_TransactionType"] == "03"
        assert body["vnp_Amount"] == "600"
        assert body["vnp_TransactionNo"] == "14226112"

    @pytest.mark.asyncio
    async def test_cash_on_delivery_cannot_be_refunded_online(
        self, orders, payments, stock, buyer
    ):
        await stock("var-x", 2)
        order = await orders.create_order(
            [OrderLineRequest("prod-1", 2, variant_id="var-x")], {"city": "Hanoi"}, "COD", buyer
        )
        initiation = await payments.initiate_payment(order.id, "COD", TOTAL, buyer)

        with pytest.raises(UnsupportedOperation):
            await payments.refund_payment(initiation.transaction_id, TOTAL)


@pytest.mark.race
class TestPaymentRaces:
    @pytest.mark.asyncio
    async def test_duplicate_notifications_apply_once(
        self, momo_payment, placed_order, payments, orders, buyer, events
    ):
        """Five concurrent deliveries of the same SUCCESS settle exactly once."""
        results = await asyncio.gather(
            *[
                payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")
                for _ in range(5)
            ]
        )

        assert all(status is PaymentStatus.SUCCESS for status in results)
        assert len(await events("payment.succeeded")) == 1
        assert len(await events("notification.duplicate")) == 4
        assert (await orders.get_order(placed_order.id, buyer)).status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_concurrent_initiations_create_one_pending_payment(
        self, placed_order, payments, buyer
    ):
        results = await asyncio.gather(
            payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer),
            payments.initiate_payment(placed_order.id, "VNPAY", TOTAL, buyer),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictingPayment) for r in results) == 1
        assert len(await payments.list_payments(placed_order.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refunds_reach_gateway_once(self, paid_momo, payments, fake_gateway):
        results = await asyncio.gather(
            payments.refund_payment(paid_momo.transaction_id, TOTAL),
            payments.refund_payment(paid_momo.transaction_id, TOTAL),
            return_exceptions=True,
        )

        refund_calls = [r for r in fake_gateway.requests if r.url.path == "/v2/gateway/api/refund"]
        assert len(refund_calls) == 1
        assert sum(isinstance(r, InvalidStateTransition) for r in results) == 1
        payment = await payments.get_payment(paid_momo.transaction_id)
        assert payment.status is PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_stalled_attempt_is_resumed_once(
        self, placed_order, payments, buyer, fake_gateway
    ):
        fake_gateway.error = httpx.ConnectError("connection refused")
        with pytest.raises(GatewayUnavailable):
            await payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer)
        fake_gateway.error = None

        results = await asyncio.gather(
            payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer),
            payments.initiate_payment(placed_order.id, "MOMO", TOTAL, buyer),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictingPayment) for r in results) == 1
        create_calls = [r for r in fake_gateway.requests if r.url.path == "/v2/gateway/api/create"]
        assert len(create_calls) == 2
        assert len(await payments.list_payments(placed_order.id)) == 1


@contextmanager
def captured_statements(engine):
    """Collect the SQL sent to the database, whitespace-normalized and uppercased."""
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(" ".join(statement.split()).upper())

    event.listen(engine.sync_engine, "before_cursor_execute", capture)
    try:
        yield statements
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", capture)


def first_index(statements, prefix):
    return next(i for i, s in enumerate(statements) if s.startswith(prefix))


@pytest.mark.race
class TestRowLockOrder:
    """Order row before payment row, on every path that writes both."""

    def test_order_lock_is_for_update_on_postgresql(self):
        sql = str(locked_order_status(uuid.uuid4()).compile(dialect=postgresql.dialect()))

        assert sql.rstrip().endswith("FOR UPDATE")

    @pytest.mark.asyncio
    async def test_success_locks_order_before_payment(self, engine, momo_payment, payments):
        with captured_statements(engine) as statements:
            await payments.apply_gateway_outcome(momo_payment.transaction_id, "SUCCESS")

        assert first_index(statements, "SELECT ORDERS.STATUS") < first_index(
            statements, "UPDATE PAYMENTS"
        )

    @pytest.mark.asyncio
    async def test_cancel_locks_order_before_payment(
        self, engine, momo_payment, placed_order, orders, buyer
    ):
        with captured_statements(engine) as statements:
            await orders.cancel_order(placed_order.id, buyer)

        assert first_index(statements, "UPDATE ORDERS") < first_index(
            statements, "UPDATE PAYMENTS"
        )
