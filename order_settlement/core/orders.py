"""
Order aggregate service.

Creates orders with inventory reserved up front, and moves them through the
fulfillment lifecycle. Status changes are compare-and-swap UPDATEs keyed on
``(id, status)`` so only one of several racing requests applies a
transition and performs its side effects (inventory release, cancelling
pending payments).
"""
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_settlement.core.audit import new_correlation_id, record_payment_event
from order_settlement.core.collaborators import Catalog, CatalogItem, Principal, UserDirectory
from order_settlement.core.errors import (
    Forbidden,
    InsufficientStock,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
)
from order_settlement.core.inventory import InventoryLedger
from order_settlement.core.lifecycle import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ensure_order_transition,
    parse_order_status,
    parse_payment_method,
)
from order_settlement.core.money import line_total, parse_amount, sum_amounts
from order_settlement.core.pricing import PricingPolicy
from order_settlement.core.saga import CompensatingAction, ForwardAction, Saga
from order_settlement.database.models import Order, OrderItem, Payment, utcnow
from order_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class OrderLineRequest:
    """One requested cart line."""

    product_id: str
    quantity: int
    variant_id: Optional[str] = None


def coerce_uuid(value: "uuid.UUID | str", entity: str = "order") -> uuid.UUID:
    """
    Parse an identifier supplied by a caller.

    Raises:
        NotFound: If the value is not a UUID (no such record can exist)
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"{entity.capitalize()} {value} not found", id=value) from None


def locked_order_status(order_id: uuid.UUID) -> Select:
    """
    Order status read that takes the row lock (``FOR UPDATE``) on PostgreSQL.

    Anything that changes both an order and one of its payments in one
    transaction locks the order row first, then the payment.
    """
    return select(Order.status).where(Order.id == order_id).with_for_update()


class OrderService:
    """
    Order creation, cancellation, status updates and read access.

    Every public method opens its own sessions from ``session_factory``;
    ``mark_payment_confirmed`` is the exception and joins the caller's
    transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Optional[Catalog] = None,
        users: Optional[UserDirectory] = None,
        inventory: Optional[InventoryLedger] = None,
        pricing: Optional[PricingPolicy] = None,
    ):
        """
        Initialize order service.

        Args:
            session_factory: Async session factory
            catalog: Product/variant lookup (required for create_order)
            users: User existence lookup (required for create_order)
            inventory: Optional inventory ledger
            pricing: Optional pricing policy (defaults to settings)
        """
        self.session_factory = session_factory
        self.catalog = catalog
        self.users = users
        self.inventory = inventory or InventoryLedger()
        self.pricing = pricing or PricingPolicy.from_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _resolve_lines(
        self, items: Sequence[OrderLineRequest]
    ) -> List[tuple[OrderLineRequest, CatalogItem]]:
        resolved = []
        for line in items:
            if (
                not isinstance(line.quantity, int)
                or isinstance(line.quantity, bool)
                or line.quantity < 1
            ):
                raise InvalidRequest(
                    f"Quantity must be a positive integer, got {line.quantity!r}",
                    product_id=line.product_id,
                )

            item = await self.catalog.lookup(line.product_id, line.variant_id)
            if item is None or not item.active:
                raise InvalidRequest(
                    "Unknown or unavailable product",
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                )
            resolved.append((line, item))
        return resolved

    async def _check_stock_snapshot(self, requested: Mapping[str, int]) -> None:
        """Fail fast against current stock before reserving anything."""
        async with self.session_factory() as db:
            for sku, quantity in requested.items():
                available = await self.inventory.available(db, sku)
                if available is None:
                    raise InvalidRequest(f"No inventory record for {sku}", sku=sku)
                if available < quantity:
                    metrics.record_inventory_rejection()
                    raise InsufficientStock(sku=sku, requested=quantity, available=available)

    def _reserve_step(self, sku: str, quantity: int) -> ForwardAction:
        async def reserve(context: Dict[str, Any]) -> None:
            async with self.session_factory() as db:
                await self.inventory.reserve(db, sku, quantity)
                await db.commit()

        return reserve

    def _release_step(self, sku: str, quantity: int) -> CompensatingAction:
        async def release(context: Dict[str, Any], result: Any) -> None:
            async with self.session_factory() as db:
                await self.inventory.release(db, sku, quantity)
                await db.commit()
            logger.info("order_reservation_compensated", sku=sku, quantity=quantity)

        return release

    async def create_order(
        self,
        items: Sequence[OrderLineRequest],
        shipping_address: Mapping[str, Any],
        payment_method: "PaymentMethod | str",
        principal: Principal,
    ) -> Order:
        """
        Create a PENDING order with stock reserved for every line.

        Each reservation is committed on its own and registered with a
        compensating release, so a failure on a later line or on the order
        insert, or cancellation of the call, returns all stock taken by this
        call before the error propagates.

        Args:
            items: Requested lines (duplicate SKUs are reserved separately)
            shipping_address: Address snapshot stored on the order
            payment_method: Method chosen at checkout
            principal: Authenticated buyer

        Returns:
            Order: Persisted order with items loaded

        Raises:
            InvalidRequest: Empty cart, bad quantity, unknown product or user
            InsufficientStock: A line exceeds available stock
        """
        if self.catalog is None or self.users is None:
            raise RuntimeError("OrderService needs catalog and user lookups to create orders")
        if not items:
            raise InvalidRequest("Order must contain at least one item")
        if not shipping_address:
            raise InvalidRequest("Shipping address is required")
        method = parse_payment_method(payment_method)

        if not await self.users.exists(principal.user_id):
            raise InvalidRequest("Unknown user", user_id=principal.user_id)

        resolved = await self._resolve_lines(items)

        requested: Counter[str] = Counter()
        for line, item in resolved:
            requested[item.sku] += line.quantity
        await self._check_stock_snapshot(requested)

        subtotal = sum_amounts(line_total(item.unit_price, line.quantity) for line, item in resolved)
        quote = self.pricing.quote(subtotal)

        async def persist_order(context: Dict[str, Any]) -> Order:
            async with self.session_factory() as db:
                order = Order(
                    user_id=principal.user_id,
                    status=OrderStatus.PENDING,
                    payment_method=method,
                    shipping_address=dict(shipping_address),
                )
                order.items = [
                    OrderItem(
                        position=position,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        sku=item.sku,
                        product_name=item.name,
                        quantity=line.quantity,
                        unit_price=parse_amount(item.unit_price),
                    )
                    for position, (line, item) in enumerate(resolved)
                ]
                order.recompute_totals(tax=quote.tax, shipping_fee=quote.shipping_fee)
                db.add(order)
                await db.commit()
                return order

        saga = Saga("create_order")
        for index, (line, item) in enumerate(resolved):
            saga.add_step(
                f"reserve_{index}",
                self._reserve_step(item.sku, line.quantity),
                self._release_step(item.sku, line.quantity),
            )
        saga.add_step("persist_order", persist_order)

        context = await saga.execute()
        order: Order = context["persist_order_result"]

        metrics.record_order_created(method.value)
        logger.info(
            "order_created",
            order_id=str(order.id),
            user_id=order.user_id,
            payment_method=method.value,
            item_count=len(order.items),
            total=str(order.total),
        )
        return order

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _load(self, db: AsyncSession, order_id: "uuid.UUID | str") -> Order:
        order = await db.get(Order, coerce_uuid(order_id))
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    async def _compare_and_set_status(
        db: AsyncSession, order_id: uuid.UUID, expected: OrderStatus, target: OrderStatus
    ) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _release_inventory(self, db: AsyncSession, order: Order) -> None:
        for item in order.items:
            await self.inventory.release(db, item.sku, item.quantity)

    async def _cancel_pending_payments(self, db: AsyncSession, order_id: uuid.UUID) -> None:
        pending = await db.scalars(
            select(Payment.id).where(
                Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING
            )
        )
        correlation_id = new_correlation_id()
        for payment_id in pending.all():
            now = utcnow()
            result = await db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
                .values(
                    status=PaymentStatus.CANCELLED,
                    failure_reason="Order cancelled",
                    processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                record_payment_event(
                    db,
                    payment_id=payment_id,
                    event_type="payment.cancelled",
                    event_data={"reason": "order_cancelled", "order_id": str(order_id)},
                    correlation_id=correlation_id,
                )
                logger.info(
                    "pending_payment_cancelled",
                    payment_id=str(payment_id),
                    order_id=str(order_id),
                )

    async def _transition(self, db: AsyncSession, order: Order, target: OrderStatus) -> None:
        """
        Apply one table-validated transition with its side effects.

        Raises:
            InvalidStateTransition: If the move is not allowed or another
                request changed the status first
        """
        current = OrderStatus(order.status)
        ensure_order_transition(current, target)

        if not await self._compare_and_set_status(db, order.id, current, target):
            actual = await db.scalar(select(Order.status).where(Order.id == order.id))
            raise InvalidStateTransition(
                "order",
                OrderStatus(actual).value if actual else current.value,
                target.value,
                reason="order was modified concurrently",
            )

        if target is OrderStatus.CANCELLED:
            await self._release_inventory(db, order)
            await self._cancel_pending_payments(db, order.id)
            metrics.record_order_cancelled()

        metrics.record_order_transition(current.value, target.value)
        logger.info(
            "order_status_changed",
            order_id=str(order.id),
            from_status=current.value,
            to_status=target.value,
        )
        await db.refresh(order)

    async def cancel_order(self, order_id: "uuid.UUID | str", principal: Principal) -> Order:
        """
        Cancel an order and return its stock.

        Args:
            order_id: Order to cancel
            principal: Requester (owner or administrator)

        Returns:
            Order: The cancelled order

        Raises:
            NotFound: Unknown order
            Forbidden: Requester is neither owner nor admin
            InvalidStateTransition: Order is not PENDING or PROCESSING
        """
        async with self.session_factory() as db:
            order = await self._load(db, order_id)
            if not principal.can_access(order.user_id):
                logger.warning(
                    "order_cancel_forbidden",
                    order_id=str(order.id),
                    requester=principal.user_id,
                )
                raise Forbidden("Not allowed to cancel this order", order_id=str(order.id))

            await self._transition(db, order, OrderStatus.CANCELLED)
            await db.commit()
            return order

    async def update_status(
        self, order_id: "uuid.UUID | str", new_status: "OrderStatus | str"
    ) -> Order:
        """
        Administrative status change.

        PENDING -> PROCESSING additionally requires a successful payment
        unless the order is cash-on-delivery.

        Raises:
            NotFound: Unknown order
            InvalidRequest: Unknown status value
            InvalidStateTransition: Disallowed move or unmet payment precondition
        """
        target = parse_order_status(new_status)

        async with self.session_factory() as db:
            order = await self._load(db, order_id)
            current = OrderStatus(order.status)
            ensure_order_transition(current, target)

            if (
                current is OrderStatus.PENDING
                and target is OrderStatus.PROCESSING
                and order.payment_method is not PaymentMethod.COD
                and not await self._has_successful_payment(db, order.id)
            ):
                raise InvalidStateTransition(
                    "order", current.value, target.value, reason="payment has not succeeded"
                )

            await self._transition(db, order, target)
            await db.commit()
            return order

    @staticmethod
    async def _has_successful_payment(db: AsyncSession, order_id: uuid.UUID) -> bool:
        found = await db.scalar(
            select(Payment.id)
            .where(Payment.order_id == order_id, Payment.status == PaymentStatus.SUCCESS)
            .limit(1)
        )
        return found is not None

    async def mark_payment_confirmed(self, db: AsyncSession, order_id: uuid.UUID) -> OrderStatus:
        """
        Advance a PENDING order to PROCESSING inside the caller's transaction.

        Orders already past PENDING are left alone. A CANCELLED order is
        never reopened; the caller decides how to record that.

        Returns:
            OrderStatus: Order status after the call
        """
        status = await db.scalar(locked_order_status(order_id))
        if status is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)

        if status is OrderStatus.PENDING:
            if await self._compare_and_set_status(
                db, order_id, OrderStatus.PENDING, OrderStatus.PROCESSING
            ):
                metrics.record_order_transition(
                    OrderStatus.PENDING.value, OrderStatus.PROCESSING.value
                )
                logger.info("order_payment_confirmed", order_id=str(order_id))
                return OrderStatus.PROCESSING
            status = await db.scalar(select(Order.status).where(Order.id == order_id))

        return OrderStatus(status)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: "uuid.UUID | str", principal: Principal) -> Order:
        """Order with items (payments are not loaded)."""
        async with self.session_factory() as db:
            order = await self._load(db, order_id)
            if not principal.can_access(order.user_id):
                raise Forbidden("Not allowed to view this order", order_id=str(order.id))
            return order

    async def list_orders(
        self,
        principal: Principal,
        status: "OrderStatus | str | None" = None,
        page: int = 0,
        size: int = 20,
    ) -> List[Order]:
        """
        Newest-first page of orders.

        Administrators see every order; other users only their own.
        """
        if page < 0 or not 1 <= size <= MAX_PAGE_SIZE:
            raise InvalidRequest(
                f"Invalid page ({page}) or size ({size}); size must be 1-{MAX_PAGE_SIZE}"
            )

        stmt = select(Order).order_by(Order.created_at.desc(), Order.id)
        if not principal.is_admin:
            stmt = stmt.where(Order.user_id == principal.user_id)
        if status is not None:
            stmt = stmt.where(Order.status == parse_order_status(status))
        stmt = stmt.offset(page * size).limit(size)

        async with self.session_factory() as db:
            result = await db.scalars(stmt)
            return list(result.all())
