"""SQLAlchemy database models for order settlement."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from order_settlement.core.lifecycle import OrderStatus, PaymentMethod, PaymentStatus
from order_settlement.core.money import line_total, sum_amounts

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

Amount = Numeric(14, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_enum(enum_cls: Any, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        create_constraint=True,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class InventoryItem(Base):
    """
    Per-SKU available-quantity counter.

    Only ever changed through single conditional UPDATE statements
    (see ``order_settlement.core.inventory``).
    """

    __tablename__ = "inventory_items"

    sku: Mapped[str] = mapped_column(String(100), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (CheckConstraint("available >= 0", name="non_negative_available"),)

    def __repr__(self) -> str:
        """String representation of InventoryItem."""
        return f"<InventoryItem(sku={self.sku}, available={self.available})>"


class Order(Base):
    """
    Order aggregate root.

    Totals are always derived from the items, tax and shipping fee via
    ``recompute_totals``; they are never taken from a client.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        _status_enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _status_enum(PaymentMethod, "order_payment_method"), nullable=False
    )
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    tax: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    shipping_fee: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    total: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="non_negative_subtotal"),
        CheckConstraint("tax >= 0", name="non_negative_tax"),
        CheckConstraint("shipping_fee >= 0", name="non_negative_shipping"),
        Index("idx_orders_user_created", "user_id", "created_at"),
    )

    def recompute_totals(self, tax: Decimal, shipping_fee: Decimal) -> None:
        """Derive subtotal and total from the items plus tax and shipping."""
        self.subtotal = sum_amounts(item.line_total for item in self.items)
        self.tax = tax
        self.shipping_fee = shipping_fee
        self.total = self.subtotal + tax + shipping_fee

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total}, status={self.status})>"
        )


class OrderItem(Base):
    """Line item owned by an order; unit price is captured at order time."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Amount, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="positive_quantity"),
        CheckConstraint("unit_price >= 0", name="non_negative_unit_price"),
    )

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price, self.quantity)

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return f"<OrderItem(sku={self.sku}, quantity={self.quantity}, unit_price={self.unit_price})>"


class Payment(Base):
    """
    Payment attempt for an order.

    Many payments may reference one order, but at most one of them may be
    PENDING at a time (enforced by ``uq_payments_pending_per_order``).
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _status_enum(PaymentMethod, "payment_method"), nullable=False
    )
    status: Mapped[PaymentStatus] = mapped_column(
        _status_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Stamped before a refund goes to the gateway, cleared if the gateway does not accept it.
    refund_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        Index(
            "uq_payments_pending_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    @validates("amount")
    def _freeze_amount(self, key: str, value: Decimal) -> Decimal:
        if self.amount is not None and Decimal(self.amount) != Decimal(value):
            raise ValueError("Payment amount is immutable once set")
        return value

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, transaction_id={self.transaction_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every status change and every duplicate or conflicting
    notification. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
