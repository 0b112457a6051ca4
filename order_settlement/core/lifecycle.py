"""
Order and payment lifecycles.

Every status change in the core is validated against the tables in this
module and nowhere else.

Order state machine:
    PENDING → PROCESSING → SHIPPED → DELIVERED
       ↓          ↓
    CANCELLED  CANCELLED

Payment state machine:
    PENDING → SUCCESS → REFUNDED
       ↓
    FAILED / CANCELLED
"""
from enum import Enum
from typing import Dict, FrozenSet

from order_settlement.core.errors import InvalidRequest, InvalidStateTransition


class PaymentMethod(str, Enum):
    """Canonical payment methods."""

    COD = "COD"  # Cash on delivery
    MOMO = "MOMO"  # Gateway A
    VNPAY = "VNPAY"  # Gateway B


class OrderStatus(str, Enum):
    """Order fulfillment states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment states."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# A new payment attempt is allowed only when every earlier attempt ended in one of these.
RETRYABLE_PAYMENT_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})

CANCELLABLE_ORDER_STATUSES = frozenset(
    s for s, targets in ORDER_TRANSITIONS.items() if OrderStatus.CANCELLED in targets
)


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[OrderStatus(current)]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    """
    Validate an order transition.

    Raises:
        InvalidStateTransition: If ``target`` is not reachable from ``current``
    """
    if not can_transition_order(current, target):
        raise InvalidStateTransition("order", OrderStatus(current).value, OrderStatus(target).value)


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Validate a payment transition.

    Raises:
        InvalidStateTransition: If ``target`` is not reachable from ``current``
    """
    if not can_transition_payment(current, target):
        raise InvalidStateTransition(
            "payment", PaymentStatus(current).value, PaymentStatus(target).value
        )


def parse_payment_method(value: "PaymentMethod | str") -> PaymentMethod:
    """
    Coerce ``value`` to a PaymentMethod.

    Raises:
        InvalidRequest: If the value names no supported method
    """
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidRequest(f"Unsupported payment method: {value!r}") from None


def parse_order_status(value: "OrderStatus | str") -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidRequest(f"Unknown order status: {value!r}") from None
