"""Core settlement logic."""
from .errors import SettlementError
from .lifecycle import OrderStatus, PaymentMethod, PaymentStatus

__all__ = [
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "SettlementError",
]
