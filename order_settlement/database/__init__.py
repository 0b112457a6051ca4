"""Database package for the settlement core."""
from .connection import build_engine, build_session_factory, get_db, init_db
from .models import (
    Base,
    InventoryItem,
    Order,
    OrderItem,
    Payment,
    PaymentEvent,
)

__all__ = [
    "Base",
    "InventoryItem",
    "Order",
    "OrderItem",
    "Payment",
    "PaymentEvent",
    "build_engine",
    "build_session_factory",
    "get_db",
    "init_db",
]
