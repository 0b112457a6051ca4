"""
Inventory ledger.

Each SKU has one ``available`` counter. Reservations and releases are single
UPDATE statements evaluated by the database, so two orders racing for the
last unit cannot both succeed and ``available`` never goes negative.
"""
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_settlement.core.errors import InsufficientStock, InvalidRequest
from order_settlement.database.models import InventoryItem, utcnow
from order_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class InventoryLedger:
    """
    Atomic per-SKU stock counter.

    The ledger never commits; the caller owns the transaction.
    """

    @staticmethod
    def _validate_quantity(quantity: int) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidRequest(f"Quantity must be a positive integer, got {quantity!r}")

    async def reserve(self, db: AsyncSession, sku: str, quantity: int) -> None:
        """
        Atomically decrement ``available`` if enough stock remains.

        Args:
            db: Database session
            sku: Inventory key
            quantity: Units to reserve

        Raises:
            InvalidRequest: If quantity is not a positive integer
            InsufficientStock: If fewer than ``quantity`` units are available
        """
        self._validate_quantity(quantity)

        stmt = (
            update(InventoryItem)
            .where(InventoryItem.sku == sku, InventoryItem.available >= quantity)
            .values(available=InventoryItem.available - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if result.rowcount != 1:
            available = await self.available(db, sku)
            metrics.record_inventory_rejection()
            logger.info(
                "inventory_reservation_rejected",
                sku=sku,
                requested=quantity,
                available=available,
            )
            raise InsufficientStock(sku=sku, requested=quantity, available=available)

        logger.debug("inventory_reserved", sku=sku, quantity=quantity)

    async def release(self, db: AsyncSession, sku: str, quantity: int) -> None:
        """
        Atomically add ``quantity`` back to ``available``.

        Releases are not deduplicated: every call adds the quantity again.
        """
        self._validate_quantity(quantity)

        stmt = (
            update(InventoryItem)
            .where(InventoryItem.sku == sku)
            .values(available=InventoryItem.available + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            logger.warning("inventory_release_unknown_sku", sku=sku, quantity=quantity)
            return

        logger.debug("inventory_released", sku=sku, quantity=quantity)

    async def available(self, db: AsyncSession, sku: str) -> Optional[int]:
        """Current available quantity, or None for an unknown SKU."""
        result = await db.execute(
            select(InventoryItem.available).where(InventoryItem.sku == sku)
        )
        return result.scalar_one_or_none()

    async def restock(self, db: AsyncSession, sku: str, product_id: str, quantity: int) -> None:
        """
        Add stock, creating the counter on first use.

        Args:
            db: Database session
            sku: Inventory key
            product_id: Owning product
            quantity: Units to add (zero allowed to register a SKU)
        """
        if quantity < 0:
            raise InvalidRequest("Restock quantity cannot be negative")

        existing = await db.get(InventoryItem, sku)
        if existing is None:
            db.add(InventoryItem(sku=sku, product_id=product_id, available=quantity))
            await db.flush()
        elif quantity:
            await self.release(db, sku, quantity)

        logger.info("inventory_restocked", sku=sku, quantity=quantity)
