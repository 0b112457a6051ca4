"""
Read-only ports to the surrounding application.

The settlement core never writes catalog or user records; it only asks
whether a product/variant exists (and at what price) and whether a user
exists. Callers arrive already authenticated as a ``Principal``.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity."""

    user_id: str
    is_admin: bool = False

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


@dataclass(frozen=True)
class CatalogItem:
    """
    Catalog view of a purchasable item.

    ``sku`` identifies the inventory counter: the variant's own id, or the
    product id for products sold without variants.
    """

    product_id: str
    variant_id: Optional[str]
    sku: str
    name: str
    unit_price: Decimal
    active: bool = True


@runtime_checkable
class Catalog(Protocol):
    """Product/variant lookup."""

    async def lookup(self, product_id: str, variant_id: Optional[str]) -> Optional[CatalogItem]:
        """Return the item, or None if the product or variant is unknown."""
        ...


@runtime_checkable
class UserDirectory(Protocol):
    """User existence lookup."""

    async def exists(self, user_id: str) -> bool:
        ...
