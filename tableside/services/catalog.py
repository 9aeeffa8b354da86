"""
Product Catalog Contract

The ordering core does not own products. It asks a catalog for price
snapshots of the products referenced by an order and copies them into the
order lines, so later menu edits never change historical orders.

Design Pattern: Strategy Pattern
    - BaseProductCatalog is the contract consumed by OrderLifecycleManager
    - SqlProductCatalog reads the shared products table
    - Tests plug in an in-memory catalog
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.models import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductSnapshot:
    """
    Immutable view of a product at order time.

    Attributes:
        id: Product identifier
        name: Display name copied onto the order line
        unit_price: Price in the restaurant currency
        category: Optional category label
    """
    id: str
    name: str
    unit_price: Decimal
    category: Optional[str] = None


class BaseProductCatalog(ABC):
    """
    Abstract product lookup.

    Implementations must return one snapshot per requested id that exists;
    missing ids are simply absent from the result and the caller decides
    how to report them.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the catalog backend."""
        pass

    @abstractmethod
    async def get_products(
        self,
        ids: Iterable[str],
        db: Optional[AsyncSession] = None,
    ) -> dict[str, ProductSnapshot]:
        """
        Fetch price snapshots for the given product ids.

        Args:
            ids: Product identifiers, duplicates allowed
            db: Session of the calling operation, when the catalog shares the database

        Returns:
            dict: product id -> ProductSnapshot for every id that resolved
        """
        pass


class SqlProductCatalog(BaseProductCatalog):
    """Catalog backed by the products table, read in a single query."""

    @property
    def provider_name(self) -> str:
        return "sql"

    async def get_products(
        self,
        ids: Iterable[str],
        db: Optional[AsyncSession] = None,
    ) -> dict[str, ProductSnapshot]:
        if db is None:
            raise ValueError("SqlProductCatalog needs the caller's database session")

        wanted = set(ids)
        if not wanted:
            return {}

        result = await db.execute(
            select(Product).where(Product.id.in_(wanted), Product.is_available.is_(True))
        )
        snapshots = {
            product.id: ProductSnapshot(
                id=product.id,
                name=product.name,
                unit_price=Decimal(product.unit_price),
                category=product.category,
            )
            for product in result.scalars().all()
        }

        if len(snapshots) != len(wanted):
            logger.debug(f"Unresolved products: {sorted(wanted - snapshots.keys())}")

        return snapshots
