"""
Product Catalog - Read-only lookups of billing period, price and store ids.

NO DICTIONARIES - All data uses strongly typed models.
"""

import calendar
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.db.models import Product
from subledger.exceptions import ProductNotFoundError
from subledger.models.api import BillingPeriod, Store
from subledger.models.domain import ProductData
from subledger.services.records import product_to_domain

_PERIOD_MONTHS = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
}


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of the month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, period: BillingPeriod) -> datetime:
    """End of one billing period starting at `start`."""
    if period == BillingPeriod.WEEKLY:
        return start + timedelta(days=7)
    return add_months(start, _PERIOD_MONTHS[period])


class ProductCatalog(Protocol):
    """Read-only catalog collaborator."""

    async def get_product(self, product_id: str) -> ProductData:
        """Raises ProductNotFoundError."""
        ...

    async def resolve_store_product(self, store: Store, store_product_id: str) -> ProductData:
        """Raises ProductNotFoundError."""
        ...


class DatabaseProductCatalog:
    """Catalog backed by the products table."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize catalog with database session."""
        self.session = session

    async def get_product(self, product_id: str) -> ProductData:
        """
        Look up a catalog product by id.

        Raises:
            ProductNotFoundError: Unknown product id
        """
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product_to_domain(product)

    async def resolve_store_product(self, store: Store, store_product_id: str) -> ProductData:
        """
        Map a store product id (SKU, App Store product id, Stripe price) to the catalog.

        Accepts the catalog id itself as a fallback, since web payments carry it.

        Raises:
            ProductNotFoundError: No active product matches
        """
        if store == Store.MOBILE:
            column = Product.google_play_product_id
        elif store == Store.APPSTORE:
            column = Product.app_store_product_id
        else:
            column = Product.stripe_price_id

        stmt = (
            select(Product)
            .where(
                or_(column == store_product_id, Product.product_id == store_product_id),
                Product.is_active.is_(True),
            )
            .order_by((column == store_product_id).desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        product = result.scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(store_product_id, store)
        return product_to_domain(product)
