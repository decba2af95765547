"""
Repositories for sale records and settled orders.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .database import Database
from .models import FlashSale, Order, Product
from .schemas import SaleRecord

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """Some drivers (SQLite) hand back naive datetimes for timestamptz columns."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SaleRepository:
    """Durable sale record: ``products`` joined with ``flash_sales``."""

    def __init__(self, database: Database):
        self.db = database

    async def get(self, product_id: str) -> Optional[SaleRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(FlashSale, Product)
                .join(Product, FlashSale.product_id == Product.product_id)
                .where(FlashSale.product_id == product_id)
            )
            row = result.first()

        if row is None:
            return None
        sale, product = row
        return SaleRecord(
            flash_sale_id=sale.flash_sale_id,
            product_id=product.product_id,
            name=product.name,
            price_in_cent=product.price_in_cent,
            quantity=product.quantity,
            start_date=as_utc(sale.start_date),
            end_date=as_utc(sale.end_date)
        )

    async def create_sale(
        self,
        name: str,
        price_in_cent: int,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        product_id: Optional[str] = None,
        flash_sale_id: Optional[str] = None
    ) -> SaleRecord:
        """
        Provision a product and its sale window.

        Not reachable over HTTP: sales are provisioned out of band (migration
        or seed script), and the service only updates the window and stock.
        """
        product_id = product_id or str(uuid4())
        async with self.db.session() as session:
            session.add(Product(
                product_id=product_id,
                name=name,
                price_in_cent=price_in_cent,
                quantity=quantity
            ))
            await session.flush()
            session.add(FlashSale(
                flash_sale_id=flash_sale_id or str(uuid4()),
                product_id=product_id,
                start_date=as_utc(start_date),
                end_date=as_utc(end_date)
            ))
            await session.commit()

        logger.info(f"Flash sale created for product {product_id}: quantity={quantity}")
        return await self.get(product_id)

    async def update_sale(
        self,
        product_id: str,
        start_date: datetime,
        end_date: datetime,
        quantity: Optional[int] = None
    ) -> Optional[SaleRecord]:
        """Update the window (and quantity when given). Returns None if unknown."""
        async with self.db.session() as session:
            product = await session.get(Product, product_id)
            if product is None:
                return None

            result = await session.execute(
                select(FlashSale).where(FlashSale.product_id == product_id)
            )
            sale = result.scalar_one_or_none()
            if sale is None:
                return None

            sale.start_date = as_utc(start_date)
            sale.end_date = as_utc(end_date)
            if quantity is not None:
                product.quantity = quantity
            await session.commit()

        return await self.get(product_id)


class OrderRepository:
    """Settled orders. Only the settlement worker writes here."""

    def __init__(self, database: Database):
        self.db = database

    async def insert(
        self,
        order_id: str,
        product_id: str,
        user_id: str,
        reserved_token: str,
        created_at: Optional[datetime] = None
    ) -> bool:
        """
        Insert a completed order keyed by ``order_id``.

        Returns True if the row was written, False if it already existed.
        Any other integrity error is re-raised.
        """
        async with self.db.session() as session:
            session.add(Order(
                order_id=order_id,
                product_id=product_id,
                user_id=user_id,
                reserved_token=reserved_token,
                status="completed",
                created_at=created_at or datetime.now(timezone.utc)
            ))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                if await session.get(Order, order_id) is not None:
                    return False
                raise

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.db.session() as session:
            return await session.get(Order, order_id)

    async def find_for_user_product(self, user_id: str, product_id: str) -> Optional[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Order)
                .where(Order.user_id == user_id, Order.product_id == product_id)
                .order_by(Order.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[Order]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Order)
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc())
            )
            return list(result.scalars().all())
