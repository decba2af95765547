"""
Database models.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String

from .database import Base


USER_ID_LENGTH = 64


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    __tablename__ = "products"

    product_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)
    price_in_cent = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)


class FlashSale(Base):
    __tablename__ = "flash_sales"

    flash_sale_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_id = Column(
        String(36), ForeignKey("products.product_id"), nullable=False, unique=True
    )
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "orders"

    # order_id is the idempotency key for settlement
    order_id = Column(String(36), primary_key=True)
    product_id = Column(String(36), nullable=False)
    user_id = Column(String(USER_ID_LENGTH), nullable=False)
    reserved_token = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_orders_user_product", "user_id", "product_id"),
    )
