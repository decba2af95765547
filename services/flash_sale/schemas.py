"""
Pydantic schemas and status types shared by the core and the HTTP layer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SaleStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class SaleRecord(BaseModel):
    """Sale metadata as stored in the database and in the sale cache."""

    flash_sale_id: str
    product_id: str
    name: str
    price_in_cent: int
    quantity: int
    start_date: datetime
    end_date: datetime


class SaleStatusResponse(SaleRecord):
    status: SaleStatus
    remaining_stock: int


class SaleUpdate(BaseModel):
    start_date: datetime
    end_date: datetime
    quantity: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_window(self):
        # Naive timestamps are taken as UTC
        if self.start_date.tzinfo is None:
            self.start_date = self.start_date.replace(tzinfo=timezone.utc)
        if self.end_date.tzinfo is None:
            self.end_date = self.end_date.replace(tzinfo=timezone.utc)
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SaleUpdateResponse(BaseModel):
    flash_sale_id: str
    product_id: str
    start_date: datetime
    end_date: datetime
    quantity: Optional[int]


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: UUID = Field(alias="productId")


class ReservationResponse(BaseModel):
    order_id: str
    product_id: str
    status: OrderStatus = OrderStatus.PENDING


class OrderStatusResponse(BaseModel):
    """Merged view of a durable order or an in-flight reservation."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str
    product_id: str
    status: OrderStatus
    created_at: Optional[datetime] = None
