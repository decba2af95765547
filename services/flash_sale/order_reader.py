"""
Order read path.

A reservation is answered ``pending`` from the moment its guard is claimed,
and ``completed`` once the worker has written the durable row. The durable
store is consulted first since it may lag the guard by the queue's latency.
"""

from typing import List, Optional

from .duplicate_guard import DuplicateGuard
from .repository import OrderRepository, as_utc
from .schemas import OrderStatus, OrderStatusResponse


class OrderReader:
    def __init__(self, orders: OrderRepository, guard: DuplicateGuard):
        self.orders = orders
        self.guard = guard

    async def get_order(self, user_id: str, product_id: str) -> Optional[OrderStatusResponse]:
        order = await self.orders.find_for_user_product(user_id, product_id)
        if order is not None:
            return OrderStatusResponse(
                order_id=order.order_id,
                product_id=order.product_id,
                status=OrderStatus.COMPLETED,
                created_at=as_utc(order.created_at)
            )

        order_id = await self.guard.get(product_id, user_id)
        if order_id:
            return OrderStatusResponse(
                order_id=order_id,
                product_id=product_id,
                status=OrderStatus.PENDING
            )
        return None

    async def list_orders(self, user_id: str) -> List[OrderStatusResponse]:
        """Durable orders for the user, newest first."""
        return [
            OrderStatusResponse(
                order_id=order.order_id,
                product_id=order.product_id,
                status=OrderStatus(order.status),
                created_at=as_utc(order.created_at)
            )
            for order in await self.orders.list_for_user(user_id)
        ]
