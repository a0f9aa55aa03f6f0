"""
Order service: places and cancels orders atomically with inventory.

createOrder reads prices and locks inventory rows in a first pass, inserts
the order, then writes the lines and decrements stock in a second pass
using the first pass's prices. Everything happens in one transaction; any
failure rolls the whole order back.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from database import Clock, inventory_items, offers, order_items, orders
from errors import BadRequestError, ConflictError, InternalError, NotFoundError
from schemas import ORDER_STATUSES, CreateOrderRequest, Order, OrderItem, PaymentRequest

logger = logging.getLogger(__name__)

# Forward order of the fulfilment states; cancelled sits outside it.
STATUS_RANK = {"pending": 0, "paid": 1, "preparing": 2, "ready": 3, "completed": 4}
TERMINAL_STATUSES = ("cancelled", "completed")


@dataclass
class _PricedLine:
    inventory_item_id: Optional[int]
    offer_id: Optional[int]
    quantity: int
    unit_price: float


class OrderService:
    def __init__(self, engine: Engine, clock: Optional[Clock] = None):
        self.engine = engine
        self.clock = clock or Clock()

    def create_order(self, payload: CreateOrderRequest) -> Order:
        if not payload.order_items:
            raise BadRequestError("No items provided")
        try:
            with self.engine.begin() as conn:
                lines = self._price_lines(conn, payload)
                total_amount = 0.0
                for line in lines:
                    total_amount += line.unit_price * line.quantity

                now = self.clock.now()
                result = conn.execute(insert(orders).values(
                    user_id=payload.user_id,
                    restaurant_id=payload.restaurant_id,
                    total_amount=total_amount,
                    status="pending",
                    pickup_time=payload.pickup_time,
                    special_instructions=payload.special_instructions,
                    created_at=now,
                    updated_at=now,
                ))
                order_id = result.inserted_primary_key[0]

                for line in lines:
                    conn.execute(insert(order_items).values(
                        order_id=order_id,
                        inventory_item_id=line.inventory_item_id,
                        offer_id=line.offer_id,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        total_price=line.unit_price * line.quantity,
                        created_at=now,
                    ))
                    if line.inventory_item_id is None:
                        continue
                    # offers are templates, only counted inventory is decremented
                    res = conn.execute(
                        update(inventory_items)
                        .where(
                            inventory_items.c.id == line.inventory_item_id,
                            inventory_items.c.quantity >= line.quantity,
                        )
                        .values(quantity=inventory_items.c.quantity - line.quantity)
                    )
                    if res.rowcount == 0:
                        raise BadRequestError(f"insufficient stock for inventory item {line.inventory_item_id}")

                row = conn.execute(select(orders).where(orders.c.id == order_id)).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to create order: {e}") from e

        order = Order.model_validate(dict(row))
        logger.info("order %d created for user %d at restaurant %d (total %.2f)",
                    order.id, order.user_id, order.restaurant_id, order.total_amount)
        return order

    def _price_lines(self, conn: Connection, payload: CreateOrderRequest) -> List[_PricedLine]:
        """First pass: validate each line, look up its price and check stock."""
        lines = []
        demand: Dict[int, int] = defaultdict(int)
        stock: Dict[int, int] = {}
        for item in payload.order_items:
            inventory_id = item.inventory_item_id or 0
            offer_id = item.offer_id or 0
            if (inventory_id > 0) == (offer_id > 0):
                raise BadRequestError("each order item needs exactly one of inventory_item_id or offer_id")
            if item.quantity < 1:
                raise BadRequestError("quantity must be at least 1")

            if inventory_id > 0:
                row = conn.execute(
                    select(inventory_items.c.surplus_price, inventory_items.c.quantity)
                    .where(inventory_items.c.id == inventory_id, inventory_items.c.is_available.is_(True))
                    .with_for_update()
                ).first()
                if row is None:
                    raise BadRequestError(f"inventory item {inventory_id} not found or unavailable")
                stock[inventory_id] = row.quantity
                demand[inventory_id] += item.quantity
                if demand[inventory_id] > stock[inventory_id]:
                    raise BadRequestError(f"insufficient stock for inventory item {inventory_id}")
                lines.append(_PricedLine(inventory_id, None, item.quantity, row.surplus_price))
            else:
                row = conn.execute(
                    select(offers.c.surplus_price)
                    .where(offers.c.id == offer_id, offers.c.is_available.is_(True))
                ).first()
                if row is None:
                    raise BadRequestError(f"offer {offer_id} not found or unavailable")
                lines.append(_PricedLine(None, offer_id, item.quantity, row.surplus_price))
        return lines

    def get_order_by_id(self, order_id: int) -> Order:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(orders).where(orders.c.id == order_id)).mappings().first()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get order: {e}") from e
        if row is None:
            raise NotFoundError("order not found")
        return Order.model_validate(dict(row))

    def get_order_items(self, order_id: int) -> List[OrderItem]:
        query = select(order_items).where(order_items.c.order_id == order_id).order_by(order_items.c.id)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get order items: {e}") from e
        return [OrderItem.model_validate(dict(r)) for r in rows]

    def get_user_orders(self, user_id: int) -> List[Order]:
        return self._list(select(orders).where(orders.c.user_id == user_id))

    def get_restaurant_orders(self, restaurant_id: int, status: Optional[str] = None) -> List[Order]:
        query = select(orders).where(orders.c.restaurant_id == restaurant_id)
        if status:
            query = query.where(orders.c.status == status)
        return self._list(query)

    def _list(self, query) -> List[Order]:
        query = query.order_by(orders.c.created_at.desc(), orders.c.id.desc())
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get orders: {e}") from e
        return [Order.model_validate(dict(r)) for r in rows]

    def update_status(self, order_id: int, status: str) -> Order:
        if status not in ORDER_STATUSES:
            raise BadRequestError("Invalid status")
        if status == "cancelled":
            raise BadRequestError("use the cancel endpoint to cancel an order")
        try:
            with self.engine.begin() as conn:
                current = self._locked_status(conn, order_id)
                if current in TERMINAL_STATUSES:
                    raise ConflictError(f"order is already {current}")
                if STATUS_RANK[status] < STATUS_RANK[current]:
                    raise ConflictError(f"cannot move order from {current} back to {status}")
                conn.execute(
                    update(orders).where(orders.c.id == order_id)
                    .values(status=status, updated_at=self.clock.now())
                )
                row = conn.execute(select(orders).where(orders.c.id == order_id)).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to update order status: {e}") from e
        return Order.model_validate(dict(row))

    def process_payment(self, order_id: int, payment: PaymentRequest) -> Order:
        """Placeholder for a card processor: marks the order paid."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(orders).where(orders.c.id == order_id)
                    .values(status="paid", updated_at=self.clock.now())
                )
                if result.rowcount == 0:
                    raise NotFoundError("order not found")
                row = conn.execute(select(orders).where(orders.c.id == order_id)).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to update order status: {e}") from e
        logger.info("order %d paid via %s", order_id, payment.payment_method)
        return Order.model_validate(dict(row))

    def cancel_order(self, order_id: int) -> Order:
        """Cancel the order and put its inventory lines back in stock."""
        try:
            with self.engine.begin() as conn:
                current = self._locked_status(conn, order_id)
                if current in TERMINAL_STATUSES:
                    raise ConflictError(f"order is already {current}")

                lines = conn.execute(
                    select(order_items.c.inventory_item_id, order_items.c.quantity)
                    .where(order_items.c.order_id == order_id, order_items.c.inventory_item_id > 0)
                ).all()
                for inventory_id, quantity in lines:
                    conn.execute(
                        update(inventory_items)
                        .where(inventory_items.c.id == inventory_id)
                        .values(quantity=inventory_items.c.quantity + quantity)
                    )

                conn.execute(
                    update(orders).where(orders.c.id == order_id)
                    .values(status="cancelled", updated_at=self.clock.now())
                )
                row = conn.execute(select(orders).where(orders.c.id == order_id)).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to cancel order: {e}") from e
        logger.info("order %d cancelled, %d inventory lines restored", order_id, len(lines))
        return Order.model_validate(dict(row))

    def _locked_status(self, conn: Connection, order_id: int) -> str:
        status = conn.execute(
            select(orders.c.status).where(orders.c.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if status is None:
            raise NotFoundError("order not found")
        return status
