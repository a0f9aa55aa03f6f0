"""
Notification service: persists notifications and pushes them to connected
websocket sessions through the hub.

Pushing is best-effort. A row is the source of truth; clients that were
offline pick up what they missed with the unread list.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from database import Clock, notifications, orders
from errors import InternalError, NotFoundError, ServiceError
from hub import Hub
from schemas import Notification, Order

logger = logging.getLogger(__name__)

RESTAURANT_SCOPE = 0


class NotificationService:
    def __init__(self, engine: Engine, hub: Hub, clock: Optional[Clock] = None):
        self.engine = engine
        self.hub = hub
        self.clock = clock or Clock()

    def create(self, user_id: int, restaurant_id: int, title: str, message: str,
               notification_type: str) -> Notification:
        """Insert a notification and push it to the user's live sessions.

        user_id 0 makes the row restaurant-scoped: it is stored but never pushed.
        """
        audience = "user" if user_id > 0 else "restaurant"
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(notifications).values(
                    user_id=user_id,
                    restaurant_id=restaurant_id,
                    audience=audience,
                    title=title,
                    message=message,
                    type=notification_type,
                    is_read=False,
                    created_at=self.clock.now(),
                ))
                row = conn.execute(
                    select(notifications).where(notifications.c.id == result.inserted_primary_key[0])
                ).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to create notification: {e}") from e

        notification = Notification.model_validate(dict(row))
        if notification.audience == "user":
            try:
                self.hub.send_to_user(notification.user_id, notification.to_wire())
            except Exception:
                logger.exception("failed to push notification %d to user %d",
                                 notification.id, notification.user_id)
        return notification

    def list_for_user(self, user_id: int, unread_only: bool = False) -> List[Notification]:
        query = select(notifications).where(
            notifications.c.user_id == user_id,
            notifications.c.audience == "user",
        )
        return self._list(query, unread_only)

    def list_for_restaurant(self, restaurant_id: int, unread_only: bool = False) -> List[Notification]:
        query = select(notifications).where(
            notifications.c.restaurant_id == restaurant_id,
            notifications.c.audience == "restaurant",
        )
        return self._list(query, unread_only)

    def _list(self, query, unread_only: bool) -> List[Notification]:
        if unread_only:
            query = query.where(notifications.c.is_read.is_(False))
        query = query.order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get notifications: {e}") from e
        return [Notification.model_validate(dict(r)) for r in rows]

    def mark_read(self, notification_id: int) -> Notification:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(notifications)
                    .where(notifications.c.id == notification_id)
                    .values(is_read=True)
                )
                if result.rowcount == 0:
                    raise NotFoundError("notification not found")
                row = conn.execute(
                    select(notifications).where(notifications.c.id == notification_id)
                ).mappings().one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to mark notification as read: {e}") from e
        return Notification.model_validate(dict(row))

    def delete(self, notification_id: int) -> None:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(notifications).where(notifications.c.id == notification_id))
        except SQLAlchemyError as e:
            raise InternalError(f"failed to delete notification: {e}") from e
        if result.rowcount == 0:
            raise NotFoundError("notification not found")

    def unread_count(self, user_id: int) -> int:
        query = select(func.count()).select_from(notifications).where(
            notifications.c.user_id == user_id,
            notifications.c.audience == "user",
            notifications.c.is_read.is_(False),
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).scalar_one()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get unread count: {e}") from e

    # -------------------- fan-out helpers --------------------

    def broadcast_to_restaurant(self, restaurant_id: int, title: str, message: str,
                                notification_type: str) -> List[Notification]:
        """Notify every user who has ever ordered from the restaurant."""
        query = (
            select(orders.c.user_id)
            .where(orders.c.restaurant_id == restaurant_id, orders.c.user_id > 0)
            .distinct()
        )
        try:
            with self.engine.connect() as conn:
                user_ids = conn.execute(query).scalars().all()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get restaurant users: {e}") from e

        created = []
        for user_id in sorted(user_ids):
            try:
                created.append(self.create(user_id, restaurant_id, title, message, notification_type))
            except ServiceError as e:
                logger.warning("failed to create notification for user %d: %s", user_id, e)
        return created

    def send_offer_notification(self, restaurant_id: int, offer_name: str) -> List[Notification]:
        return self.broadcast_to_restaurant(
            restaurant_id,
            "New Surplus Offer Available",
            f"A new offer '{offer_name}' is now available at a restaurant near you!",
            "new_offer",
        )

    def send_order_notification(self, order_id: int, message: str) -> List[Notification]:
        """Tell the customer about the order and log a "New Order" row for the restaurant."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(orders.c.user_id, orders.c.restaurant_id).where(orders.c.id == order_id)
                ).first()
        except SQLAlchemyError as e:
            raise InternalError(f"failed to get order details: {e}") from e
        if row is None:
            raise NotFoundError("order not found")
        user_id, restaurant_id = row

        created = []
        if user_id > 0:
            try:
                created.append(self.create(user_id, restaurant_id, "Order Update", message, "order_update"))
            except ServiceError as e:
                logger.warning("failed to send order notification to user: %s", e)
        try:
            created.append(self.create(
                RESTAURANT_SCOPE, restaurant_id, "New Order",
                f"New order #{order_id} received", "order_update",
            ))
        except ServiceError as e:
            logger.warning("failed to send order notification to restaurant: %s", e)
        return created

    def send_status_update(self, order: Order) -> Optional[Notification]:
        if order.user_id <= 0:
            return None
        return self.create(
            order.user_id, order.restaurant_id, "Order Update",
            f"Your order #{order.id} is now {order.status}", "order_update",
        )

    def broadcast_all(self, message: Dict[str, Any]) -> int:
        return self.hub.broadcast_all(json.dumps(message))

    def connection_stats(self) -> Dict[str, int]:
        return {
            "connected_sessions": self.hub.connected_sessions(),
            "connected_users": self.hub.connected_users(),
        }
