"""
Schemas for Surplus Supper

Each Pydantic model mirrors a table row (Order, OrderItem, Notification) or
a request body accepted by the API. Row models are built straight from
SQLAlchemy result mappings.
"""

from datetime import datetime, timezone
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, field_serializer

OrderStatus = Literal["pending", "paid", "preparing", "ready", "completed", "cancelled"]
ORDER_STATUSES = ("pending", "paid", "preparing", "ready", "completed", "cancelled")


def _rfc3339(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Order(BaseModel):
    """
    Order placed by a user at one restaurant.
    Table name: "orders"
    """
    id: int
    user_id: int
    restaurant_id: int
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    pickup_time: Optional[datetime] = None
    special_instructions: str = ""
    created_at: datetime
    updated_at: datetime

    @field_serializer("pickup_time", "created_at", "updated_at")
    def serialize_timestamps(self, value: Optional[datetime]):
        return _rfc3339(value)


class OrderItem(BaseModel):
    """Line of an order (unit price snapshot captured at order time)."""
    id: int
    order_id: int
    inventory_item_id: Optional[int] = Field(None, description="Set for counted inventory lines")
    offer_id: Optional[int] = Field(None, description="Set for offer bundle lines")
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    created_at: datetime

    @field_serializer("created_at")
    def serialize_timestamps(self, value: datetime):
        return _rfc3339(value)


class OrderWithItems(Order):
    items: List[OrderItem] = Field(default_factory=list)


class Notification(BaseModel):
    """
    Persisted notification. user_id 0 marks a restaurant-scoped row.
    Table name: "notifications"
    """
    id: int
    user_id: int
    restaurant_id: int
    audience: Literal["user", "restaurant"] = "user"
    title: str
    message: str
    type: str
    is_read: bool = False
    created_at: datetime

    @field_serializer("created_at")
    def serialize_timestamps(self, value: datetime):
        return _rfc3339(value)

    def to_wire(self) -> str:
        """JSON frame pushed to websocket clients."""
        return self.model_dump_json(include={
            "id", "user_id", "restaurant_id", "title", "message", "type", "is_read", "created_at",
        })


# ----------------------------
# Request bodies
# ----------------------------
class OrderItemInput(BaseModel):
    inventory_item_id: Optional[int] = Field(None, description="Inventory item to buy (0/null when unused)")
    offer_id: Optional[int] = Field(None, description="Offer to buy (0/null when unused)")
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    user_id: int
    restaurant_id: int
    order_items: List[OrderItemInput]
    special_instructions: str = ""
    pickup_time: Optional[datetime] = None


class UpdateOrderStatus(BaseModel):
    status: str = Field(..., description="pending, paid, preparing, ready, completed")


class PaymentRequest(BaseModel):
    amount: float = Field(0, ge=0)
    payment_method: str = "card"
    stripe_token: Optional[str] = None


class BroadcastRequest(BaseModel):
    title: str
    message: str
    type: str = "announcement"


class OfferNotifyRequest(BaseModel):
    offer_name: str


class UnreadCount(BaseModel):
    user_id: int
    unread_count: int
