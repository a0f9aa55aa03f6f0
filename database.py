"""
Database layer for Surplus Supper

Tables are declared with SQLAlchemy Core. Only the columns the ordering and
notification paths read or write are declared here; the rest of the schema
belongs to the user/restaurant services.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("restaurant_id", Integer, nullable=False, index=True),
    Column("total_amount", Float, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="pending"),
    Column("pickup_time", DateTime(timezone=True), nullable=True),
    Column("special_instructions", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False, index=True),
    Column("inventory_item_id", Integer, nullable=True),
    Column("offer_id", Integer, nullable=True),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Float, nullable=False),
    Column("total_price", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

inventory_items = Table(
    "inventory_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("restaurant_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False, default=""),
    Column("surplus_price", Float, nullable=False),
    Column("quantity", Integer, nullable=False, default=0),
    Column("is_available", Boolean, nullable=False, default=True),
    Column("expiry_time", DateTime(timezone=True), nullable=True),
)

offers = Table(
    "offers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("restaurant_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False, default=""),
    Column("surplus_price", Float, nullable=False),
    Column("is_available", Boolean, nullable=False, default=True),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("restaurant_id", Integer, nullable=False, index=True),
    Column("audience", String(20), nullable=False, default="user"),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("type", String(50), nullable=False),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


class Clock:
    """Wall clock used for row timestamps and pong replies."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def unix(self) -> int:
        return int(self.now().timestamp())


def create_db_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection so the in-memory database survives across threads
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        # file databases use a regular pool so concurrent transactions get separate connections
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    metadata.create_all(engine)
