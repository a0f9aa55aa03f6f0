import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import insert, select

from config import Settings
from context import build_context
from database import Clock, create_db_engine, init_db, inventory_items, offers, orders
from hub import Hub
from main import create_app
from session import Session

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class TickingClock(Clock):
    """Advances one second per reading so newest-first ordering is deterministic."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class FrozenClock(Clock):
    def now(self) -> datetime:
        return START


class FakeSocket:
    def __init__(self):
        self.inbound = asyncio.Queue()
        self.sent = []
        self.close_codes = []

    async def receive(self):
        return await self.inbound.get()

    async def send_text(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_codes.append(code)

    def feed(self, text):
        self.inbound.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self):
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_session(hub: Hub, user_id: int, socket=None, mark_read=None, **kwargs) -> Session:
    return Session(
        session_id=hub.next_session_id(),
        user_id=user_id,
        socket=socket,
        on_close=hub.unregister,
        mark_read=mark_read or (lambda notification_id: None),
        **kwargs,
    )


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ctx(engine):
    return build_context(Settings(database_url="sqlite://"), engine=engine, clock=TickingClock())


@pytest.fixture
def client(ctx):
    app = create_app(ctx.settings, ctx=ctx)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def seed(engine):
    """Inventory item 7 (qty 5 at 4.00) and offer 11 (12.50) at restaurant 9."""
    with engine.begin() as conn:
        conn.execute(insert(inventory_items).values(
            id=7, restaurant_id=9, name="Sourdough loaf", surplus_price=4.00, quantity=5, is_available=True,
        ))
        conn.execute(insert(inventory_items).values(
            id=8, restaurant_id=9, name="Day-old croissant", surplus_price=1.50, quantity=10, is_available=False,
        ))
        conn.execute(insert(offers).values(
            id=11, restaurant_id=9, name="Pastry bag", surplus_price=12.50, is_available=True,
        ))
    return engine


def inventory_quantity(engine, item_id: int) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(inventory_items.c.quantity).where(inventory_items.c.id == item_id)
        ).scalar_one()


def order_count(engine) -> int:
    with engine.connect() as conn:
        return len(conn.execute(select(orders.c.id)).all())
