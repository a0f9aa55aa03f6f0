"""
Application context: the objects a running process shares.

Built once by main.create_app and handed to endpoints through FastAPI
dependencies instead of module-level singletons.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from config import Settings
from database import Clock, create_db_engine
from hub import Hub
from notification_service import NotificationService
from order_service import OrderService


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    clock: Clock
    hub: Hub
    notifications: NotificationService
    orders: OrderService


def build_context(settings: Settings, engine: Optional[Engine] = None,
                  clock: Optional[Clock] = None) -> AppContext:
    engine = engine or create_db_engine(settings.database_url)
    clock = clock or Clock()
    hub = Hub()
    return AppContext(
        settings=settings,
        engine=engine,
        clock=clock,
        hub=hub,
        notifications=NotificationService(engine, hub, clock),
        orders=OrderService(engine, clock),
    )
