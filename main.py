import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text

from config import Settings
from context import AppContext, build_context
from database import init_db
from errors import ServiceError
from schemas import (
    BroadcastRequest,
    CreateOrderRequest,
    Notification,
    OfferNotifyRequest,
    Order,
    OrderItem,
    OrderWithItems,
    PaymentRequest,
    UnreadCount,
    UpdateOrderStatus,
)
from session import PING_INTERVAL, PONG_TIMEOUT, Session

logger = logging.getLogger(__name__)

router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


# ----------------------------
# Root & health
# ----------------------------
@router.get("/")
def read_root():
    return {"message": "Surplus Supper Backend Running"}


@router.get("/health")
def health(ctx: AppContext = Depends(get_context)):
    return {"status": "healthy", **ctx.notifications.connection_stats()}


@router.get("/test")
def test_database(ctx: AppContext = Depends(get_context)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if ctx.settings.database_url else "❌ Not Set",
        "connection_status": "Not Connected",
        "tables": []
    }
    try:
        with ctx.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["tables"] = inspect(ctx.engine).get_table_names()
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------------
# Orders (Customer -> Restaurant)
# ----------------------------
@router.post("/api/orders", response_model=OrderWithItems)
def place_order(payload: CreateOrderRequest, ctx: AppContext = Depends(get_context)):
    order = ctx.orders.create_order(payload)
    # the order is committed; a failed notification must not fail the request
    try:
        ctx.notifications.send_order_notification(order.id, f"Your order #{order.id} has been placed")
    except ServiceError as e:
        logger.warning("order %d placed but notification failed: %s", order.id, e)
    return OrderWithItems(**dict(order), items=ctx.orders.get_order_items(order.id))


@router.get("/api/orders/{order_id}", response_model=OrderWithItems)
def get_order(order_id: int, ctx: AppContext = Depends(get_context)):
    order = ctx.orders.get_order_by_id(order_id)
    return OrderWithItems(**dict(order), items=ctx.orders.get_order_items(order_id))


@router.get("/api/orders/{order_id}/items", response_model=List[OrderItem])
def list_order_items(order_id: int, ctx: AppContext = Depends(get_context)):
    ctx.orders.get_order_by_id(order_id)
    return ctx.orders.get_order_items(order_id)


@router.patch("/api/orders/{order_id}/status", response_model=Order)
def update_order_status(order_id: int, payload: UpdateOrderStatus, ctx: AppContext = Depends(get_context)):
    order = ctx.orders.update_status(order_id, payload.status)
    try:
        ctx.notifications.send_status_update(order)
    except ServiceError as e:
        logger.warning("status of order %d updated but notification failed: %s", order_id, e)
    return order


@router.post("/api/orders/{order_id}/cancel", response_model=Order)
def cancel_order(order_id: int, ctx: AppContext = Depends(get_context)):
    order = ctx.orders.cancel_order(order_id)
    try:
        ctx.notifications.send_status_update(order)
    except ServiceError as e:
        logger.warning("order %d cancelled but notification failed: %s", order_id, e)
    return order


@router.post("/api/orders/{order_id}/pay", response_model=Order)
def pay_order(order_id: int, payload: PaymentRequest, ctx: AppContext = Depends(get_context)):
    return ctx.orders.process_payment(order_id, payload)


@router.get("/api/users/{user_id}/orders", response_model=List[Order])
def list_user_orders(user_id: int, ctx: AppContext = Depends(get_context)):
    return ctx.orders.get_user_orders(user_id)


@router.get("/api/restaurants/{restaurant_id}/orders", response_model=List[Order])
def list_restaurant_orders(restaurant_id: int, status: Optional[str] = None,
                           ctx: AppContext = Depends(get_context)):
    return ctx.orders.get_restaurant_orders(restaurant_id, status)


# ----------------------------
# Notifications
# ----------------------------
@router.get("/api/users/{user_id}/notifications", response_model=List[Notification])
def list_user_notifications(user_id: int, unread_only: bool = False, ctx: AppContext = Depends(get_context)):
    return ctx.notifications.list_for_user(user_id, unread_only)


@router.get("/api/users/{user_id}/notifications/unread-count", response_model=UnreadCount)
def unread_count(user_id: int, ctx: AppContext = Depends(get_context)):
    return UnreadCount(user_id=user_id, unread_count=ctx.notifications.unread_count(user_id))


@router.get("/api/restaurants/{restaurant_id}/notifications", response_model=List[Notification])
def list_restaurant_notifications(restaurant_id: int, unread_only: bool = False,
                                  ctx: AppContext = Depends(get_context)):
    return ctx.notifications.list_for_restaurant(restaurant_id, unread_only)


@router.patch("/api/notifications/{notification_id}/read", response_model=Notification)
def mark_notification_read(notification_id: int, ctx: AppContext = Depends(get_context)):
    return ctx.notifications.mark_read(notification_id)


@router.delete("/api/notifications/{notification_id}")
def delete_notification(notification_id: int, ctx: AppContext = Depends(get_context)):
    ctx.notifications.delete(notification_id)
    return {"deleted": True}


@router.post("/api/restaurants/{restaurant_id}/broadcast", response_model=List[Notification])
def broadcast_to_restaurant(restaurant_id: int, payload: BroadcastRequest, ctx: AppContext = Depends(get_context)):
    return ctx.notifications.broadcast_to_restaurant(restaurant_id, payload.title, payload.message, payload.type)


@router.post("/api/restaurants/{restaurant_id}/offers/notify", response_model=List[Notification])
def notify_new_offer(restaurant_id: int, payload: OfferNotifyRequest, ctx: AppContext = Depends(get_context)):
    return ctx.notifications.send_offer_notification(restaurant_id, payload.offer_name)


@router.post("/api/notifications/broadcast")
def broadcast_all(payload: BroadcastRequest, ctx: AppContext = Depends(get_context)):
    delivered = ctx.notifications.broadcast_all(payload.model_dump())
    return {"delivered": delivered}


@router.get("/api/ws/stats")
def websocket_stats(ctx: AppContext = Depends(get_context)):
    return ctx.notifications.connection_stats()


# ----------------------------
# Real-time notifications
# ----------------------------
async def _reject(websocket: WebSocket, detail: str) -> None:
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(JSONResponse({"detail": detail}, status_code=400))
    else:
        await websocket.close(code=1008)


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    ctx: AppContext = websocket.app.state.ctx
    raw_user_id = websocket.query_params.get("user_id")
    if not raw_user_id:
        await _reject(websocket, "user_id parameter is required")
        return
    try:
        user_id = int(raw_user_id)
    except ValueError:
        await _reject(websocket, "invalid user_id parameter")
        return

    await websocket.accept()
    session = Session(
        session_id=ctx.hub.next_session_id(),
        user_id=user_id,
        socket=websocket,
        on_close=ctx.hub.unregister,
        mark_read=ctx.notifications.mark_read,
        clock=ctx.clock,
    )
    ctx.hub.register(session)
    await session.run()


# ----------------------------
# App factory
# ----------------------------
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(settings: Optional[Settings] = None, ctx: Optional[AppContext] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    ctx = ctx or build_context(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(ctx.engine)
        yield
        ctx.engine.dispose()

    app = FastAPI(title="Surplus Supper API", lifespan=lifespan)
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, service_error_handler)
    app.include_router(router)
    return app


def server_options(settings: Settings) -> dict:
    """uvicorn keyword arguments.

    Websocket liveness is protocol-level ping/pong handled by uvicorn. The
    equivalent command line is
    `uvicorn main:create_app --factory --ws-ping-interval 54 --ws-ping-timeout 6`.
    """
    return {
        "host": "0.0.0.0",
        "port": settings.port,
        "ws_ping_interval": PING_INTERVAL,
        "ws_ping_timeout": PONG_TIMEOUT,
    }


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), **server_options(settings))
