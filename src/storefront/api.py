import hmac
import time
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import JSONResponse

from storefront.admin import AdminOrderOps
from storefront.auth import Identity, ensure_can_access, get_identity
from storefront.config import Settings
from storefront.errors import NotFound, Unauthorized
from storefront.monitor import AvailabilityMonitor
from storefront.orders import OrderStateMachine
from storefront.payments import PaymentReconciler
from storefront.schemas import (
    Order,
    OrderCreateRequest,
    OrderRead,
    PaymentConfig,
    PaymentPayload,
    PaymentWebhook,
    ReconnectResult,
    StatusUpdateRequest,
    SystemStatus,
    utcnow,
)


def get_orders(request: Request) -> OrderStateMachine:
    return request.app.state.orders


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_admin(request: Request) -> AdminOrderOps:
    return request.app.state.admin


def get_monitor(request: Request) -> AvailabilityMonitor:
    return request.app.state.monitor


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


order_router = APIRouter(prefix="/orders", tags=["orders"])
system_router = APIRouter(prefix="/system", tags=["system"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])


@order_router.post("", response_model=Order, status_code=201)
async def create_order(
    order_in: OrderCreateRequest,
    identity: Identity = Depends(get_identity),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    return await reconciler.place_order(identity.user_id, order_in)


@order_router.get("/myorders", response_model=List[Order])
async def my_orders(
    identity: Identity = Depends(get_identity),
    orders: OrderStateMachine = Depends(get_orders),
):
    return await orders.list_for_user(identity.user_id)


@order_router.get("", response_model=List[Order])
async def list_orders(
    identity: Identity = Depends(get_identity),
    admin: AdminOrderOps = Depends(get_admin),
):
    return await admin.list_all(identity)


@order_router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: UUID,
    identity: Identity = Depends(get_identity),
    orders: OrderStateMachine = Depends(get_orders),
):
    order = await orders.get(order_id)
    ensure_can_access(identity, order)
    return await orders.describe(order)


@order_router.put("/{order_id}/pay", response_model=Order)
async def pay_order(
    order_id: UUID,
    payload: Optional[PaymentPayload] = Body(None),
    identity: Identity = Depends(get_identity),
    orders: OrderStateMachine = Depends(get_orders),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    ensure_can_access(identity, await orders.get(order_id))
    return await reconciler.confirm(order_id, payload)


@order_router.put("/{order_id}/deliver", response_model=Order)
async def deliver_order(
    order_id: UUID,
    identity: Identity = Depends(get_identity),
    admin: AdminOrderOps = Depends(get_admin),
):
    return await admin.mark_delivered(identity, order_id)


@order_router.put("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: UUID,
    identity: Identity = Depends(get_identity),
    admin: AdminOrderOps = Depends(get_admin),
):
    return await admin.cancel(identity, order_id)


@order_router.put("/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: UUID,
    status_in: StatusUpdateRequest,
    identity: Identity = Depends(get_identity),
    admin: AdminOrderOps = Depends(get_admin),
):
    return await admin.set_status(identity, order_id, status_in.status)


@payments_router.post("/webhook", response_model=Order)
async def payment_webhook(
    event: PaymentWebhook,
    x_webhook_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    if not settings.PAYMENT_WEBHOOK_SECRET:
        raise NotFound("Not found")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.PAYMENT_WEBHOOK_SECRET):
        raise Unauthorized("Invalid webhook signature")
    return await reconciler.confirm(event.order_id, event.capture)


@system_router.get("/status", response_model=SystemStatus)
async def system_status(
    request: Request,
    settings: Settings = Depends(get_settings),
    monitor: AvailabilityMonitor = Depends(get_monitor),
):
    return SystemStatus(
        server="online",
        timestamp=utcnow(),
        mode="strict" if settings.strict else "permissive",
        database=monitor.status(),
        uptime=int(time.monotonic() - request.app.state.started_at),
    )


@system_router.post("/reconnect", response_model=ReconnectResult)
async def reconnect(monitor: AvailabilityMonitor = Depends(get_monitor)):
    result = await monitor.reconnect()
    if not result.success:
        return JSONResponse(status_code=500, content=result.model_dump(mode="json", by_alias=True))
    return result


@system_router.get("/config/payment", response_model=PaymentConfig)
async def payment_config(settings: Settings = Depends(get_settings)):
    return PaymentConfig(client_id=settings.PAYMENT_CLIENT_ID)
