"""
Order aggregate: valid states, transitions and the mutation contract.

    Created --mark_paid--> Paid --mark_delivered--> Delivered
    Created/Paid --cancel--> Cancelled

Every mutation reads the stored order, validates the transition against
that snapshot and writes it back with a version-checked conditional
update, so two concurrent mutations of one order can never both apply.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import UUID

from storefront.catalog import CatalogClient
from storefront.errors import (
    ConcurrentModification,
    ExternalProcessorError,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from storefront.schemas import (
    Order,
    OrderEvent,
    OrderItem,
    OrderRead,
    OrderStatus,
    OwnerSummary,
    PaymentMethod,
    PaymentPayload,
    PriceBreakdown,
    ShippingAddress,
    to_cents,
    utcnow,
)
from storefront.stores import OrderStore, StoreSelector

logger = logging.getLogger("storefront.orders")

TRANSITIONS = {
    OrderStatus.CREATED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

FAILED_CAPTURE_STATUSES = frozenset({"DECLINED", "FAILED", "VOIDED", "DENIED"})

# returns None when the mutation is a no-op against the given snapshot
Change = Callable[[Order], Optional[Tuple[Order, str]]]


def _event(order: Order, event_type: str) -> OrderEvent:
    payload = {
        "order_id": str(order.id),
        "user_id": order.user_id,
        "status": order.status.value,
        "total_price": float(order.total_price),
        "version": order.version,
    }
    if event_type == "order_paid" and order.payment_result is not None:
        payload["external_id"] = order.payment_result.external_id
    return OrderEvent(aggregate_id=order.id, event_type=event_type, payload=payload)


def _check(order: Order, target: OrderStatus) -> None:
    if target not in TRANSITIONS[order.status]:
        raise InvalidTransition(
            f"Cannot move order from {order.status.value} to {target.value}"
        )


class OrderStateMachine:
    def __init__(
        self,
        stores: StoreSelector,
        catalog: Optional[CatalogClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stores = stores
        self.catalog = catalog
        self.clock = clock

    async def create(
        self,
        user_id: str,
        items: Sequence[OrderItem],
        address: ShippingAddress,
        payment_method: PaymentMethod,
        prices: PriceBreakdown,
    ) -> Order:
        if not items:
            raise ValidationError("No order items")
        missing = address.missing_fields()
        if missing:
            raise ValidationError(f"Missing shipping address fields: {', '.join(missing)}")

        if self.catalog is not None:
            items = await self.catalog.reprice(items)

        items_price = to_cents(sum((item.line_total for item in items), Decimal("0")))
        total_price = items_price + prices.tax_price + prices.shipping_price
        if prices.items_price is not None and prices.items_price != items_price:
            logger.warning("[Orders] Client items price %s differs from computed %s for user %s",
                           prices.items_price, items_price, user_id)
        if prices.total_price is not None and prices.total_price != total_price:
            logger.warning("[Orders] Client total %s differs from computed %s for user %s",
                           prices.total_price, total_price, user_id)

        now = self.clock()
        order = Order(
            user_id=user_id,
            items=list(items),
            shipping_address=address,
            payment_method=payment_method,
            items_price=items_price,
            tax_price=prices.tax_price,
            shipping_price=prices.shipping_price,
            total_price=total_price,
            created_at=now,
            updated_at=now,
        )
        event = _event(order, "order_created")
        created = await self.stores.run(lambda store: store.create_order(order, [event]))
        logger.info("[Orders] Created order %s for user %s, total %s", created.id, user_id, total_price)
        return created

    async def get(self, order_id: UUID) -> Order:
        order = await self.stores.run_for_order(order_id, lambda store: store.get_order(order_id))
        if order is None:
            raise NotFound()
        return order

    async def list_for_user(self, user_id: str) -> List[Order]:
        return await self.stores.run_all(lambda store: store.list_orders_for_user(user_id))

    async def list_all(self) -> List[Order]:
        return await self.stores.run_all(lambda store: store.list_orders())

    async def describe(self, order: Order) -> OrderRead:
        """Attach the owner's name and email, when the user is known."""
        user = await self.stores.run(lambda store: store.find_user_by_id(order.user_id))
        owner = OwnerSummary(id=user.id, name=user.name, email=user.email) if user else None
        return OrderRead(**order.model_dump(), user=owner)

    async def mark_paid(self, order_id: UUID, payload: Optional[PaymentPayload] = None) -> Order:
        payload = payload or PaymentPayload()
        status = (payload.status or "COMPLETED").upper()
        if status in FAILED_CAPTURE_STATUSES:
            logger.warning("[Orders] Capture for order %s reported %s", order_id, status)
            raise ExternalProcessorError(f"Payment capture {status.lower()}, please retry")

        def change(order: Order):
            if order.is_paid:
                if order.payment_result is not None and order.payment_result.external_id == payload.capture_id:
                    return None
                raise InvalidTransition("Order is already paid")
            _check(order, OrderStatus.PAID)
            now = self.clock()
            return order.model_copy(update={
                "status": OrderStatus.PAID,
                "is_paid": True,
                "paid_at": now,
                "payment_result": payload.to_result(now),
            }), "order_paid"

        return await self._apply(order_id, change)

    async def mark_delivered(self, order_id: UUID) -> Order:
        def change(order: Order):
            if not order.is_paid and order.status is OrderStatus.CREATED:
                raise InvalidTransition("Order must be paid before it can be delivered")
            _check(order, OrderStatus.DELIVERED)
            return order.model_copy(update={
                "status": OrderStatus.DELIVERED,
                "is_delivered": True,
                "delivered_at": self.clock(),
            }), "order_delivered"

        return await self._apply(order_id, change)

    async def cancel(self, order_id: UUID) -> Order:
        def change(order: Order):
            if order.is_delivered:
                raise InvalidTransition("Delivered orders cannot be cancelled")
            _check(order, OrderStatus.CANCELLED)
            return order.model_copy(update={
                "status": OrderStatus.CANCELLED,
                "cancelled_at": self.clock(),
            }), "order_cancelled"

        return await self._apply(order_id, change)

    async def _apply(self, order_id: UUID, change: Change) -> Order:
        return await self.stores.run_for_order(order_id, lambda store: self._apply_on(store, order_id, change))

    async def _apply_on(self, store: OrderStore, order_id: UUID, change: Change) -> Order:
        current = await store.get_order(order_id)
        if current is None:
            raise NotFound()

        result = change(current)
        if result is None:
            logger.info("[Orders] Order %s already in requested state, nothing to apply", order_id)
            return current

        updated, event_type = result
        updated = updated.model_copy(update={
            "version": current.version + 1,
            "updated_at": self.clock(),
        })
        if await store.update_order(updated, current.version, [_event(updated, event_type)]):
            logger.info("[Orders] Order %s: %s -> %s", order_id, current.status.value, updated.status.value)
            return updated

        # lost the race; a replay of the winning change is still a no-op
        latest = await store.get_order(order_id)
        if latest is not None and change(latest) is None:
            return latest
        logger.warning("[Orders] Concurrent modification of order %s rejected (%s)", order_id, event_type)
        raise ConcurrentModification()
