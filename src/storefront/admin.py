import logging
from typing import List
from uuid import UUID

from storefront.auth import Identity
from storefront.errors import Forbidden, ValidationError
from storefront.orders import OrderStateMachine
from storefront.schemas import Order, PaymentPayload

logger = logging.getLogger("storefront.admin")

SETTABLE_STATUSES = ("paid", "delivered")


class AdminOrderOps:
    """Privileged order mutations. Every call requires an admin identity."""

    def __init__(self, orders: OrderStateMachine):
        self.orders = orders

    @staticmethod
    def _authorize(identity: Identity) -> None:
        if not identity.is_admin:
            logger.warning("[Admin] Rejected non-admin caller %s", identity.user_id)
            raise Forbidden()

    async def list_all(self, identity: Identity) -> List[Order]:
        self._authorize(identity)
        return await self.orders.list_all()

    async def mark_delivered(self, identity: Identity, order_id: UUID) -> Order:
        self._authorize(identity)
        return await self.orders.mark_delivered(order_id)

    async def cancel(self, identity: Identity, order_id: UUID) -> Order:
        self._authorize(identity)
        order = await self.orders.cancel(order_id)
        logger.info("[Admin] Order %s cancelled by %s", order_id, identity.user_id)
        return order

    async def set_status(self, identity: Identity, order_id: UUID, status: str) -> Order:
        self._authorize(identity)
        status = (status or "").strip().lower()
        if status not in SETTABLE_STATUSES:
            raise ValidationError(f"Unsupported status '{status}', expected one of: {', '.join(SETTABLE_STATUSES)}")

        if status == "delivered":
            return await self.orders.mark_delivered(order_id)

        order = await self.orders.get(order_id)
        if order.is_paid:
            return order
        payload = PaymentPayload(id=f"manual-{order_id}", status="COMPLETED")
        return await self.orders.mark_paid(order_id, payload)
