"""
Two-phase checkout: the order is created first, the external processor
captures the payment out-of-band, then the capture is confirmed against
the order. The two steps are separate round-trips with no atomic handoff,
so the caller finishes with a bounded confirmation poll.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type
from uuid import UUID

from storefront.errors import ConcurrentModification, StoreUnavailable
from storefront.orders import OrderStateMachine
from storefront.schemas import Order, OrderCreateRequest, PaymentMethod, PaymentPayload

logger = logging.getLogger("storefront.payments")


class PaymentVerification(str, Enum):
    NOT_REQUIRED = "not_required"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"


@dataclass
class CheckoutOutcome:
    order_id: UUID
    verification: PaymentVerification
    order: Optional[Order] = None
    attempts: int = 0

    @property
    def confirmed(self) -> bool:
        return self.verification is not PaymentVerification.UNVERIFIED


class ConfirmationPoll:
    """
    Polls an order until it shows up as paid, at most ``attempts`` times
    with ``delay`` seconds between reads.

    The whole poll is bounded by ``attempts * delay`` seconds of wall
    clock. It only reads the order; exhausting it never changes order
    state, it just reports the payment as unverified.
    """

    def __init__(
        self,
        fetch: Callable[[UUID], Awaitable[Order]],
        order_id: UUID,
        attempts: int = 3,
        delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailable,),
    ):
        self.fetch = fetch
        self.order_id = order_id
        self.attempts = attempts
        self.delay = delay
        self.attempts_made = 0
        self.last_seen: Optional[Order] = None
        self._sleep = sleep
        self._retry_on = retry_on
        self._task: Optional[asyncio.Task] = None

    @property
    def deadline(self) -> float:
        return self.attempts * self.delay

    async def _poll(self) -> CheckoutOutcome:
        for attempt in range(1, self.attempts + 1):
            self.attempts_made = attempt
            try:
                self.last_seen = await self.fetch(self.order_id)
            except self._retry_on as e:
                logger.warning("[Payments] Order %s read failed (attempt %d): %s", self.order_id, attempt, e)
            else:
                logger.info("[Payments] Order %s payment check (attempt %d): %s", self.order_id, attempt,
                            "paid" if self.last_seen.is_paid else "not paid yet")
                if self.last_seen.is_paid:
                    return self._outcome(PaymentVerification.VERIFIED)
            if attempt < self.attempts:
                await self._sleep(self.delay)
        return self._unverified()

    def _outcome(self, verification: PaymentVerification) -> CheckoutOutcome:
        return CheckoutOutcome(
            order_id=self.order_id,
            verification=verification,
            order=self.last_seen,
            attempts=self.attempts_made,
        )

    def _unverified(self) -> CheckoutOutcome:
        logger.warning("[Payments] Could not verify payment for order %s after %d attempts",
                       self.order_id, self.attempts_made)
        return self._outcome(PaymentVerification.UNVERIFIED)

    async def run(self) -> CheckoutOutcome:
        if self.deadline <= 0:
            return await self._poll()
        try:
            return await asyncio.wait_for(self._poll(), timeout=self.deadline)
        except asyncio.TimeoutError:
            return self._unverified()

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class PaymentReconciler:
    def __init__(
        self,
        orders: OrderStateMachine,
        *,
        poll_attempts: int = 3,
        poll_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.orders = orders
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self._sleep = sleep

    async def place_order(self, user_id: str, order_in: OrderCreateRequest) -> Order:
        return await self.orders.create(
            user_id,
            order_in.items,
            order_in.shipping_address,
            order_in.payment_method,
            order_in.prices(),
        )

    async def confirm(self, order_id: UUID, payload: Optional[PaymentPayload] = None) -> Order:
        order = await self.orders.mark_paid(order_id, payload)
        logger.info("[Payments] Order %s confirmed paid (capture %s)", order_id,
                    order.payment_result.external_id if order.payment_result else "")
        return order

    def poll(self, order_id: UUID) -> ConfirmationPoll:
        return ConfirmationPoll(
            self.orders.get,
            order_id,
            attempts=self.poll_attempts,
            delay=self.poll_delay,
            sleep=self._sleep,
        )

    async def complete_checkout(
        self, order: Order, payload: Optional[PaymentPayload] = None
    ) -> CheckoutOutcome:
        """
        Steps 3 and 4 of checkout for an already created order.

        Cash-on-delivery orders need no confirmation. For processor orders
        a confirmation that fails on store availability or a lost race is
        logged and left to the poll; the order simply stays unpaid.
        """
        if order.payment_method is PaymentMethod.CASH_ON_DELIVERY:
            return CheckoutOutcome(order.id, PaymentVerification.NOT_REQUIRED, order)

        try:
            await self.confirm(order.id, payload)
        except (StoreUnavailable, ConcurrentModification) as e:
            logger.warning("[Payments] Confirmation of order %s failed: %s", order.id, e)
        return await self.poll(order.id).run()
