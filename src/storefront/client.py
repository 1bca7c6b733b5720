"""
Async client for the storefront API as used by a checkout front end.

Besides the plain order calls it implements the client half of the
payment protocol (confirm, then bounded poll) and the periodic system
status poll.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

import httpx

from storefront import errors
from storefront.payments import CheckoutOutcome, ConfirmationPoll
from storefront.schemas import (
    DatabaseStatus,
    Order,
    OrderCreateRequest,
    PaymentPayload,
    ReconnectResult,
    SystemStatus,
    utcnow,
)

logger = logging.getLogger("storefront.client")

_ERRORS = {
    400: errors.ValidationError,
    401: errors.Unauthorized,
    402: errors.ExternalProcessorError,
    403: errors.Forbidden,
    404: errors.NotFound,
    409: errors.InvalidTransition,
    503: errors.CatalogUnavailable,
}


def _error_for(resp: httpx.Response) -> errors.StorefrontError:
    try:
        message = resp.json().get("message")
    except ValueError:
        message = None
    if resp.status_code == 409 and message == errors.ConcurrentModification.default_message:
        return errors.ConcurrentModification(message)
    error_cls = _ERRORS.get(resp.status_code, errors.StoreUnavailable)
    return error_cls(message)


class StorefrontClient:
    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        *,
        timeout: float = 10.0,
        poll_attempts: int = 3,
        poll_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {}
        if user_id:
            headers["X-User-Id"] = user_id
        if role:
            headers["X-User-Role"] = role
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "StorefrontClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise errors.StoreUnavailable("Storefront is unreachable") from e
        if resp.status_code >= 400:
            raise _error_for(resp)
        return resp

    async def create(self, order_in: OrderCreateRequest) -> Order:
        resp = await self._request("POST", "/orders", json=order_in.model_dump(mode="json", by_alias=True))
        return Order.model_validate(resp.json())

    async def get(self, order_id: UUID) -> Order:
        resp = await self._request("GET", f"/orders/{order_id}")
        return Order.model_validate(resp.json())

    async def my_orders(self) -> List[Order]:
        resp = await self._request("GET", "/orders/myorders")
        return [Order.model_validate(o) for o in resp.json()]

    async def mark_paid(self, order_id: UUID, payload: PaymentPayload) -> Order:
        body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        resp = await self._request("PUT", f"/orders/{order_id}/pay", json=body)
        return Order.model_validate(resp.json())

    async def confirm_payment(self, order_id: UUID, payload: PaymentPayload) -> CheckoutOutcome:
        """
        Report a finished capture and wait for the order to show as paid.

        A failed report does not abort: the poll still runs and the result
        is "unverified" if the payment never lands.
        """
        try:
            await self.mark_paid(order_id, payload)
        except (errors.StoreUnavailable, errors.ConcurrentModification) as e:
            logger.warning("[Client] Payment report for order %s failed: %s", order_id, e)
        poll = ConfirmationPoll(
            self.get,
            order_id,
            attempts=self.poll_attempts,
            delay=self.poll_delay,
            sleep=self._sleep,
        )
        return await poll.run()

    async def system_status(self) -> SystemStatus:
        try:
            resp = await self._request("GET", "/system/status")
        except errors.StorefrontError as e:
            logger.error("[Client] Error fetching system status: %s", e)
            return SystemStatus(
                server="unknown",
                timestamp=utcnow(),
                mode="unknown",
                database=DatabaseStatus(connected=False, state="error", last_error=e.message),
                uptime=0,
            )
        return SystemStatus.model_validate(resp.json())

    async def reconnect(self) -> ReconnectResult:
        try:
            resp = await self._client.post("/system/reconnect")
        except httpx.TransportError as e:
            return ReconnectResult(success=False, message="Failed to reconnect to database",
                                   status="error", error=str(e))
        return ReconnectResult.model_validate(resp.json())

    def poll_status(
        self,
        callback: Callable[[SystemStatus], None],
        interval: float = 30.0,
    ) -> asyncio.Task:
        """Start polling ``/system/status``; cancel the returned task to stop."""

        async def _loop() -> None:
            while True:
                callback(await self.system_status())
                await self._sleep(interval)

        return asyncio.create_task(_loop())
