"""
Order persistence behind one interface.

``SqlStore`` is the durable implementation (SQLAlchemy async over the
monitored database). ``InMemoryStore`` is the non-durable substitute used
in permissive mode while the database is unreachable. ``StoreSelector``
picks between them based on the availability monitor.
"""

import abc
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from storefront import crud
from storefront.db import Database
from storefront.errors import StoreUnavailable, ValidationError
from storefront.schemas import Order, OrderEvent, User, utcnow
from storefront.security import hash_password

logger = logging.getLogger("storefront.stores")

T = TypeVar("T")


class OrderStore(abc.ABC):
    name = "store"

    @abc.abstractmethod
    async def create_order(self, order: Order, events: Sequence[OrderEvent]) -> Order:
        ...

    @abc.abstractmethod
    async def get_order(self, order_id: UUID) -> Optional[Order]:
        ...

    @abc.abstractmethod
    async def list_orders_for_user(self, user_id: str) -> List[Order]:
        ...

    @abc.abstractmethod
    async def list_orders(self) -> List[Order]:
        ...

    @abc.abstractmethod
    async def update_order(
        self, order: Order, expected_version: int, events: Sequence[OrderEvent]
    ) -> bool:
        """Write ``order`` only if the stored version equals ``expected_version``.

        Returns False when the order changed since it was read.
        """

    @abc.abstractmethod
    async def pending_events(self, limit: int) -> List[OrderEvent]:
        ...

    @abc.abstractmethod
    async def mark_published(self, event_ids: Sequence[UUID]) -> None:
        ...

    @abc.abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def _insert_user(self, user: User) -> User:
        ...

    @abc.abstractmethod
    async def _save_user(self, user: User) -> Optional[User]:
        ...

    async def create_user(
        self, name: str, email: str, password: str, is_admin: bool = False
    ) -> User:
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = User(
            id=uuid4().hex,
            name=name,
            email=email.strip().lower(),
            password_hash=await asyncio.to_thread(hash_password, password),
            is_admin=is_admin,
        )
        return await self._insert_user(user)

    async def update_user(self, user: User) -> Optional[User]:
        return await self._save_user(user.model_copy(update={"updated_at": utcnow()}))


def _is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated
    return isinstance(exc, (OSError, ConnectionError, asyncio.TimeoutError))


class SqlStore(OrderStore):
    name = "durable"

    def __init__(
        self,
        database: Database,
        on_failure: Optional[Callable[[BaseException], None]] = None,
    ):
        self.database = database
        self._on_failure = on_failure

    async def _run(self, operation: Callable[..., Awaitable[T]]) -> T:
        try:
            async with self.database.session() as session:
                return await operation(session)
        except Exception as exc:
            if not _is_connection_error(exc):
                raise
            logger.error("[Stores] Durable store call failed: %s", exc)
            if self._on_failure is not None:
                self._on_failure(exc)
            raise StoreUnavailable() from exc

    async def create_order(self, order, events):
        return await self._run(lambda session: crud.create_order(order, events, session))

    async def get_order(self, order_id):
        return await self._run(lambda session: crud.get_order(order_id, session))

    async def list_orders_for_user(self, user_id):
        return await self._run(lambda session: crud.get_orders_by_user(user_id, session))

    async def list_orders(self):
        return await self._run(crud.get_orders)

    async def update_order(self, order, expected_version, events):
        return await self._run(
            lambda session: crud.update_order(order, expected_version, events, session)
        )

    async def pending_events(self, limit):
        return await self._run(lambda session: crud.get_pending_events(session, limit))

    async def mark_published(self, event_ids):
        await self._run(lambda session: crud.mark_events_published(event_ids, session))

    async def find_user_by_email(self, email):
        return await self._run(lambda session: crud.get_user_by_email(email.strip().lower(), session))

    async def find_user_by_id(self, user_id):
        return await self._run(lambda session: crud.get_user(user_id, session))

    async def _insert_user(self, user):
        try:
            return await self._run(lambda session: crud.create_user(user, session))
        except crud.UserExistsError:
            raise ValidationError("User already exists")

    async def _save_user(self, user):
        return await self._run(lambda session: crud.update_user(user, session))


class InMemoryStore(OrderStore):
    """Process-local substitute store. Nothing survives a restart."""

    name = "in-memory"

    def __init__(self):
        self._orders: Dict[UUID, Order] = {}
        self._events: List[OrderEvent] = []
        self._users: Dict[str, User] = {}

    async def create_order(self, order, events):
        self._orders[order.id] = order.model_copy(deep=True)
        self._events.extend(events)
        return order

    async def get_order(self, order_id):
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders_for_user(self, user_id):
        return [o.model_copy(deep=True) for o in self._orders.values() if o.user_id == user_id]

    async def list_orders(self):
        return [o.model_copy(deep=True) for o in self._orders.values()]

    async def update_order(self, order, expected_version, events):
        # no await between the check and the write
        current = self._orders.get(order.id)
        if current is None or current.version != expected_version:
            return False
        self._orders[order.id] = order.model_copy(deep=True)
        self._events.extend(events)
        return True

    async def pending_events(self, limit):
        return [ev for ev in self._events if ev.published_at is None][:limit]

    async def mark_published(self, event_ids):
        published = set(event_ids)
        now = utcnow()
        for ev in self._events:
            if ev.id in published:
                ev.published_at = now

    async def find_user_by_email(self, email):
        email = email.strip().lower()
        return next((u for u in self._users.values() if u.email == email), None)

    async def find_user_by_id(self, user_id):
        return self._users.get(user_id)

    async def _insert_user(self, user):
        if await self.find_user_by_email(user.email) is not None:
            raise ValidationError("User already exists")
        self._users[user.id] = user
        return user

    async def _save_user(self, user):
        if user.id not in self._users:
            return None
        self._users[user.id] = user
        return user


class StoreSelector:
    """
    Chooses the active store from the monitor's connection state.

    Strict mode only ever uses the durable store and raises
    ``StoreUnavailable`` while disconnected. Permissive mode serves from the
    in-memory substitute instead; orders and events written there stay
    reachable after the database reconnects.
    """

    def __init__(self, durable: OrderStore, fallback: OrderStore, monitor, strict: bool = True):
        self.durable = durable
        self.fallback = fallback
        self.monitor = monitor
        self.strict = strict

    @property
    def degraded(self) -> bool:
        return not self.strict and not self.monitor.is_connected

    def current(self) -> OrderStore:
        if self.monitor.is_connected:
            return self.durable
        if not self.strict:
            return self.fallback
        raise StoreUnavailable()

    async def run(self, operation: Callable[[OrderStore], Awaitable[T]]) -> T:
        store = self.current()
        try:
            return await operation(store)
        except StoreUnavailable:
            if self.strict or store is self.fallback:
                raise
            logger.warning("[Stores] Durable store failed, serving from %s store", self.fallback.name)
            return await operation(self.fallback)

    async def run_for_order(self, order_id: UUID, operation: Callable[[OrderStore], Awaitable[T]]) -> T:
        """
        Like :meth:`run`, but an order created while degraded keeps being
        served by the fallback store after the database comes back.
        """
        if not self.strict and await self.fallback.get_order(order_id) is not None:
            return await operation(self.fallback)
        return await self.run(operation)

    async def run_all(self, operation: Callable[[OrderStore], Awaitable[List[Order]]]) -> List[Order]:
        """List query over the active store plus, once reconnected, the fallback."""
        orders = await self.run(operation)
        if self.strict or not self.monitor.is_connected:
            return orders
        seen = {o.id for o in orders}
        return orders + [o for o in await operation(self.fallback) if o.id not in seen]

    def event_stores(self) -> List[OrderStore]:
        """Stores whose outbox must be drained: the active one, and the fallback in permissive mode."""
        store = self.current()
        if self.strict or store is self.fallback:
            return [store]
        return [store, self.fallback]
