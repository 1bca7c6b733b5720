import threading
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio

from conftest import FakeDatabase, no_sleep
from storefront.db import Database
from storefront.errors import StoreUnavailable, ValidationError
from storefront.monitor import AvailabilityMonitor
from storefront.orders import OrderStateMachine
from storefront.schemas import OrderEvent, OrderStatus, PaymentMethod, PaymentPayload
from storefront.security import check_password, hash_password
from storefront.stores import InMemoryStore, SqlStore, StoreSelector


@pytest_asyncio.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await database.connect()
    yield database
    await database.dispose()


@pytest.fixture
def sql_store(database):
    return SqlStore(database)


@pytest.fixture
def sql_orders(sql_store, monitor):
    return OrderStateMachine(StoreSelector(sql_store, InMemoryStore(), monitor))


class DeadStore(InMemoryStore):
    """Durable stand-in whose connection is gone."""

    async def list_orders(self):
        raise StoreUnavailable()


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store, processor_order):
        order = await store.get_order(processor_order.id)
        order.items[0].quantity = 99

        assert (await store.get_order(processor_order.id)).items[0].quantity == 2

    @pytest.mark.asyncio
    async def test_update_checks_version(self, store, processor_order):
        paid = processor_order.model_copy(update={"status": OrderStatus.PAID, "version": 2})

        assert await store.update_order(paid, 2, []) is False
        assert await store.update_order(paid, 1, []) is True
        assert (await store.get_order(processor_order.id)).status is OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_mark_published(self, store, processor_order):
        events = await store.pending_events(10)
        await store.mark_published([ev.id for ev in events])

        assert await store.pending_events(10) == []

    @pytest.mark.asyncio
    async def test_users(self, store):
        user = await store.create_user("Jane", " Jane@Example.com ", "s3cret")

        assert user.email == "jane@example.com"
        assert user.password_hash != "s3cret"
        assert check_password("s3cret", user.password_hash)
        assert (await store.find_user_by_email("JANE@example.com")).id == user.id
        assert await store.find_user_by_id(user.id) == user
        with pytest.raises(ValidationError, match="already exists"):
            await store.create_user("Other", "jane@example.com", "x")

    @pytest.mark.asyncio
    async def test_update_user_sets_updated_at(self, store):
        user = await store.create_user("Jane", "jane@example.com", "s3cret")

        updated = await store.update_user(user.model_copy(update={"name": "Jane D."}))

        assert updated.name == "Jane D."
        assert updated.updated_at is not None
        assert await store.update_user(user.model_copy(update={"id": "missing"})) is None

    @pytest.mark.asyncio
    async def test_user_requires_email_and_password(self, store):
        with pytest.raises(ValidationError):
            await store.create_user("Jane", "", "s3cret")


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_order_round_trip(self, sql_orders, sql_store, items, address, prices):
        order = await sql_orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)

        stored = await sql_store.get_order(order.id)

        assert stored.id == order.id
        assert stored.total_price == Decimal("43.20")
        assert [i.product_ref for i in stored.items] == ["p1", "p2"]
        assert stored.shipping_address == address
        assert stored.created_at == order.created_at
        assert await sql_store.get_order(uuid4()) is None

    @pytest.mark.asyncio
    async def test_payment_persisted(self, sql_orders, sql_store, items, address, prices):
        order = await sql_orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)

        paid = await sql_orders.mark_paid(order.id, PaymentPayload(id="CAP-1"))
        stored = await sql_store.get_order(order.id)

        assert stored.is_paid is True
        assert stored.version == 2
        assert stored.paid_at == paid.paid_at
        assert stored.payment_result == paid.payment_result

    @pytest.mark.asyncio
    async def test_conditional_update_rejects_stale_version(self, sql_orders, sql_store, items, address, prices):
        order = await sql_orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)
        await sql_orders.cancel(order.id)

        stale = order.model_copy(update={"status": OrderStatus.PAID, "is_paid": True, "version": 2})

        assert await sql_store.update_order(stale, 1, []) is False
        assert (await sql_store.get_order(order.id)).status is OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_lists(self, sql_orders, sql_store, items, address, prices):
        await sql_orders.create("user-1", items, address, PaymentMethod.CASH_ON_DELIVERY, prices)
        await sql_orders.create("user-2", items, address, PaymentMethod.CASH_ON_DELIVERY, prices)

        assert len(await sql_store.list_orders_for_user("user-1")) == 1
        assert len(await sql_store.list_orders()) == 2

    @pytest.mark.asyncio
    async def test_outbox(self, sql_orders, sql_store, items, address, prices):
        order = await sql_orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)
        await sql_orders.mark_paid(order.id, PaymentPayload(id="CAP-1"))

        events = await sql_store.pending_events(10)
        assert [ev.event_type for ev in events] == ["order_created", "order_paid"]
        assert events[1].payload["external_id"] == "CAP-1"

        await sql_store.mark_published([ev.id for ev in events])
        assert await sql_store.pending_events(10) == []

    @pytest.mark.asyncio
    async def test_users(self, sql_store):
        user = await sql_store.create_user("Admin", "Admin@Example.com", "s3cret", is_admin=True)

        found = await sql_store.find_user_by_email("admin@example.com")
        assert found.id == user.id
        assert found.is_admin is True
        assert check_password("s3cret", found.password_hash)
        with pytest.raises(ValidationError, match="already exists"):
            await sql_store.create_user("Again", "admin@example.com", "x")

        updated = await sql_store.update_user(found.model_copy(update={"name": "Root"}))
        assert (await sql_store.find_user_by_id(user.id)).name == updated.name == "Root"

    @pytest.mark.asyncio
    async def test_unconnected_database_reports_failure(self):
        failures = []
        store = SqlStore(Database("sqlite+aiosqlite:///:memory:"), on_failure=failures.append)

        with pytest.raises(StoreUnavailable):
            await store.get_order(uuid4())
        assert len(failures) == 1
        assert isinstance(failures[0], ConnectionError)

    @pytest.mark.asyncio
    async def test_failure_disconnects_monitor(self, monitor):
        store = SqlStore(Database("sqlite+aiosqlite:///:memory:"), on_failure=monitor.report_failure)

        with pytest.raises(StoreUnavailable):
            await store.list_orders()
        assert monitor.is_connected is False
        assert monitor.retry_pending is True


class TestStoreSelector:
    @pytest.mark.asyncio
    async def test_strict_mode_uses_durable_store_when_connected(self, monitor):
        durable, fallback = InMemoryStore(), InMemoryStore()

        assert StoreSelector(durable, fallback, monitor, strict=True).current() is durable

    def test_strict_mode_refuses_while_disconnected(self):
        monitor = AvailabilityMonitor(FakeDatabase(failing=True))
        stores = StoreSelector(InMemoryStore(), InMemoryStore(), monitor, strict=True)

        with pytest.raises(StoreUnavailable):
            stores.current()
        assert stores.degraded is False

    def test_permissive_mode_falls_back_while_disconnected(self):
        monitor = AvailabilityMonitor(FakeDatabase(failing=True), strict=False)
        fallback = InMemoryStore()
        stores = StoreSelector(InMemoryStore(), fallback, monitor, strict=False)

        assert stores.current() is fallback
        assert stores.degraded is True

    @pytest.mark.asyncio
    async def test_permissive_run_retries_on_fallback(self, monitor, processor_order):
        fallback = InMemoryStore()
        await fallback.create_order(processor_order, [])
        stores = StoreSelector(DeadStore(), fallback, monitor, strict=False)

        orders = await stores.run(lambda store: store.list_orders())

        assert [o.id for o in orders] == [processor_order.id]

    @pytest.mark.asyncio
    async def test_strict_run_propagates(self, monitor):
        stores = StoreSelector(DeadStore(), InMemoryStore(), monitor, strict=True)

        with pytest.raises(StoreUnavailable):
            await stores.run(lambda store: store.list_orders())

    @pytest.mark.asyncio
    async def test_events_are_kept_per_store(self, monitor, processor_order):
        fallback = InMemoryStore()
        event = OrderEvent(aggregate_id=processor_order.id, event_type="order_created", payload={})
        await fallback.create_order(processor_order, [event])

        assert await InMemoryStore().pending_events(10) == []
        assert [ev.id for ev in await fallback.pending_events(10)] == [event.id]


class TestRecoveryAfterDegradedMode:
    @pytest_asyncio.fixture
    async def degraded(self):
        database = FakeDatabase(failing=True)
        monitor = AvailabilityMonitor(database, strict=False, sleep=no_sleep, check_interval=3600)
        await monitor.start()
        durable, fallback = InMemoryStore(), InMemoryStore()
        stores = StoreSelector(durable, fallback, monitor, strict=False)
        yield database, monitor, stores
        await monitor.shutdown()

    @pytest.mark.asyncio
    async def test_order_created_while_degraded_survives_reconnect(self, degraded, items, address, prices):
        database, monitor, stores = degraded
        orders = OrderStateMachine(stores)
        order = await orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)

        database.failing = False
        assert (await monitor.reconnect()).success is True

        assert (await orders.get(order.id)).id == order.id
        paid = await orders.mark_paid(order.id, PaymentPayload(id="CAP-1"))
        assert paid.is_paid is True
        assert (await stores.fallback.get_order(order.id)).is_paid is True
        assert await stores.durable.get_order(order.id) is None

    @pytest.mark.asyncio
    async def test_lists_include_degraded_orders_after_reconnect(self, degraded, items, address, prices):
        database, monitor, stores = degraded
        orders = OrderStateMachine(stores)
        early = await orders.create("user-1", items, address, PaymentMethod.CASH_ON_DELIVERY, prices)

        database.failing = False
        await monitor.reconnect()
        late = await orders.create("user-1", items, address, PaymentMethod.CASH_ON_DELIVERY, prices)

        assert await stores.durable.get_order(late.id) is not None
        assert {o.id for o in await orders.list_for_user("user-1")} == {early.id, late.id}
        assert len(await orders.list_all()) == 2

    @pytest.mark.asyncio
    async def test_event_stores_include_fallback_in_permissive_mode(self, degraded):
        database, monitor, stores = degraded
        assert stores.event_stores() == [stores.fallback]

        database.failing = False
        await monitor.reconnect()

        assert stores.event_stores() == [stores.durable, stores.fallback]


@pytest.mark.asyncio
async def test_password_is_hashed_off_the_event_loop(store, monkeypatch):
    threads = []

    def recording_hash(password):
        threads.append(threading.get_ident())
        return hash_password(password)

    monkeypatch.setattr("storefront.stores.hash_password", recording_hash)

    user = await store.create_user("Jane", "jane@example.com", "s3cret")

    assert threads and threads[0] != threading.get_ident()
    assert check_password("s3cret", user.password_hash)
    assert not check_password("wrong", user.password_hash)
