"""
Shared fixtures for the storefront tests.

Order and payment tests run against ``InMemoryStore`` behind a monitor
whose database is a ``FakeDatabase``; durable-store tests use SQLite via
aiosqlite.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from storefront.monitor import AvailabilityMonitor
from storefront.orders import OrderStateMachine
from storefront.schemas import OrderItem, PaymentMethod, PriceBreakdown, ShippingAddress
from storefront.stores import InMemoryStore, StoreSelector


class FakeDatabase:
    """Stands in for ``Database``; every call fails while ``failing`` is set."""

    def __init__(self, failing: bool = False, fail_times: int = 0, host: str = "db.test"):
        self.failing = failing
        self.fail_times = fail_times
        self.host = host
        self.connect_calls = 0
        self.ping_calls = 0
        self.disposed = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.failing or self.connect_calls <= self.fail_times:
            raise ConnectionRefusedError("connection refused")

    async def ping(self) -> None:
        self.ping_calls += 1
        if self.failing:
            raise ConnectionResetError("server closed the connection")

    async def dispose(self) -> None:
        self.disposed = True


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def items():
    # 2 x 15.00 + 1 x 10.00 = 40.00
    return [
        OrderItem(product_ref="p1", name="Mug", unit_price=Decimal("15.00"), quantity=2,
                  image_ref="/images/mug.jpg"),
        OrderItem(product_ref="p2", name="Coaster", unit_price=Decimal("10.00"), quantity=1),
    ]


@pytest.fixture
def address():
    return ShippingAddress(address="1 Main St", city="Springfield", postal_code="12345", country="US")


@pytest.fixture
def prices():
    return PriceBreakdown(tax_price=Decimal("3.20"), shipping_price=Decimal("0"))


@pytest_asyncio.fixture
async def monitor():
    monitor = AvailabilityMonitor(FakeDatabase(), strict=True, sleep=no_sleep, check_interval=3600)
    await monitor.connect(counted=False)
    yield monitor
    await monitor.shutdown()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def stores(store, monitor):
    return StoreSelector(store, InMemoryStore(), monitor, strict=True)


@pytest.fixture
def orders(stores):
    return OrderStateMachine(stores)


@pytest_asyncio.fixture
async def processor_order(orders, items, address, prices):
    return await orders.create("user-1", items, address, PaymentMethod.EXTERNAL_PROCESSOR, prices)
