import pytest

from storefront.admin import AdminOrderOps
from storefront.auth import Identity, ensure_can_access
from storefront.errors import Forbidden, InvalidTransition, ValidationError
from storefront.schemas import OrderStatus, PaymentPayload

ADMIN = Identity(user_id="admin-1", is_admin=True)
CUSTOMER = Identity(user_id="user-1")


@pytest.fixture
def admin(orders):
    return AdminOrderOps(orders)


@pytest.mark.asyncio
@pytest.mark.parametrize("call", [
    lambda admin, order_id: admin.list_all(CUSTOMER),
    lambda admin, order_id: admin.mark_delivered(CUSTOMER, order_id),
    lambda admin, order_id: admin.cancel(CUSTOMER, order_id),
    lambda admin, order_id: admin.set_status(CUSTOMER, order_id, "paid"),
])
async def test_customer_is_rejected(admin, orders, processor_order, call):
    with pytest.raises(Forbidden):
        await call(admin, processor_order.id)

    assert (await orders.get(processor_order.id)).version == 1


@pytest.mark.asyncio
async def test_list_all(admin, processor_order):
    assert [o.id for o in await admin.list_all(ADMIN)] == [processor_order.id]


@pytest.mark.asyncio
async def test_manual_payment(admin, processor_order):
    order = await admin.set_status(ADMIN, processor_order.id, "Paid")

    assert order.is_paid is True
    assert order.payment_result.external_id == f"manual-{processor_order.id}"
    assert order.payment_result.status == "COMPLETED"


@pytest.mark.asyncio
async def test_manual_payment_keeps_existing_capture(admin, orders, processor_order):
    paid = await orders.mark_paid(processor_order.id, PaymentPayload(id="CAP-1"))

    order = await admin.set_status(ADMIN, processor_order.id, "paid")

    assert order.payment_result == paid.payment_result
    assert order.version == paid.version


@pytest.mark.asyncio
async def test_status_delivered(admin, processor_order):
    await admin.set_status(ADMIN, processor_order.id, "paid")

    order = await admin.set_status(ADMIN, processor_order.id, "delivered")

    assert order.status is OrderStatus.DELIVERED
    assert order.is_delivered is True


@pytest.mark.asyncio
async def test_status_delivered_requires_payment(admin, processor_order):
    with pytest.raises(InvalidTransition):
        await admin.mark_delivered(ADMIN, processor_order.id)


@pytest.mark.asyncio
async def test_unknown_status_rejected(admin, processor_order):
    with pytest.raises(ValidationError, match="Unsupported status"):
        await admin.set_status(ADMIN, processor_order.id, "shipped")


@pytest.mark.asyncio
async def test_cancel(admin, processor_order):
    order = await admin.cancel(ADMIN, processor_order.id)

    assert order.status is OrderStatus.CANCELLED


def test_order_access(processor_order):
    ensure_can_access(CUSTOMER, processor_order)
    ensure_can_access(ADMIN, processor_order)

    with pytest.raises(Forbidden):
        ensure_can_access(Identity(user_id="user-2"), processor_order)
