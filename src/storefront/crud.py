from datetime import datetime, timezone
from typing import List, Sequence
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from storefront.models import OrderRow, OrdersOutbox, UserRow
from storefront.schemas import Order, OrderEvent, User, utcnow

class UserExistsError(Exception):
    pass

def _aware(value: datetime | None) -> datetime | None:
    # sqlite отдаёт naive datetime даже для timezone=True
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def row_to_order(row: OrderRow) -> Order:
    return Order.model_validate({
        "id": row.id,
        "user_id": row.user_id,
        "items": row.items,
        "shipping_address": row.shipping_address,
        "payment_method": row.payment_method,
        "items_price": row.items_price,
        "tax_price": row.tax_price,
        "shipping_price": row.shipping_price,
        "total_price": row.total_price,
        "status": row.status,
        "is_paid": row.is_paid,
        "paid_at": _aware(row.paid_at),
        "payment_result": row.payment_result,
        "is_delivered": row.is_delivered,
        "delivered_at": _aware(row.delivered_at),
        "cancelled_at": _aware(row.cancelled_at),
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
        "version": row.version,
    })

def order_values(order: Order) -> dict:
    return {
        "user_id": order.user_id,
        "items": [item.model_dump(mode="json") for item in order.items],
        "shipping_address": order.shipping_address.model_dump(),
        "payment_method": order.payment_method.value,
        "items_price": order.items_price,
        "tax_price": order.tax_price,
        "shipping_price": order.shipping_price,
        "total_price": order.total_price,
        "status": order.status.value,
        "is_paid": order.is_paid,
        "paid_at": order.paid_at,
        "payment_result": order.payment_result.model_dump(mode="json") if order.payment_result else None,
        "is_delivered": order.is_delivered,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
        "updated_at": order.updated_at,
        "version": order.version,
    }

def _outbox_row(event: OrderEvent) -> OrdersOutbox:
    return OrdersOutbox(
        id=event.id,
        aggregate_id=event.aggregate_id,
        event_type=event.event_type,
        payload=event.payload,
        created_at=event.created_at,
    )

async def create_order(
    order: Order,
    events: Sequence[OrderEvent],
    session: AsyncSession
) -> Order:
    """
    Сохраняет новый заказ и события outbox одной транзакцией.
    """
    row = OrderRow(id=order.id, created_at=order.created_at, **order_values(order))
    session.add(row)
    session.add_all([_outbox_row(ev) for ev in events])
    await session.commit()
    return order

async def get_order(
    order_id: UUID,
    session: AsyncSession
) -> Order | None:
    """
    Возвращает заказ по ID или None, если не найден.
    """
    row = await session.get(OrderRow, order_id)
    return row_to_order(row) if row else None

async def get_orders_by_user(
    user_id: str,
    session: AsyncSession
) -> List[Order]:
    """
    Возвращает список заказов для данного user_id.
    """
    result = await session.execute(
        select(OrderRow).where(OrderRow.user_id == user_id).order_by(OrderRow.created_at)
    )
    return [row_to_order(row) for row in result.scalars().all()]

async def get_orders(session: AsyncSession) -> List[Order]:
    result = await session.execute(select(OrderRow).order_by(OrderRow.created_at))
    return [row_to_order(row) for row in result.scalars().all()]

async def update_order(
    order: Order,
    expected_version: int,
    events: Sequence[OrderEvent],
    session: AsyncSession
) -> bool:
    """
    Условное обновление: применяется только если версия в базе совпадает
    с expected_version. Возвращает False, если заказ успели изменить.
    """
    result = await session.execute(
        update(OrderRow)
        .where(OrderRow.id == order.id, OrderRow.version == expected_version)
        .values(**order_values(order))
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    session.add_all([_outbox_row(ev) for ev in events])
    await session.commit()
    return True

async def get_pending_events(session: AsyncSession, limit: int) -> List[OrderEvent]:
    result = await session.execute(
        select(OrdersOutbox)
        .where(OrdersOutbox.published_at.is_(None))
        .order_by(OrdersOutbox.created_at)
        .limit(limit)
    )
    return [
        OrderEvent(
            id=ev.id,
            aggregate_id=ev.aggregate_id,
            event_type=ev.event_type,
            payload=ev.payload,
            created_at=_aware(ev.created_at),
        )
        for ev in result.scalars().all()
    ]

async def mark_events_published(event_ids: Sequence[UUID], session: AsyncSession) -> None:
    if not event_ids:
        return
    await session.execute(
        update(OrdersOutbox)
        .where(OrdersOutbox.id.in_(list(event_ids)))
        .values(published_at=utcnow())
    )
    await session.commit()

def _row_to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        is_admin=row.is_admin,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )

async def get_user(user_id: str, session: AsyncSession) -> User | None:
    row = await session.get(UserRow, user_id)
    return _row_to_user(row) if row else None

async def get_user_by_email(email: str, session: AsyncSession) -> User | None:
    result = await session.execute(select(UserRow).where(UserRow.email == email))
    row = result.scalar_one_or_none()
    return _row_to_user(row) if row else None

async def create_user(user: User, session: AsyncSession) -> User:
    session.add(UserRow(
        id=user.id,
        name=user.name,
        email=user.email,
        password_hash=user.password_hash,
        is_admin=user.is_admin,
        created_at=user.created_at,
    ))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise UserExistsError()
    return user

async def update_user(user: User, session: AsyncSession) -> User | None:
    result = await session.execute(
        update(UserRow)
        .where(UserRow.id == user.id)
        .values(
            name=user.name,
            email=user.email,
            password_hash=user.password_hash,
            is_admin=user.is_admin,
            updated_at=user.updated_at,
        )
    )
    await session.commit()
    return user if result.rowcount == 1 else None
