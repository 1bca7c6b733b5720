import asyncio
import logging

from storefront.errors import StoreUnavailable
from storefront.messaging import EventPublisher
from storefront.stores import OrderStore, StoreSelector

logger = logging.getLogger("storefront.workers")

async def publish_pending(stores: StoreSelector, publisher: EventPublisher, batch_size: int) -> int:
    published = 0
    for store in stores.event_stores():
        published += await _publish_from(store, publisher, batch_size)
    return published

async def _publish_from(store: OrderStore, publisher: EventPublisher, batch_size: int) -> int:
    events = await store.pending_events(batch_size)
    if not events:
        return 0

    logger.info("[Outbox] Pending events in %s store: %d", store.name, len(events))
    for ev in events:
        logger.info("[Outbox] Publishing %s for order %s", ev.event_type, ev.aggregate_id)
        await publisher.publish(ev)
    await store.mark_published([ev.id for ev in events])
    logger.info("[Outbox] Publish commit complete")
    return len(events)

async def outbox_publisher(
    stores: StoreSelector,
    publisher: EventPublisher,
    interval: float,
    batch_size: int,
) -> None:
    while True:
        try:
            await publish_pending(stores, publisher, batch_size)
        except StoreUnavailable:
            logger.debug("[Outbox] Store unavailable, skipping this round")
        except Exception as e:
            logger.error("[Outbox] Publishing failed: %s", e)

        await asyncio.sleep(interval)
