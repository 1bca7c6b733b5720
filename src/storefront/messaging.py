import asyncio
import logging
from aio_pika import DeliveryMode, ExchangeType, Message, connect_robust
from aio_pika.abc import AbstractExchange, AbstractRobustChannel, AbstractRobustConnection
from storefront.schemas import OrderEvent

logger = logging.getLogger("storefront.messaging")

ORDER_EXCHANGE = "order_events"

class EventPublisher:
    """Publishes outbox events to the order_events exchange, routed by event type."""

    def __init__(self, url: str):
        self.url = url
        self.connection: AbstractRobustConnection | None = None
        self.channel: AbstractRobustChannel | None = None
        self.exchange: AbstractExchange | None = None

    async def connect(self, retry_attempts: int = 5, retry_delay: int = 2) -> None:
        for attempt in range(1, retry_attempts + 1):
            try:
                logger.info(f"[Messaging] Connecting to RabbitMQ (attempt {attempt}/{retry_attempts})")
                self.connection = await connect_robust(self.url)
                self.channel = await self.connection.channel()
                self.exchange = await self.channel.declare_exchange(
                    ORDER_EXCHANGE, ExchangeType.DIRECT, durable=True
                )
                logger.info("[Messaging] RabbitMQ setup complete")
                return
            except Exception as e:
                logger.error(f"[Messaging] RabbitMQ init failed: {e}")
                if attempt < retry_attempts:
                    await asyncio.sleep(retry_delay)
                else:
                    logger.critical("[Messaging] Could not connect to RabbitMQ, giving up")
                    raise

    async def publish(self, event: OrderEvent) -> None:
        if self.exchange is None:
            await self.connect()
        message = Message(
            body=event.model_dump_json().encode(),
            content_type="application/json",
            message_id=str(event.id),
            type=event.event_type,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await self.exchange.publish(message, routing_key=event.event_type)

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
            logger.info("[Messaging] RabbitMQ connection closed")
        self.connection = None
        self.channel = None
        self.exchange = None
