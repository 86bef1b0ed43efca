import json
import logging
from typing import Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection

from order_saga.errors import PublisherNotConnectedError

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes JSON events to a durable RabbitMQ topic exchange."""

    def __init__(self, url: str, exchange_name: str = "order_exchange"):
        self.url = url
        self.exchange_name = exchange_name
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None

    @property
    def connected(self) -> bool:
        return self._exchange is not None

    async def connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        self._exchange = await self._channel.declare_exchange(
            self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        logger.info(f"RabbitMQ setup complete. Exchange: {self.exchange_name}")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            logger.info("RabbitMQ connection closed.")
        self._connection = None
        self._channel = None
        self._exchange = None

    async def publish(self, routing_key: str, message_data: dict) -> None:
        if self._exchange is None:
            raise PublisherNotConnectedError()

        message = aio_pika.Message(
            json.dumps(message_data).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_data.get("event_id"),
        )
        await self._exchange.publish(message, routing_key=routing_key)
        logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
