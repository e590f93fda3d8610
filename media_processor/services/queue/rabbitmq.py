"""
RabbitMQ queue client built on aio-pika
"""

import json
import logging
from typing import Any, Dict, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

from media_processor.interfaces.queue import MessageHandler
from media_processor.services.queue.topology import QueueTopology

logger = logging.getLogger(__name__)


class AmqpMessage:
    """Adapter exposing an aio-pika delivery as ``IQueueMessage``"""

    def __init__(self, message: AbstractIncomingMessage):
        self._message = message
        self.body = message.body

    async def ack(self) -> None:
        await self._message.ack()

    async def requeue(self) -> None:
        await self._message.nack(requeue=True)


class RabbitMQClient:
    """
    Durable direct-exchange topology with per-queue consumer control.

    Consumer tags are kept per queue so admission control can cancel and
    re-register a consumer without touching the queue itself; messages
    published while a queue has no consumer stay buffered in the broker.
    """

    def __init__(
        self,
        url: str,
        topology: QueueTopology,
        include_stage_queues: bool = False,
        prefetch_count: int = 1,
    ):
        self.url = url
        self.topology = topology
        self.include_stage_queues = include_stage_queues
        self.prefetch_count = prefetch_count
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractRobustChannel] = None
        self._exchanges: Dict[str, AbstractExchange] = {}
        self._queues: Dict[str, AbstractQueue] = {}
        self._consumer_tags: Dict[str, str] = {}

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        logger.info("Connecting to RabbitMQ at %s", mask_url(self.url))
        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)

        for name in self.topology.exchanges:
            self._exchanges[name] = await self._channel.declare_exchange(
                name, ExchangeType.DIRECT, durable=True
            )

        for binding in self.topology.bindings(self.include_stage_queues):
            queue = await self._channel.declare_queue(binding.queue, durable=True)
            await queue.bind(self._exchanges[binding.exchange], binding.routing_key)
            self._queues[binding.queue] = queue

        logger.info(
            "RabbitMQ topology declared: %d exchanges, %d queues",
            len(self._exchanges),
            len(self._queues),
        )

    async def close(self) -> None:
        for queue_name in list(self._consumer_tags):
            await self.unsubscribe(queue_name)
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self._channel = None
        logger.info("RabbitMQ connection closed")

    async def subscribe(self, queue: str, handler: MessageHandler) -> None:
        if queue in self._consumer_tags:
            return
        if queue not in self._queues:
            raise KeyError(f"Queue not declared: {queue}")

        async def on_message(message: AbstractIncomingMessage) -> None:
            await handler(AmqpMessage(message))

        tag = await self._queues[queue].consume(on_message, no_ack=False)
        self._consumer_tags[queue] = tag
        logger.info("Subscribed to %s (consumer %s)", queue, tag)

    async def unsubscribe(self, queue: str) -> None:
        tag = self._consumer_tags.pop(queue, None)
        if tag is None:
            return
        if self.is_connected:
            await self._queues[queue].cancel(tag)
        logger.info("Unsubscribed from %s (consumer %s)", queue, tag)

    def is_subscribed(self, queue: str) -> bool:
        return queue in self._consumer_tags

    async def publish(
        self, exchange: str, routing_key: str, payload: Dict[str, Any]
    ) -> None:
        if exchange not in self._exchanges:
            raise KeyError(f"Exchange not declared: {exchange}")
        message = Message(
            body=json.dumps(payload).encode("utf-8"),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await self._exchanges[exchange].publish(message, routing_key=routing_key)


def mask_url(url: str) -> str:
    """Hide the password part of an amqp URL"""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    user = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
