import json
from typing import Any, Awaitable, Callable, Dict

import aio_pika

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]


def make_queue_publisher(rabbitmq_url: str, queue_name: str) -> Publisher:
    """Вернуть функцию публикации сообщения в durable-очередь RabbitMQ."""

    async def publish(message: Dict[str, Any]) -> None:
        connection = await aio_pika.connect_robust(rabbitmq_url)
        async with connection:
            channel = await connection.channel()
            queue = await channel.declare_queue(queue_name, durable=True)
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(message, default=str).encode("utf-8"),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=queue.name,
            )

    return publish
