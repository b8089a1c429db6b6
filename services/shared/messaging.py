import json
from typing import Any

import aio_pika

EXCHANGE_NAME = "library.events"


def routing_key_from(event_type: str) -> str:
    return event_type.replace("_", ".")


def encode_event(event_type: str, payload: dict[str, Any]) -> bytes:
    # default=str covers dates and Decimal amounts
    return json.dumps({"type": event_type, "payload": payload}, default=str).encode("utf-8")


async def publish_event(
    amqp_url: str,
    event_type: str,
    payload: dict[str, Any],
    routing_key: str | None = None,
) -> None:
    """Publish an event to the shared topic exchange."""
    connection = await aio_pika.connect_robust(amqp_url)
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(
            EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
        )
        message = aio_pika.Message(
            body=encode_event(event_type, payload),
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await exchange.publish(message, routing_key or routing_key_from(event_type))
