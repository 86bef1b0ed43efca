import asyncio
import json
import logging

import aio_pika
from aio_pika.abc import AbstractIncomingMessage

from order_saga.config import Settings, configure_logging
from order_saga.notification import FULFILLMENT_REQUESTED, ORDER_CONFIRMED, ORDER_FAILED

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE = "notification_q"
ROUTING_KEYS = (FULFILLMENT_REQUESTED, ORDER_CONFIRMED, ORDER_FAILED)


def render_notification(event_data: dict) -> str:
    """Turn an event into the text a kitchen display or mail server would receive."""
    event_type = event_data.get("event_type", "UNKNOWN")
    order_id = event_data.get("order_id", "N/A")

    if event_type == "FulfillmentRequested":
        lines = [f"--- KITCHEN TICKET: Order {order_id} ---"]
        for item in event_data.get("items", []):
            lines.append(f"  {item.get('quantity')} x {item.get('name')} ({item.get('product_id')})")
        return "\n".join(lines)
    if event_type == "OrderConfirmed":
        return (
            f"To: {event_data.get('user_email')}\n"
            f"Subject: Your order {order_id} is confirmed\n"
            "Thank you! Your order has been paid and sent to the kitchen."
        )
    if event_type == "OrderFailed":
        return (
            f"To: {event_data.get('user_email')}\n"
            f"Subject: Your order {order_id} could not be completed\n"
            f"Reason: {event_data.get('reason')}"
        )
    return f"Unhandled event {event_type} for order {order_id}: {event_data}"


async def process_notification_event(message: AbstractIncomingMessage) -> None:
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            # Acknowledged anyway; a malformed message will never parse on redelivery.
            logger.error(f"Error processing notification event {message.message_id}: {e}")
            return

        logger.info(
            f"--- NOTIFICATION SENT ({message.routing_key}) ---\n{render_notification(event_data)}"
        )


async def main(settings: Settings) -> None:
    connection = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with connection:
        channel = await connection.channel()

        order_exchange = await channel.declare_exchange(
            settings.notification_exchange, aio_pika.ExchangeType.TOPIC, durable=True
        )

        queue = await channel.declare_queue(NOTIFICATION_QUEUE, durable=True)
        for routing_key in ROUTING_KEYS:
            await queue.bind(order_exchange, routing_key)

        logger.info("Notification consumer is listening for events...")
        await queue.consume(process_notification_event)

        await asyncio.Future()


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("Notification consumer stopped.")


if __name__ == "__main__":
    run()
