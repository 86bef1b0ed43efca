import logging
from datetime import datetime, timezone
from typing import Iterable
from uuid import uuid4

from order_saga.messaging import EventPublisher

logger = logging.getLogger(__name__)

FULFILLMENT_REQUESTED = "fulfillment.requested"
ORDER_CONFIRMED = "order.confirmed"
ORDER_FAILED = "order.failed"


def build_event(event_type: str, order_id: str, **data) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "order_id": order_id,
        **data,
    }


class NotificationService:
    """Hands kitchen tickets and customer emails off to the notification consumer."""

    def __init__(self, publisher: EventPublisher):
        self._publisher = publisher

    async def notify_fulfillment(self, order_id: str, items: Iterable[dict]) -> None:
        items = list(items)
        if not items:
            logger.warning(f"No items provided for fulfillment notification, Order ID: {order_id}")
            return
        await self._publisher.publish(
            FULFILLMENT_REQUESTED, build_event("FulfillmentRequested", order_id, items=items)
        )

    async def send_confirmation(self, order_id: str, user_email: str) -> None:
        await self._publisher.publish(
            ORDER_CONFIRMED, build_event("OrderConfirmed", order_id, user_email=user_email)
        )

    async def send_failure(self, order_id: str, user_email: str, reason: str) -> None:
        await self._publisher.publish(
            ORDER_FAILED, build_event("OrderFailed", order_id, user_email=user_email, reason=reason)
        )
