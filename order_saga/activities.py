"""
Saga steps.

Each method is one externally visible side effect that the orchestrator runs
through a StepExecutor. Steps can be invoked more than once for the same logical
attempt, so every one of them tolerates duplicates. Identifiers, timestamps and
gateway outcomes are produced here, never in the orchestrator.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from order_saga.errors import OrderNotFoundError
from order_saga.inventory import InventoryLedger
from order_saga.models import Order, OrderItem, OrderStatus, Product, utcnow
from order_saga.notification import NotificationService
from order_saga.payment import ChargeResult, PaymentLedger
from order_saga.state_machine import ensure_transition, resolve_final_status

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "Unknown Product"


@dataclass(frozen=True)
class FulfillmentItem:
    product_id: str
    quantity: int
    name: Optional[str] = None


class OrderActivities:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        payments: PaymentLedger,
        inventory: InventoryLedger,
        notifications: NotificationService,
    ):
        self._session_factory = session_factory
        self._payments = payments
        self._inventory = inventory
        self._notifications = notifications

    async def create_pending_order(
        self,
        user_id: str,
        user_email: str,
        total_amount: float,
        items: Iterable,
        correlation_id: Optional[str] = None,
    ) -> str:
        logger.info(f"[Activity] Creating pending order for user {user_id}")
        if correlation_id is not None:
            existing = await self._order_id_for_correlation(correlation_id)
            if existing is not None:
                logger.info(f"[Activity] Order {existing} already exists for run {correlation_id}")
                return existing

        order = Order(
            id=str(uuid4()),
            user_id=user_id,
            user_email=user_email,
            total_amount=total_amount,
            status=OrderStatus.PENDING,
            correlation_id=correlation_id,
            items=[
                OrderItem(
                    id=str(uuid4()),
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price_at_order=item.price_at_order,
                )
                for item in items
            ],
        )
        try:
            async with self._session_factory() as session:
                session.add(order)
                await session.commit()
        except IntegrityError:
            # A concurrent duplicate of this step won the unique correlation id.
            existing = await self._order_id_for_correlation(correlation_id) if correlation_id else None
            if existing is None:
                raise
            return existing

        logger.info(f"[Activity] Pending order created with ID: {order.id}")
        return order.id

    async def update_order_status(self, order_id: str, status: OrderStatus) -> None:
        logger.info(f"[Activity] Updating Order {order_id} status to {status.value}")
        async with self._session_factory() as session:
            async with session.begin():
                order = await session.get(Order, order_id, with_for_update=True)
                if order is None:
                    raise OrderNotFoundError(order_id)
                ensure_transition(order.status, status)
                if order.status != status:
                    order.status = status
                    order.updated_at = utcnow()

    async def finalize_order_status(self, order_id: str, status: OrderStatus) -> OrderStatus:
        """Compensation-side status update: moves a failed order to a terminal status."""
        logger.warning(f"[Activity] Finalizing Order {order_id} status to {status.value}")
        async with self._session_factory() as session:
            async with session.begin():
                order = await session.get(Order, order_id, with_for_update=True)
                if order is None:
                    raise OrderNotFoundError(order_id)
                target = resolve_final_status(order.status, status)
                if target is not None:
                    order.status = target
                    order.updated_at = utcnow()
                return order.status

    async def charge_payment(self, order_id: str, amount: float) -> ChargeResult:
        logger.info(f"[Activity] Attempting payment for Order {order_id}, Amount: {amount}")
        return await self._payments.charge(order_id, amount)

    async def validate_and_decrease_inventory(self, order_id: str, items: Iterable) -> None:
        logger.info(f"[Activity] Validating and decreasing inventory for Order {order_id}")
        await self._inventory.decrease_stock(items, order_id=order_id)

    async def notify_fulfillment(self, order_id: str, items: Iterable) -> None:
        items = list(items)
        logger.info(f"[Activity] Notifying fulfillment for Order {order_id}")
        missing = {item.product_id for item in items if not item.name}
        names = await self._product_names(missing) if missing else {}
        await self._notifications.notify_fulfillment(
            order_id,
            [
                {
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "name": item.name or names.get(item.product_id, UNKNOWN_PRODUCT),
                }
                for item in items
            ],
        )

    async def send_confirmation(self, order_id: str, user_email: str) -> None:
        logger.info(f"[Activity] Sending confirmation for Order {order_id} to {user_email}")
        await self._notifications.send_confirmation(order_id, user_email)

    # --- Compensations ---

    async def refund_payment(self, payment_record_id: str) -> None:
        logger.warning(f"[Activity] Initiating REFUND for Payment Record {payment_record_id}")
        await self._payments.refund(payment_record_id)

    async def restore_inventory(self, order_id: str, items: Iterable) -> None:
        logger.warning(f"[Activity] Restoring inventory for Order {order_id}")
        await self._inventory.increase_stock(items, order_id=order_id)

    async def send_failure_notification(self, order_id: str, user_email: str, reason: str) -> None:
        logger.warning(f"[Activity] Sending failure notice for Order {order_id} to {user_email}. Reason: {reason}")
        await self._notifications.send_failure(order_id, user_email, reason)

    async def _order_id_for_correlation(self, correlation_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            return await session.scalar(select(Order.id).where(Order.correlation_id == correlation_id))

    async def _product_names(self, product_ids) -> dict:
        async with self._session_factory() as session:
            rows = await session.execute(select(Product.id, Product.name).where(Product.id.in_(product_ids)))
            return {product_id: name for product_id, name in rows.all()}
