import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_saga.errors import InsufficientStockError, InventoryUnavailableError
from order_saga.models import InventoryItem, InventoryReservation, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockItem:
    product_id: str
    quantity: int


def _merge(items: Iterable) -> List[StockItem]:
    """Sum quantities per product, keeping first-seen order and dropping non-positive lines."""
    merged = {}
    for item in items:
        if item.quantity <= 0:
            logger.warning(
                f"Skipping stock update for Product ID: {item.product_id} "
                f"due to non-positive quantity: {item.quantity}"
            )
            continue
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return [StockItem(product_id, quantity) for product_id, quantity in merged.items()]


class InventoryLedger:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def decrease_stock(self, items: Iterable, order_id: Optional[str] = None) -> None:
        """
        Atomically decrease stock for a batch of items.

        Each product is decremented by a single conditional UPDATE that only
        matches while ``quantity >= requested``; if any product matches no row the
        whole transaction rolls back and nothing in the batch is changed.

        When ``order_id`` is given, the reservation journal makes a repeated call
        for the same order a no-op.

        Raises:
            InsufficientStockError: a product is missing or short on stock.
            InventoryUnavailableError: the database failed unexpectedly.
        """
        batch = _merge(items)
        if not batch:
            logger.warning("decrease_stock called with no positive items. Skipping.")
            return

        product_ids = [item.product_id for item in batch]
        logger.info(f"Attempting to decrease stock for Product IDs: {product_ids}")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if order_id is not None and await self._has_reservation(session, order_id):
                        logger.info(f"Stock already reserved for order {order_id}. Idempotent.")
                        return

                    for item in batch:
                        result = await session.execute(
                            update(InventoryItem)
                            .where(
                                InventoryItem.product_id == item.product_id,
                                InventoryItem.quantity >= item.quantity,
                            )
                            .values(quantity=InventoryItem.quantity - item.quantity, updated_at=utcnow())
                        )
                        if result.rowcount == 0:
                            available = await session.scalar(
                                select(InventoryItem.quantity).where(
                                    InventoryItem.product_id == item.product_id
                                )
                            )
                            error = InsufficientStockError(item.product_id, item.quantity, available)
                            logger.error(f"Failed to decrease stock: {error}")
                            raise error
                        logger.debug(
                            f"Decreased stock for Product ID: {item.product_id} by {item.quantity}"
                        )

                    if order_id is not None:
                        session.add_all(
                            InventoryReservation(
                                order_id=order_id,
                                product_id=item.product_id,
                                quantity=item.quantity,
                            )
                            for item in batch
                        )
        except SQLAlchemyError as exc:
            logger.error(f"Unexpected error during stock decrease for Product IDs: {product_ids}: {exc}")
            raise InventoryUnavailableError(
                "An unexpected error occurred while updating inventory."
            ) from exc

        logger.info(f"Successfully decreased stock for all requested items. Product IDs: {product_ids}")

    async def increase_stock(self, items: Iterable, order_id: Optional[str] = None) -> None:
        """
        Restore stock for a batch of items (compensation).

        Increments are unconditional. A product missing from inventory is logged
        and skipped so the rest of the batch is still restored. When ``order_id``
        is given, the order's reservation is released in the same transaction and
        an order with no reservation is left untouched.
        """
        batch = _merge(items)
        if not batch:
            logger.warning("increase_stock called with no positive items. Skipping.")
            return

        product_ids = [item.product_id for item in batch]
        logger.warning(f"Attempting to RESTORE stock for Product IDs: {product_ids}")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if order_id is not None:
                        released = await session.execute(
                            delete(InventoryReservation).where(InventoryReservation.order_id == order_id)
                        )
                        if released.rowcount == 0:
                            logger.warning(f"No active reservation found for order {order_id}. Idempotent.")
                            return

                    for item in batch:
                        result = await session.execute(
                            update(InventoryItem)
                            .where(InventoryItem.product_id == item.product_id)
                            .values(quantity=InventoryItem.quantity + item.quantity, updated_at=utcnow())
                        )
                        if result.rowcount == 0:
                            logger.error(
                                f"Failed to increase stock for Product ID: {item.product_id}. "
                                "Product not found in inventory during compensation."
                            )
        except SQLAlchemyError as exc:
            logger.error(f"Unexpected error during stock restore for Product IDs: {product_ids}: {exc}")
            raise InventoryUnavailableError(
                "An unexpected error occurred while restoring inventory."
            ) from exc

        logger.warning(f"Successfully RESTORED stock for Product IDs: {product_ids}")

    async def get_stock_quantity(self, product_id: str) -> Optional[int]:
        async with self._session_factory() as session:
            return await session.scalar(
                select(InventoryItem.quantity).where(InventoryItem.product_id == product_id)
            )

    @staticmethod
    async def _has_reservation(session: AsyncSession, order_id: str) -> bool:
        found = await session.scalar(
            select(InventoryReservation.order_id).where(InventoryReservation.order_id == order_id).limit(1)
        )
        return found is not None
