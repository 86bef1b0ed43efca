import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from order_saga.errors import InvalidOrderError, OrderNotFoundError, ProductNotFoundError
from order_saga.models import Order, Product
from order_saga.orchestrator import OrderLine, OrderSagaInput
from order_saga.runner import SagaRunner
from order_saga.schemas import OrderCreate, OrderStatusRead

logger = logging.getLogger(__name__)

WORKFLOW_ID_PREFIX = "order-wf-"


def new_correlation_id() -> str:
    return f"{WORKFLOW_ID_PREFIX}{uuid4()}"


class OrderService:
    """Entry point for placing orders and reading their status."""

    def __init__(self, session_factory: async_sessionmaker, runner: SagaRunner):
        self._session_factory = session_factory
        self._runner = runner

    async def place_order(self, order: OrderCreate) -> str:
        """
        Validate an order against the catalog and start its saga.

        Prices and names are snapshotted from the products table here, so the
        saga never sees client-supplied prices. Returns the correlation id.

        Raises:
            ProductNotFoundError: an item references an unknown product.
            InvalidOrderError: the order has no items.
        """
        if not order.items:
            raise InvalidOrderError("Order must contain at least one item.")

        product_ids = {item.product_id for item in order.items}
        async with self._session_factory() as session:
            result = await session.execute(select(Product).where(Product.id.in_(product_ids)))
            products = {product.id: product for product in result.scalars().all()}

        missing = sorted(product_ids - products.keys())
        if missing:
            logger.warning(f"Rejecting order for user {order.user_id}: unknown products {missing}")
            raise ProductNotFoundError(missing)

        lines = tuple(
            OrderLine(
                product_id=item.product_id,
                quantity=item.quantity,
                price_at_order=products[item.product_id].price,
                name=products[item.product_id].name,
            )
            for item in order.items
        )
        total_amount = round(sum(line.price_at_order * line.quantity for line in lines), 2)

        correlation_id = new_correlation_id()
        self._runner.start(
            correlation_id,
            OrderSagaInput(
                user_id=order.user_id,
                user_email=order.user_email,
                items=lines,
                total_amount=total_amount,
                correlation_id=correlation_id,
            ),
        )
        logger.info(f"Accepted order {correlation_id} for user {order.user_id}, total {total_amount}")
        return correlation_id

    async def get_order_status(self, order_id: str) -> OrderStatusRead:
        async with self._session_factory() as session:
            order = await session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return self._status(order)

    async def get_status_by_correlation(self, correlation_id: str) -> OrderStatusRead:
        order = await self._find_by_correlation(correlation_id)
        if order is None:
            raise OrderNotFoundError(correlation_id)
        return self._status(order)

    async def _find_by_correlation(self, correlation_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            return await session.scalar(select(Order).where(Order.correlation_id == correlation_id))

    @staticmethod
    def _status(order: Order) -> OrderStatusRead:
        return OrderStatusRead(order_id=order.id, status=order.status, updated_at=order.updated_at)
