from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from order_saga.database import Database
from order_saga.errors import GatewayError, PaymentDeclinedError
from order_saga.execution import RetryPolicy
from order_saga.models import InventoryItem, Product
from order_saga.payment import PaymentGateway

# No backoff and a short attempt timeout so retry paths run instantly.
FAST_POLICY = RetryPolicy(initial_interval=0, maximum_attempts=3, attempt_timeout=5)

CATALOG = {
    "product-A": ("Margherita Pizza", 10.0),
    "product-B": ("Caesar Salad", 7.5),
    "product-C": ("Tiramisu", 5.0),
}


class FakeGateway(PaymentGateway):
    """Deterministic gateway. ``charges`` lists money movements; a repeated idempotency key is not charged again."""

    def __init__(self, decline: bool = False, refund_error: bool = False):
        self.decline = decline
        self.refund_error = refund_error
        self.charges = []
        self.charge_keys = []
        self.refunds = []
        self._charged = {}

    async def charge(self, order_id, amount, idempotency_key):
        self.charge_keys.append(idempotency_key)
        if idempotency_key in self._charged:
            return self._charged[idempotency_key]
        self.charges.append((order_id, amount))
        if self.decline:
            raise PaymentDeclinedError(order_id, amount, "Card declined")
        self._charged[idempotency_key] = f"TX-{len(self.charges)}"
        return self._charged[idempotency_key]

    async def refund(self, external_transaction_id, amount):
        self.refunds.append((external_transaction_id, amount))
        if self.refund_error:
            raise GatewayError("Refund rejected by provider")


@pytest_asyncio.fixture
async def database(tmp_path):
    # A file database so concurrent sessions get separate connections.
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await db.init_models()
    yield db
    await db.dispose()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
def seed_stock(session_factory):
    """Insert catalog products with the given stock levels, e.g. ``await seed_stock({"product-A": 5})``."""

    async def _seed(stock: dict):
        async with session_factory() as session:
            for product_id, quantity in stock.items():
                name, price = CATALOG.get(product_id, (product_id, 1.0))
                session.add(Product(id=product_id, name=name, price=price))
                session.add(InventoryItem(product_id=product_id, quantity=quantity))
            await session.commit()

    return _seed


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return AsyncMock()
