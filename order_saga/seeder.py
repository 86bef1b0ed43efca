import asyncio
import logging

from order_saga.config import Settings, configure_logging
from order_saga.database import Database
from order_saga.models import InventoryItem, Product

logger = logging.getLogger(__name__)

# (id, name, price, stock); product-C is out of stock for exercising the
# inventory failure path.
CATALOG = [
    ("product-A", "Margherita Pizza", 10.0, 10),
    ("product-B", "Caesar Salad", 7.5, 5),
    ("product-C", "Tiramisu", 5.0, 0),
]


async def seed_catalog(database: Database) -> bool:
    """Insert the demo catalog and stock levels. Returns False when already seeded."""
    await database.init_models()
    async with database.session_factory() as session:
        if await session.get(Product, CATALOG[0][0]):
            logger.info("Catalog already seeded.")
            return False

        for product_id, name, price, stock in CATALOG:
            session.add(Product(id=product_id, name=name, price=price))
            session.add(InventoryItem(product_id=product_id, quantity=stock))
        await session.commit()
        logger.info(f"Seeded {len(CATALOG)} products with inventory.")
        return True


async def main(settings: Settings) -> None:
    database = Database(settings.database_url)
    try:
        await seed_catalog(database)
    finally:
        await database.dispose()


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    asyncio.run(main(settings))


if __name__ == "__main__":
    run()
