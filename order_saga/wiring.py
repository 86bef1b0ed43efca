import logging
from typing import Optional

from order_saga.activities import OrderActivities
from order_saga.config import Settings
from order_saga.database import Database
from order_saga.execution import StepExecutor
from order_saga.inventory import InventoryLedger
from order_saga.messaging import EventPublisher
from order_saga.notification import NotificationService
from order_saga.orchestrator import OrderSagaOrchestrator
from order_saga.payment import PaymentGateway, PaymentLedger, SimulatedPaymentGateway
from order_saga.runner import SagaRunner
from order_saga.service import OrderService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Builds every collaborator once per process and owns their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        publisher: Optional[EventPublisher] = None,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.settings = settings
        self.database = database or Database(settings.database_url)
        self.publisher = publisher or EventPublisher(settings.rabbitmq_url, settings.notification_exchange)
        self.gateway = gateway or SimulatedPaymentGateway(
            success_rate=settings.payment_success_rate,
            refund_success_rate=settings.refund_success_rate,
            latency=(settings.payment_latency_min, settings.payment_latency_max),
        )

        session_factory = self.database.session_factory
        self.inventory = InventoryLedger(session_factory)
        self.payments = PaymentLedger(session_factory, self.gateway)
        self.notifications = NotificationService(self.publisher)
        self.activities = OrderActivities(session_factory, self.payments, self.inventory, self.notifications)
        self.orchestrator = OrderSagaOrchestrator(
            self.activities,
            StepExecutor(),
            forward_policy=settings.forward_policy,
            compensation_policy=settings.compensation_policy,
        )
        self.runner = SagaRunner(self.orchestrator)
        self.order_service = OrderService(session_factory, self.runner)

    async def start(self) -> None:
        await self.database.init_models()
        await self.publisher.connect()
        logger.info("Order saga services started.")

    async def stop(self) -> None:
        await self.runner.shutdown(self.settings.shutdown_grace_period)
        await self.publisher.close()
        await self.database.dispose()
        logger.info("Order saga services stopped.")
