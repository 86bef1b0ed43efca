"""
Order saga orchestrator.

Runs the forward steps of an order in a fixed sequence and, when one of them
fails, undoes the irreversible effects that already happened (refund, stock
restore) in reverse order, finalizes the order status and tells the customer.

The run is a plain coroutine that only awaits ``StepExecutor.execute`` calls and
reads nothing non-deterministic itself, so a durable-execution engine can replay
it from recorded step results and reach the same decisions.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from order_saga.activities import FulfillmentItem, OrderActivities
from order_saga.classifier import FailureClassification, classify
from order_saga.config import COMPENSATION_POLICY, FORWARD_POLICY
from order_saga.errors import CompensationFailedError, OrderCreationFailedError
from order_saga.execution import RetryPolicy, StepExecutor
from order_saga.inventory import StockItem
from order_saga.models import OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity: int
    price_at_order: float
    name: Optional[str] = None


@dataclass(frozen=True)
class OrderSagaInput:
    user_id: str
    user_email: str
    items: Tuple[OrderLine, ...]
    total_amount: float
    correlation_id: Optional[str] = None

    @property
    def stock_items(self) -> List[StockItem]:
        return [StockItem(line.product_id, line.quantity) for line in self.items]

    @property
    def fulfillment_items(self) -> List[FulfillmentItem]:
        return [FulfillmentItem(line.product_id, line.quantity, line.name) for line in self.items]


@dataclass(frozen=True)
class OrderSagaResult:
    order_id: str
    final_status: OrderStatus


@dataclass(frozen=True)
class Compensation:
    name: str
    fn: Callable
    args: Tuple[Any, ...]


@dataclass
class SagaProgress:
    order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_record_id: Optional[str] = None
    inventory_decremented: bool = False
    # Undo actions for completed irreversible effects, in the order they happened.
    compensations: List[Compensation] = field(default_factory=list)


class OrderSagaOrchestrator:
    def __init__(
        self,
        activities: OrderActivities,
        executor: Optional[StepExecutor] = None,
        forward_policy: RetryPolicy = FORWARD_POLICY,
        compensation_policy: RetryPolicy = COMPENSATION_POLICY,
    ):
        self.activities = activities
        self.executor = executor or StepExecutor()
        self.forward_policy = forward_policy
        self.compensation_policy = compensation_policy

    async def run(self, saga_input: OrderSagaInput) -> OrderSagaResult:
        """
        Process one order end to end.

        Returns the order id and its terminal status, for failed orders too once
        compensation has finished.

        Raises:
            OrderCreationFailedError: the pending order could not be created;
                no side effects happened.
            CompensationFailedError: a compensation step failed after every
                compensation was attempted; needs manual intervention.
        """
        progress = SagaProgress()
        logger.info("Saga: creating pending order record...")
        try:
            progress.order_id = await self._forward(
                "create_pending_order",
                self.activities.create_pending_order,
                saga_input.user_id,
                saga_input.user_email,
                saga_input.total_amount,
                list(saga_input.items),
                saga_input.correlation_id,
            )
        except Exception as exc:
            logger.error(f"Saga failed before an order ID could be established: {exc}")
            raise OrderCreationFailedError(exc) from exc
        logger.info(f"Saga: pending order created with ID: {progress.order_id}")

        try:
            await self._run_forward(saga_input, progress)
        except (asyncio.CancelledError, Exception) as exc:
            failure = exc
        else:
            logger.info(f"Saga for order {progress.order_id} completed successfully.")
            return OrderSagaResult(progress.order_id, OrderStatus.COMPLETED)

        classification = classify(failure)
        logger.error(
            f"Saga failed for order {progress.order_id} at status {progress.status.value}: "
            f"{classification.reason}"
        )
        final_status = await self._compensate(saga_input, progress, classification, failure)
        return OrderSagaResult(progress.order_id, final_status)

    async def _run_forward(self, saga_input: OrderSagaInput, progress: SagaProgress) -> None:
        order_id = progress.order_id
        await self._mark(progress, OrderStatus.PROCESSING)

        logger.info(f"Saga: attempting payment for order {order_id}")
        charge = await self._forward(
            "charge_payment", self.activities.charge_payment, order_id, saga_input.total_amount
        )
        # Only a returned charge yields a record id, so a refund is never
        # attempted for a charge that failed.
        progress.payment_record_id = charge.payment_record_id
        progress.compensations.append(
            Compensation("refund_payment", self.activities.refund_payment, (charge.payment_record_id,))
        )
        await self._mark(progress, OrderStatus.PAID)

        logger.info(f"Saga: validating and decreasing inventory for order {order_id}")
        stock_items = saga_input.stock_items
        await self._forward(
            "validate_and_decrease_inventory",
            self.activities.validate_and_decrease_inventory,
            order_id,
            stock_items,
        )
        progress.inventory_decremented = True
        progress.compensations.append(
            Compensation("restore_inventory", self.activities.restore_inventory, (order_id, stock_items))
        )
        await self._mark(progress, OrderStatus.AWAITING_FULFILLMENT)

        logger.info(f"Saga: notifying fulfillment for order {order_id}")
        await self._forward(
            "notify_fulfillment", self.activities.notify_fulfillment, order_id, saga_input.fulfillment_items
        )
        await self._forward(
            "send_confirmation", self.activities.send_confirmation, order_id, saga_input.user_email
        )
        await self._mark(progress, OrderStatus.COMPLETED)

    async def _compensate(
        self,
        saga_input: OrderSagaInput,
        progress: SagaProgress,
        classification: FailureClassification,
        original: BaseException,
    ) -> OrderStatus:
        """Undo completed effects and return the status the order row ended up with."""
        order_id = progress.order_id
        logger.warning(
            f"Saga compensation starting for order {order_id}. Final status: {classification.status.value}"
        )
        failures = []

        for compensation in reversed(progress.compensations):
            await self._compensation_step(failures, compensation.name, compensation.fn, *compensation.args)

        persisted = await self._compensation_step(
            failures,
            "finalize_order_status",
            self.activities.finalize_order_status,
            order_id,
            classification.status,
        )
        await self._compensation_step(
            failures,
            "send_failure_notification",
            self.activities.send_failure_notification,
            order_id,
            saga_input.user_email,
            classification.reason,
        )

        if failures:
            logger.critical(
                f"CRITICAL: compensation FAILED for order {order_id}! Manual intervention required. "
                f"Failed steps: {[step for step, _ in failures]}"
            )
            raise CompensationFailedError(order_id, classification.status, original, failures)
        logger.warning(f"Saga compensation finished for order {order_id}.")

        if isinstance(persisted, OrderStatus) and persisted is not classification.status:
            # A lost acknowledgement can leave an earlier terminal status committed.
            logger.error(
                f"Order {order_id} is persisted as {persisted.value}, not {classification.status.value}; "
                "its effects were compensated. Manual review required."
            )
            return persisted
        return classification.status

    async def _compensation_step(self, failures, name, fn, *args):
        logger.warning(f"Compensation: running {name}")
        try:
            return await self.executor.execute(name, fn, *args, policy=self.compensation_policy)
        except Exception as exc:
            logger.error(f"Compensation step {name} failed: {exc}")
            failures.append((name, exc))

    async def _forward(self, name, fn, *args):
        return await self.executor.execute(name, fn, *args, policy=self.forward_policy)

    async def _mark(self, progress: SagaProgress, status: OrderStatus) -> None:
        await self._forward("update_order_status", self.activities.update_order_status, progress.order_id, status)
        progress.status = status
