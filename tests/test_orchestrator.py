import asyncio
from unittest.mock import AsyncMock

import pytest

from order_saga.activities import OrderActivities
from order_saga.errors import (
    CompensationFailedError,
    InsufficientStockError,
    InvalidOrderError,
    OrderCreationFailedError,
    PaymentDeclinedError,
    PublisherNotConnectedError,
    RefundFailedError,
    StepTimeoutError,
)
from order_saga.execution import StepExecutor
from order_saga.inventory import StockItem
from order_saga.models import OrderStatus
from order_saga.orchestrator import OrderLine, OrderSagaInput, OrderSagaOrchestrator
from order_saga.payment import ChargeResult

from conftest import FAST_POLICY

SAGA_INPUT = OrderSagaInput(
    user_id="customer-123",
    user_email="customer@example.com",
    items=(OrderLine("product-A", 2, 10.0, "Margherita Pizza"),),
    total_amount=20.0,
    correlation_id="order-wf-1",
)


def make_activities():
    activities = AsyncMock(spec=OrderActivities)
    activities.create_pending_order.return_value = "order-1"
    activities.charge_payment.return_value = ChargeResult("TX-1", "pay-1")
    return activities


def make_orchestrator(activities):
    return OrderSagaOrchestrator(
        activities, StepExecutor(), forward_policy=FAST_POLICY, compensation_policy=FAST_POLICY
    )


def statuses(activities):
    return [call.args[1] for call in activities.update_order_status.await_args_list]


def step_names(activities):
    return [call[0] for call in activities.mock_calls]


@pytest.mark.asyncio
async def test_successful_order_visits_happy_path():
    activities = make_activities()

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.order_id == "order-1"
    assert result.final_status == OrderStatus.COMPLETED
    assert statuses(activities) == [
        OrderStatus.PROCESSING,
        OrderStatus.PAID,
        OrderStatus.AWAITING_FULFILLMENT,
        OrderStatus.COMPLETED,
    ]
    activities.charge_payment.assert_awaited_once_with("order-1", 20.0)
    activities.validate_and_decrease_inventory.assert_awaited_once_with(
        "order-1", [StockItem("product-A", 2)]
    )
    activities.send_confirmation.assert_awaited_once_with("order-1", "customer@example.com")
    activities.refund_payment.assert_not_awaited()
    activities.restore_inventory.assert_not_awaited()
    activities.finalize_order_status.assert_not_awaited()
    activities.send_failure_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_declined_compensates_without_refund_or_restore():
    activities = make_activities()
    activities.charge_payment.side_effect = PaymentDeclinedError("order-1", 20.0, "Card declined")

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.final_status == OrderStatus.PAYMENT_FAILED
    activities.charge_payment.assert_awaited_once()
    activities.validate_and_decrease_inventory.assert_not_awaited()
    activities.refund_payment.assert_not_awaited()
    activities.restore_inventory.assert_not_awaited()
    activities.finalize_order_status.assert_awaited_once_with("order-1", OrderStatus.PAYMENT_FAILED)
    activities.send_failure_notification.assert_awaited_once_with(
        "order-1", "customer@example.com", "Payment was declined or failed."
    )


@pytest.mark.asyncio
async def test_stock_failure_refunds_once_and_does_not_restore():
    activities = make_activities()
    activities.validate_and_decrease_inventory.side_effect = InsufficientStockError("product-A", 2, 1)

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.order_id == "order-1"
    assert result.final_status == OrderStatus.INVENTORY_CHECK_FAILED
    activities.validate_and_decrease_inventory.assert_awaited_once()
    activities.refund_payment.assert_awaited_once_with("pay-1")
    activities.restore_inventory.assert_not_awaited()
    activities.finalize_order_status.assert_awaited_once_with("order-1", OrderStatus.INVENTORY_CHECK_FAILED)
    reason = activities.send_failure_notification.await_args.args[2]
    assert "out of stock" in reason


@pytest.mark.asyncio
async def test_late_failure_undoes_effects_in_reverse_order():
    activities = make_activities()
    activities.notify_fulfillment.side_effect = PublisherNotConnectedError()

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.final_status == OrderStatus.CANCELLED
    # Infrastructure failures are retried before compensating.
    assert activities.notify_fulfillment.await_count == FAST_POLICY.maximum_attempts
    compensation = [
        name
        for name in step_names(activities)
        if name in {"restore_inventory", "refund_payment", "finalize_order_status", "send_failure_notification"}
    ]
    assert compensation == [
        "restore_inventory",
        "refund_payment",
        "finalize_order_status",
        "send_failure_notification",
    ]
    activities.restore_inventory.assert_awaited_once_with("order-1", [StockItem("product-A", 2)])
    reason = activities.send_failure_notification.await_args.args[2]
    assert reason.startswith("Step execution failed:")


@pytest.mark.asyncio
async def test_completed_status_committed_without_ack_is_reported(caplog):
    activities = make_activities()

    async def lose_completed_ack(order_id, status):
        if status is OrderStatus.COMPLETED:
            raise StepTimeoutError("update_order_status", FAST_POLICY.attempt_timeout)

    activities.update_order_status.side_effect = lose_completed_ack
    # The row already holds COMPLETED, so finalize leaves it there.
    activities.finalize_order_status.return_value = OrderStatus.COMPLETED

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.final_status == OrderStatus.COMPLETED
    activities.finalize_order_status.assert_awaited_once_with("order-1", OrderStatus.CANCELLED)
    activities.refund_payment.assert_awaited_once_with("pay-1")
    activities.restore_inventory.assert_awaited_once()
    assert any(
        record.levelname == "ERROR" and "persisted as COMPLETED" in record.getMessage()
        for record in caplog.records
    )


@pytest.mark.asyncio
async def test_compensation_failure_is_raised_after_every_step_ran():
    activities = make_activities()
    activities.validate_and_decrease_inventory.side_effect = InsufficientStockError("product-A", 2, 1)
    activities.refund_payment.side_effect = RefundFailedError("pay-1", "Refund rejected by provider")

    with pytest.raises(CompensationFailedError) as exc_info:
        await make_orchestrator(activities).run(SAGA_INPUT)

    error = exc_info.value
    assert error.order_id == "order-1"
    assert error.final_status == OrderStatus.INVENTORY_CHECK_FAILED
    assert isinstance(error.original, InsufficientStockError)
    assert [step for step, _ in error.failures] == ["refund_payment"]
    # A refund rejection is final, so it is not retried.
    activities.refund_payment.assert_awaited_once()
    activities.finalize_order_status.assert_awaited_once()
    activities.send_failure_notification.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancellation_is_compensated_and_ends_cancelled():
    activities = make_activities()
    activities.send_confirmation.side_effect = asyncio.CancelledError()

    result = await make_orchestrator(activities).run(SAGA_INPUT)

    assert result.final_status == OrderStatus.CANCELLED
    activities.send_confirmation.assert_awaited_once()
    activities.refund_payment.assert_awaited_once_with("pay-1")
    activities.restore_inventory.assert_awaited_once()
    activities.finalize_order_status.assert_awaited_once_with("order-1", OrderStatus.CANCELLED)
    activities.send_failure_notification.assert_awaited_once_with(
        "order-1", "customer@example.com", "Order processing was cancelled."
    )


@pytest.mark.asyncio
async def test_order_creation_failure_has_no_side_effects():
    activities = make_activities()
    activities.create_pending_order.side_effect = InvalidOrderError("Order must contain at least one item.")

    with pytest.raises(OrderCreationFailedError) as exc_info:
        await make_orchestrator(activities).run(SAGA_INPUT)

    assert isinstance(exc_info.value.cause, InvalidOrderError)
    assert step_names(activities) == ["create_pending_order"]


@pytest.mark.asyncio
async def test_identical_step_results_give_identical_step_calls():
    runs = []
    for _ in range(2):
        activities = make_activities()
        activities.validate_and_decrease_inventory.side_effect = InsufficientStockError("product-A", 2, 1)
        await make_orchestrator(activities).run(SAGA_INPUT)
        runs.append(activities.mock_calls)

    assert runs[0] == runs[1]
