import asyncio
from unittest.mock import AsyncMock

import pytest

from order_saga.activities import OrderActivities
from order_saga.errors import CompensationFailedError, InsufficientStockError, RefundFailedError
from order_saga.execution import StepExecutor
from order_saga.models import OrderStatus
from order_saga.orchestrator import OrderLine, OrderSagaInput, OrderSagaOrchestrator
from order_saga.payment import ChargeResult
from order_saga.runner import SagaRunner

from conftest import FAST_POLICY

SAGA_INPUT = OrderSagaInput(
    user_id="customer-123",
    user_email="customer@example.com",
    items=(OrderLine("product-A", 1, 10.0),),
    total_amount=10.0,
    correlation_id="order-wf-1",
)


@pytest.fixture
def activities():
    activities = AsyncMock(spec=OrderActivities)
    activities.create_pending_order.return_value = "order-1"
    activities.charge_payment.return_value = ChargeResult("TX-1", "pay-1")
    return activities


@pytest.fixture
def runner(activities):
    orchestrator = OrderSagaOrchestrator(
        activities, StepExecutor(), forward_policy=FAST_POLICY, compensation_policy=FAST_POLICY
    )
    return SagaRunner(orchestrator)


@pytest.mark.asyncio
async def test_started_saga_runs_in_background(runner):
    task = runner.start("order-wf-1", SAGA_INPUT)
    assert runner.in_flight == 1

    result = await task

    assert result.final_status == OrderStatus.COMPLETED
    assert runner.in_flight == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_stuck_sagas_and_compensates(runner, activities):
    reached = asyncio.Event()

    async def hang(*args):
        reached.set()
        await asyncio.Event().wait()

    activities.notify_fulfillment.side_effect = hang
    task = runner.start("order-wf-1", SAGA_INPUT)
    await asyncio.wait_for(reached.wait(), timeout=1)

    await runner.shutdown(grace_period=0.01)

    assert task.result().final_status == OrderStatus.CANCELLED
    activities.restore_inventory.assert_awaited_once()
    activities.refund_payment.assert_awaited_once_with("pay-1")
    activities.finalize_order_status.assert_awaited_once_with("order-1", OrderStatus.CANCELLED)
    assert runner.in_flight == 0


@pytest.mark.asyncio
async def test_no_new_sagas_after_shutdown(runner):
    await runner.shutdown(grace_period=0)

    with pytest.raises(RuntimeError):
        runner.start("order-wf-2", SAGA_INPUT)


@pytest.mark.asyncio
async def test_compensation_failure_is_logged_critical(runner, activities, caplog):
    activities.validate_and_decrease_inventory.side_effect = InsufficientStockError("product-A", 1, 0)
    activities.refund_payment.side_effect = RefundFailedError("pay-1", "Refund rejected by provider")

    task = runner.start("order-wf-1", SAGA_INPUT)
    with pytest.raises(CompensationFailedError):
        await task
    await asyncio.sleep(0)

    critical = [record for record in caplog.records if record.levelname == "CRITICAL"]
    assert any("needs manual intervention" in record.getMessage() for record in critical)
