import asyncio
import logging
from typing import Dict, Set

from order_saga.errors import CompensationFailedError, OrderCreationFailedError
from order_saga.orchestrator import OrderSagaInput, OrderSagaOrchestrator, OrderSagaResult

logger = logging.getLogger(__name__)


class SagaRunner:
    """
    Runs sagas as background tasks so the HTTP request can return immediately.

    Each saga is an independent task. The runner only tracks them for logging
    and graceful shutdown; order state is always read back from the database.
    """

    def __init__(self, orchestrator: OrderSagaOrchestrator):
        self._orchestrator = orchestrator
        self._tasks: Set[asyncio.Task] = set()
        self._names: Dict[asyncio.Task, str] = {}
        self._accepting = True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self, correlation_id: str, saga_input: OrderSagaInput) -> asyncio.Task:
        if not self._accepting:
            raise RuntimeError("Saga runner is shutting down; no new orders are accepted.")
        task = asyncio.create_task(self._orchestrator.run(saga_input), name=correlation_id)
        self._tasks.add(task)
        self._names[task] = correlation_id
        task.add_done_callback(self._on_done)
        logger.info(f"Started order saga {correlation_id}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        correlation_id = self._names.pop(task, task.get_name())

        if task.cancelled():
            logger.warning(f"Saga {correlation_id} was cancelled before it could compensate.")
            return
        exc = task.exception()
        if exc is None:
            result: OrderSagaResult = task.result()
            logger.info(f"Saga {correlation_id} finished: order {result.order_id} is {result.final_status.value}")
        elif isinstance(exc, CompensationFailedError):
            logger.critical(
                f"Saga {correlation_id} needs manual intervention for order {exc.order_id}: {exc}"
            )
        elif isinstance(exc, OrderCreationFailedError):
            logger.error(f"Saga {correlation_id} could not create its order: {exc.cause}")
        else:
            logger.error(f"Saga {correlation_id} crashed: {exc!r}")

    async def shutdown(self, grace_period: float = 30.0) -> None:
        """
        Stop accepting sagas, wait up to ``grace_period`` seconds for the running
        ones, then cancel the rest. A cancelled saga compensates and ends as
        CANCELLED, so this waits for those compensations too.
        """
        self._accepting = False
        if not self._tasks:
            return

        logger.info(f"Waiting up to {grace_period}s for {len(self._tasks)} in-flight saga(s)")
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace_period)
        if not pending:
            return

        logger.warning(f"Cancelling {len(pending)} saga(s) still running after the grace period")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
