"""
Step execution with retry policies.

The orchestrator never calls an activity directly. It hands the activity to a
``StepExecutor`` together with a ``RetryPolicy``; the default executor retries
with bounded exponential backoff (tenacity) and a per-attempt timeout. A
durable-execution engine can supply its own executor that returns recorded
results on replay.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_saga.errors import OrderSagaError, StepTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval: float
    maximum_attempts: int
    attempt_timeout: float
    backoff_coefficient: float = 2.0
    # Defaults to 100x the initial interval.
    maximum_interval: Optional[float] = None
    non_retryable: Tuple[Type[BaseException], ...] = ()

    @property
    def effective_maximum_interval(self) -> float:
        if self.maximum_interval is not None:
            return self.maximum_interval
        return self.initial_interval * 100

    def is_retryable(self, exc: BaseException) -> bool:
        # CancelledError is a BaseException, not an Exception: never retried.
        if not isinstance(exc, Exception):
            return False
        if self.non_retryable and isinstance(exc, self.non_retryable):
            return False
        if isinstance(exc, OrderSagaError):
            return exc.retryable
        return True


class StepExecutor:
    """Runs a single saga step under a retry policy."""

    async def execute(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        policy: RetryPolicy,
    ) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.maximum_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_interval,
                exp_base=policy.backoff_coefficient,
                max=policy.effective_maximum_interval,
            ),
            retry=retry_if_exception(policy.is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(name, fn, args, policy.attempt_timeout)
        return result

    async def _attempt(self, name, fn, args, timeout):
        try:
            return await asyncio.wait_for(fn(*args), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error(f"Step '{name}' exceeded its {timeout}s attempt timeout")
            raise StepTimeoutError(name, timeout) from exc
