import asyncio
from dataclasses import dataclass

from order_saga.errors import ErrorKind, InsufficientStockError, OrderSagaError
from order_saga.models import OrderStatus


@dataclass(frozen=True)
class FailureClassification:
    kind: ErrorKind
    retryable: bool
    status: OrderStatus
    reason: str


def classify(exc: BaseException) -> FailureClassification:
    """Map a step failure to its terminal order status and a customer-facing reason."""
    if isinstance(exc, asyncio.CancelledError):
        return FailureClassification(
            ErrorKind.CANCELLED, False, OrderStatus.CANCELLED, "Order processing was cancelled."
        )

    kind = exc.kind if isinstance(exc, OrderSagaError) else ErrorKind.INFRASTRUCTURE

    if kind is ErrorKind.PAYMENT_DECLINED:
        return FailureClassification(
            kind, False, OrderStatus.PAYMENT_FAILED, "Payment was declined or failed."
        )
    if kind is ErrorKind.INSUFFICIENT_STOCK:
        reason = "One or more items are out of stock."
        if isinstance(exc, InsufficientStockError):
            reason = f"One or more items are out of stock (product {exc.product_id})."
        return FailureClassification(kind, False, OrderStatus.INVENTORY_CHECK_FAILED, reason)

    retryable = exc.retryable if isinstance(exc, OrderSagaError) else True
    return FailureClassification(
        kind, retryable, OrderStatus.CANCELLED, f"Step execution failed: {str(exc) or type(exc).__name__}"
    )
