"""
Error taxonomy for the order saga.

Every failure the saga reasons about is an ``OrderSagaError`` carrying an
``ErrorKind`` tag and a ``retryable`` flag. Classification and retry decisions
dispatch on these attributes, never on exception names.
"""

import enum
from typing import Optional, Sequence


class ErrorKind(enum.Enum):
    VALIDATION = "VALIDATION"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    CANCELLED = "CANCELLED"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    COMPENSATION = "COMPENSATION"
    STATE = "STATE"


class OrderSagaError(Exception):
    """Base error for everything raised by the order saga."""

    kind = ErrorKind.INFRASTRUCTURE
    retryable = True


# --- Validation (raised before a saga starts) ---

class OrderValidationError(OrderSagaError):
    kind = ErrorKind.VALIDATION
    retryable = False


class ProductNotFoundError(OrderValidationError):
    def __init__(self, product_ids: Sequence[str]):
        self.product_ids = list(product_ids)
        super().__init__(f"Products not found: {', '.join(self.product_ids)}")


class InvalidOrderError(OrderValidationError):
    pass


# --- Business-rule failures ---

class PaymentDeclinedError(OrderSagaError):
    kind = ErrorKind.PAYMENT_DECLINED
    retryable = False

    def __init__(self, order_id: str, amount: float, reason: str = "Payment declined"):
        self.order_id = order_id
        self.amount = amount
        self.reason = reason
        super().__init__(f"Payment failed for order {order_id}: {reason}")


class InsufficientStockError(OrderSagaError):
    kind = ErrorKind.INSUFFICIENT_STOCK
    retryable = False

    def __init__(self, product_id: str, requested: int, available: Optional[int]):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        if available is None:
            message = f"Product ID: {product_id} not found in inventory."
        else:
            message = (
                f"Insufficient stock for Product ID: {product_id}. "
                f"Required: {requested}, Available: {available}."
            )
        super().__init__(message)


# --- Infrastructure failures (retryable) ---

class StepTimeoutError(OrderSagaError):
    def __init__(self, step: str, timeout: float):
        self.step = step
        self.timeout = timeout
        super().__init__(f"Step '{step}' timed out after {timeout}s")


class InventoryUnavailableError(OrderSagaError):
    pass


class PaymentLedgerError(OrderSagaError):
    pass


class GatewayError(OrderSagaError):
    """Raised by a payment gateway adapter when the remote call fails."""


class PublisherNotConnectedError(OrderSagaError):
    def __init__(self):
        super().__init__("RabbitMQ channel not available. Call connect() first.")


# --- State / data errors ---

class InvalidTransitionError(OrderSagaError):
    kind = ErrorKind.STATE
    retryable = False

    def __init__(self, entity: str, current: enum.Enum, target: enum.Enum):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition {current.value} -> {target.value}")


class OrderNotFoundError(OrderSagaError):
    kind = ErrorKind.STATE
    retryable = False

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found.")


class PaymentRecordNotFoundError(OrderSagaError):
    kind = ErrorKind.STATE
    retryable = False

    def __init__(self, payment_record_id: str):
        self.payment_record_id = payment_record_id
        super().__init__(f"Payment transaction record {payment_record_id} not found.")


# --- Compensation failures ---

class RefundFailedError(OrderSagaError):
    """A refund did not complete. The record is REFUND_INITIATED or REFUND_FAILED and needs an operator."""

    kind = ErrorKind.COMPENSATION
    retryable = False

    def __init__(self, payment_record_id: str, reason: str):
        self.payment_record_id = payment_record_id
        self.reason = reason
        super().__init__(f"Failed to refund payment record {payment_record_id}: {reason}")


class OrderCreationFailedError(OrderSagaError):
    """The first step failed; no order exists, so there is nothing to compensate."""

    kind = ErrorKind.STATE
    retryable = False

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Could not create pending order: {cause}")


class CompensationFailedError(OrderSagaError):
    """
    One or more compensation steps failed after a forward failure.

    Real-world state (money or stock) may now diverge from the durable record,
    so this is raised out of the saga run instead of returning a result.
    """

    kind = ErrorKind.COMPENSATION
    retryable = False

    def __init__(self, order_id: str, final_status, original: BaseException, failures):
        self.order_id = order_id
        self.final_status = final_status
        self.original = original
        self.failures = list(failures)
        steps = ", ".join(f"{step}: {exc}" for step, exc in self.failures)
        super().__init__(
            f"Compensation failed for order {order_id} ({steps}). Original error: {original}"
        )
