"""
Order and payment-transaction lifecycles.

Order status only moves along ``ORDER_TRANSITIONS``. The forward path uses the
strict rules (``ensure_transition``); compensation uses ``resolve_final_status``,
which lets any non-terminal order fall to a failure status but never rewrites a
terminal one.
"""

import logging
from typing import Optional

from order_saga.errors import InvalidTransitionError
from order_saga.models import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAID: {
        OrderStatus.AWAITING_FULFILLMENT,
        OrderStatus.INVENTORY_CHECK_FAILED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.AWAITING_FULFILLMENT: {
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.COMPLETED: set(),
    OrderStatus.PAYMENT_FAILED: set(),
    OrderStatus.INVENTORY_CHECK_FAILED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ORDER_TRANSITIONS.items() if not targets)

# The statuses a failed saga may be finalized to.
FAILURE_STATUSES = frozenset({
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.INVENTORY_CHECK_FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

HAPPY_PATH = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.PAID,
    OrderStatus.AWAITING_FULFILLMENT,
    OrderStatus.COMPLETED,
)

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.REFUND_INITIATED},
    PaymentStatus.REFUND_INITIATED: {PaymentStatus.REFUNDED, PaymentStatus.REFUND_FAILED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.REFUND_FAILED: set(),
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ORDER_TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError("order", current, target)


def resolve_final_status(current: OrderStatus, target: OrderStatus) -> Optional[OrderStatus]:
    """
    Status to persist when finalizing a failed saga, or None to leave the order alone.

    Raises InvalidTransitionError if ``target`` is not a failure status.
    """
    if target not in FAILURE_STATUSES:
        raise InvalidTransitionError("order", current, target)
    if current == target:
        return None
    if is_terminal(current):
        logger.warning(
            f"Order already terminal at {current.value}; not overwriting with {target.value}"
        )
        return None
    return target


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError("payment transaction", current, target)
