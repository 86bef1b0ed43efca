import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from order_saga.errors import (
    GatewayError,
    PaymentDeclinedError,
    PaymentLedgerError,
    PaymentRecordNotFoundError,
    RefundFailedError,
)
from order_saga.models import PaymentStatus, PaymentTransaction
from order_saga.state_machine import ensure_payment_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    transaction_id: str
    payment_record_id: str


class PaymentGateway:
    """Adapter around an external payment provider."""

    async def charge(self, order_id: str, amount: float, idempotency_key: str) -> str:
        """
        Charge ``amount`` and return the provider's transaction id.

        A repeated call with the same ``idempotency_key`` must not move money
        again; it returns the transaction id of the first successful call.
        """
        raise NotImplementedError

    async def refund(self, external_transaction_id: str, amount: float) -> None:
        raise NotImplementedError


class SimulatedPaymentGateway(PaymentGateway):
    """Unreliable stand-in for a real gateway, with configurable success rates and latency."""

    def __init__(
        self,
        success_rate: float = 0.85,
        refund_success_rate: float = 0.95,
        latency: Tuple[float, float] = (0.5, 2.0),
        rng: Optional[random.Random] = None,
    ):
        self.success_rate = success_rate
        self.refund_success_rate = refund_success_rate
        self.latency = latency
        self._rng = rng or random.Random()
        self._charged: Dict[str, str] = {}

    async def _delay(self):
        low, high = self.latency
        if high > 0:
            await asyncio.sleep(self._rng.uniform(low, high))

    async def charge(self, order_id: str, amount: float, idempotency_key: str) -> str:
        if idempotency_key in self._charged:
            return self._charged[idempotency_key]
        await self._delay()
        if self._rng.random() >= self.success_rate:
            logger.warning(f"Mock gateway declined charge for order {order_id}")
            raise PaymentDeclinedError(order_id, amount, "Mock payment gateway declined the transaction")
        transaction_id = f"MOCK_TX_{uuid4().hex.upper()}"
        self._charged[idempotency_key] = transaction_id
        return transaction_id

    async def refund(self, external_transaction_id: str, amount: float) -> None:
        await self._delay()
        if self._rng.random() >= self.refund_success_rate:
            raise GatewayError(f"Mock payment gateway failed to refund {external_transaction_id}")


class PaymentLedger:
    def __init__(self, session_factory: async_sessionmaker, gateway: PaymentGateway):
        self._session_factory = session_factory
        self._gateway = gateway

    async def charge(self, order_id: str, amount: float) -> ChargeResult:
        """
        Charge an order and record the attempt.

        A PENDING transaction row is committed before the gateway is called and
        moved to SUCCEEDED or FAILED afterwards. The row id is the gateway
        idempotency key. A duplicate invocation returns an existing SUCCEEDED
        transaction, or resumes an existing PENDING one with the same key, so
        a retry after the gateway call never charges twice.

        Raises:
            PaymentDeclinedError: the gateway refused or failed the charge.
            PaymentLedgerError: the transaction row could not be written.
        """
        logger.info(f"Initiating payment charge for Order ID: {order_id}, Amount: {amount}")

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentTransaction)
                    .where(
                        PaymentTransaction.order_id == order_id,
                        PaymentTransaction.status.in_((PaymentStatus.SUCCEEDED, PaymentStatus.PENDING)),
                    )
                    .order_by(PaymentTransaction.created_at)
                )
                open_records = result.scalars().all()
                for existing in open_records:
                    if existing.status is PaymentStatus.SUCCEEDED:
                        logger.info(f"Payment for order {order_id} already processed. Skipping.")
                        return ChargeResult(existing.external_transaction_id, existing.id)

                if open_records:
                    record = open_records[0]
                    logger.warning(f"Resuming PENDING PaymentTransaction {record.id} for Order ID: {order_id}")
                else:
                    record = PaymentTransaction(
                        id=str(uuid4()),
                        order_id=order_id,
                        amount=amount,
                        status=PaymentStatus.PENDING,
                    )
                    session.add(record)
                    await session.commit()
                    logger.info(f"Created PENDING PaymentTransaction record ID: {record.id} for Order ID: {order_id}")
        except SQLAlchemyError as exc:
            logger.error(f"Failed to create PENDING PaymentTransaction for Order ID: {order_id}: {exc}")
            raise PaymentLedgerError(
                "Database error occurred while initiating payment transaction."
            ) from exc

        try:
            external_id = await self._gateway.charge(order_id, record.amount, idempotency_key=record.id)
        except Exception as exc:
            logger.warning(f"Payment FAILED for Record ID: {record.id}: {exc}")
            try:
                await self._set_status(record.id, PaymentStatus.FAILED)
            except PaymentLedgerError:
                # The decline is still the error the saga has to see.
                logger.error(f"Could not mark PaymentTransaction {record.id} as FAILED")
            if isinstance(exc, PaymentDeclinedError):
                raise
            raise PaymentDeclinedError(order_id, amount, str(exc)) from exc

        await self._set_status(record.id, PaymentStatus.SUCCEEDED, external_transaction_id=external_id)
        logger.info(f"Payment SUCCEEDED for Record ID: {record.id}. External TxID: {external_id}")
        return ChargeResult(external_id, record.id)

    async def refund(self, payment_record_id: str) -> None:
        """
        Refund a SUCCEEDED transaction.

        PENDING, FAILED and REFUNDED records are left alone, which makes a
        repeated refund harmless. A record already in REFUND_INITIATED or
        REFUND_FAILED means an earlier refund attempt did not finish: the money
        may still be with the provider, so RefundFailedError is raised and an
        operator has to settle it. A gateway failure moves the record to
        REFUND_FAILED and raises the same error.
        """
        logger.warning(f"Initiating payment refund for Payment Record ID: {payment_record_id}")

        transaction = await self.get_transaction(payment_record_id)
        if transaction is None:
            logger.error(f"Refund failed: Payment Record ID {payment_record_id} not found.")
            raise PaymentRecordNotFoundError(payment_record_id)

        if transaction.status in (PaymentStatus.REFUND_FAILED, PaymentStatus.REFUND_INITIATED):
            logger.error(
                f"Payment Record ID {payment_record_id} is {transaction.status.value}. "
                "Manual intervention required."
            )
            raise RefundFailedError(
                payment_record_id, f"earlier refund attempt left the record in {transaction.status.value}"
            )

        if transaction.status is not PaymentStatus.SUCCEEDED:
            logger.warning(
                f"Refund skipped: Payment Record ID {payment_record_id} is not in SUCCEEDED state "
                f"(current: {transaction.status.value}). No action taken."
            )
            return

        await self._set_status(payment_record_id, PaymentStatus.REFUND_INITIATED)

        try:
            await self._gateway.refund(transaction.external_transaction_id, transaction.amount)
        except Exception as exc:
            logger.error(f"REFUND FAILED for Payment Record ID {payment_record_id}: {exc}")
            await self._set_status(payment_record_id, PaymentStatus.REFUND_FAILED)
            raise RefundFailedError(payment_record_id, str(exc)) from exc

        await self._set_status(payment_record_id, PaymentStatus.REFUNDED)
        logger.warning(f"REFUND successful for Payment Record ID {payment_record_id}")

    async def get_transaction(self, payment_record_id: str) -> Optional[PaymentTransaction]:
        try:
            async with self._session_factory() as session:
                return await session.get(PaymentTransaction, payment_record_id)
        except SQLAlchemyError as exc:
            raise PaymentLedgerError(
                f"Database error while fetching PaymentTransaction ID: {payment_record_id}"
            ) from exc

    async def _set_status(self, payment_record_id: str, status: PaymentStatus, **values) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(PaymentTransaction, payment_record_id, with_for_update=True)
                    if record is None:
                        raise PaymentRecordNotFoundError(payment_record_id)
                    ensure_payment_transition(record.status, status)
                    record.status = status
                    for key, value in values.items():
                        setattr(record, key, value)
        except SQLAlchemyError as exc:
            logger.error(f"Failed to update PaymentTransaction {payment_record_id} to {status.value}: {exc}")
            raise PaymentLedgerError(
                f"Database error occurred while updating payment transaction to {status.value}."
            ) from exc
        logger.debug(f"PaymentTransaction {payment_record_id} status updated to {status.value}")
