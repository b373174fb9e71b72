"""Payment dispatcher: scheduling, idempotent execution, reconciliation."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import TYPE_CHECKING

from billflow.audit import emit
from billflow.errors import (
    IdempotencyConflict,
    NotFoundError,
    ProcessorError,
    ProcessorTimeout,
    StateConflict,
    ValidationError,
)
from billflow.models import (
    BillStatus,
    Payment,
    PaymentMethodStatus,
    PaymentStatus,
    RiskLevel,
    utcnow,
)
from billflow.processors.base import PaymentRequest, idempotency_token

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import date, datetime
    from uuid import UUID

    from billflow.audit import AuditSink
    from billflow.config import EnginePolicy
    from billflow.models import Bill, PaymentMethod, PaymentMethodType, Vendor
    from billflow.processors.base import PaymentProcessor, ProcessorResult
    from billflow.repository import BillStore

logger = logging.getLogger(__name__)


def idempotency_key(bill_id: UUID, payment_method_id: UUID) -> str:
    return f"{bill_id}:{payment_method_id}"


class PaymentDispatcher:
    """Routes payments to the processor registered for their method type.

    Every dispatch is keyed by (bill, payment method). The key is held
    by at most one non-failed payment, and a payment is claimed as
    ``processing`` under the key's lock before the processor is called,
    so concurrent executions collapse into one processor invocation.
    """

    def __init__(
        self,
        store: BillStore,
        processors: Mapping[PaymentMethodType, PaymentProcessor],
        audit: AuditSink,
        policy: EnginePolicy,
        clock: Callable[[], datetime] = utcnow,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.store = store
        self.processors = dict(processors)
        self.audit = audit
        self.policy = policy
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=8, thread_name_prefix="billflow-processor"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def schedule(
        self,
        bill: Bill,
        vendor: Vendor,
        payment_method_id: UUID,
        scheduled_date: date,
        actor_id: str | None = None,
    ) -> Payment:
        """Create a pending payment for an approved bill.

        Returns the existing payment if one is already active for the
        same bill and payment method.
        """
        if bill.effective_status is not BillStatus.APPROVED:
            msg = f"bill {bill.id} is {bill.status}; only approved bills can be paid"
            raise StateConflict(msg)
        if bill.vendor_id != vendor.id:
            msg = f"vendor {vendor.id} is not the payee of bill {bill.id}"
            raise ValidationError(msg)

        method = self._method_for(vendor, payment_method_id)
        key = idempotency_key(bill.id, method.id)

        with self.store.lock(f"payment:{key}"):
            existing = self.store.find_active_payment(key)
            if existing is not None:
                logger.info("Payment %s already active for %s", existing.id, key)
                return existing

            outstanding = self.outstanding_balance(bill)
            if outstanding <= 0:
                msg = f"bill {bill.id} has no outstanding balance"
                raise StateConflict(msg)

            payment = Payment(
                owner_id=bill.owner_id,
                bill_id=bill.id,
                vendor_id=vendor.id,
                amount=outstanding,
                currency=bill.currency,
                payment_method_id=method.id,
                payment_method=method.type,
                idempotency_key=key,
                scheduled_date=scheduled_date,
                created_by=actor_id,
            )
            try:
                self.store.add_payment(payment)
            except IdempotencyConflict:
                existing = self.store.find_active_payment(key)
                if existing is None:
                    raise
                return existing

        logger.info(
            "Scheduled payment %s of %s %s for bill %s",
            payment.id,
            payment.amount,
            payment.currency,
            bill.id,
        )
        emit(
            self.audit,
            "payment_scheduled",
            entity_type="payment",
            entity_id=payment.id,
            owner_id=payment.owner_id,
            actor_id=actor_id,
            description=f"Payment scheduled: {payment.amount} {payment.currency}",
            bill_id=str(bill.id),
            payment_method=method.type.value,
            scheduled_date=scheduled_date.isoformat(),
        )
        return payment

    def execute(
        self,
        payment_id: UUID,
        actor_id: str | None = None,
        timeout: float | None = None,
    ) -> Payment:
        """Send a pending payment to its processor.

        A payment already processing or completed is returned as is,
        without calling the processor again.
        """
        payment = self.store.get_payment(payment_id)
        with self.store.lock(f"payment:{payment.idempotency_key}"):
            payment = self.store.get_payment(payment_id)
            if payment.status in (PaymentStatus.PROCESSING, PaymentStatus.COMPLETED):
                logger.info(
                    "Payment %s is %s; not dispatching again", payment.id, payment.status
                )
                return payment
            if payment.status is PaymentStatus.FAILED:
                msg = f"payment {payment.id} failed; schedule a new payment to retry"
                raise StateConflict(msg)

            bill = self.store.get_bill(payment.bill_id)
            if bill.effective_status is not BillStatus.APPROVED:
                msg = f"bill {bill.id} is {bill.status}; only approved bills can be paid"
                raise StateConflict(msg)
            vendor = self.store.get_vendor(payment.vendor_id)
            method = self._method_for(vendor, payment.payment_method_id)
            processor = self._processor_for(method.type)

            payment = payment.evolve(
                status=PaymentStatus.PROCESSING, updated_at=self.clock()
            )
            self.store.save_payment(payment)

        request = PaymentRequest(
            amount=payment.amount,
            currency=payment.currency,
            vendor=vendor,
            method=method,
            bill_reference=bill.vendor_bill_number or bill.bill_number,
            idempotency_token=self.token_for(payment),
        )
        return self._dispatch(processor, request, payment, actor_id, timeout)

    def reconcile(self, payment_id: UUID) -> Payment:
        """Confirm a payment's final state against its processor."""
        payment = self.store.get_payment(payment_id)
        with self.store.lock(f"payment:{payment.idempotency_key}"):
            payment = self.store.get_payment(payment_id)
            if payment.status is PaymentStatus.PENDING:
                return payment
            if payment.is_settled:
                if payment.reconciled:
                    return payment
                payment = payment.evolve(reconciled=True, reconciled_at=self.clock())
                return self.store.save_payment(payment)

            processor = self._processor_for(payment.payment_method)
            result = processor.fetch_status(self.token_for(payment))
            if result.status is PaymentStatus.COMPLETED:
                now = self.clock()
                payment = payment.evolve(
                    status=PaymentStatus.COMPLETED,
                    processor_reference=result.reference or payment.processor_reference,
                    processed_at=payment.processed_at or now,
                    reconciled=True,
                    reconciled_at=now,
                    updated_at=now,
                )
            elif result.status is PaymentStatus.FAILED:
                now = self.clock()
                payment = payment.evolve(
                    status=PaymentStatus.FAILED,
                    last_error=result.error or "failed at processor",
                    reconciled=True,
                    reconciled_at=now,
                    updated_at=now,
                )
            else:
                logger.info("Payment %s still in flight at processor", payment.id)
                return payment
            self.store.save_payment(payment)

        logger.info("Reconciled payment %s as %s", payment.id, payment.status)
        emit(
            self.audit,
            "payment_reconciled",
            entity_type="payment",
            entity_id=payment.id,
            owner_id=payment.owner_id,
            description=f"Payment reconciled as {payment.status.value}",
            risk=RiskLevel.HIGH,
            bill_id=str(payment.bill_id),
        )
        return payment

    def outstanding_balance(self, bill: Bill) -> Decimal:
        paid = sum(
            (
                p.amount
                for p in self.store.list_payments(bill.id, [PaymentStatus.COMPLETED])
            ),
            Decimal("0"),
        )
        return bill.total_amount - paid

    def failure_count(self, bill_id: UUID) -> int:
        return len(self.store.list_payments(bill_id, [PaymentStatus.FAILED]))

    @staticmethod
    def token_for(payment: Payment) -> str:
        return idempotency_token(
            payment.bill_id, payment.payment_method_id, payment.id
        )

    def _dispatch(
        self,
        processor: PaymentProcessor,
        request: PaymentRequest,
        payment: Payment,
        actor_id: str | None,
        timeout: float | None,
    ) -> Payment:
        deadline = timeout if timeout is not None else self.policy.processor_timeout
        attempts = max(1, self.policy.processor_max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                result = self._call(processor, request, deadline)
            except ProcessorTimeout as exc:
                # Outcome unknown: stay processing for reconciliation
                payment = self._save(
                    payment, attempts=attempt, last_error=exc.message
                )
                self._emit_outcome(payment, actor_id, "payment_timed_out")
                raise ProcessorTimeout(exc.message, payment=payment) from exc
            except ProcessorError as exc:
                logger.warning(
                    "Payment %s attempt %d/%d failed: %s",
                    payment.id,
                    attempt,
                    attempts,
                    exc.message,
                )
                if exc.retryable and attempt < attempts:
                    continue
                payment = self._save(
                    payment,
                    status=PaymentStatus.FAILED,
                    attempts=attempt,
                    last_error=exc.message,
                )
                self._emit_outcome(payment, actor_id, "payment_failed")
                raise ProcessorError(
                    exc.message, retryable=exc.retryable, payment=payment
                ) from exc
            return self._apply_result(payment, result, attempt, actor_id)

        msg = f"payment {payment.id} was never sent to the processor"
        raise StateConflict(msg)

    def _call(
        self,
        processor: PaymentProcessor,
        request: PaymentRequest,
        timeout: float,
    ) -> ProcessorResult:
        future = self._executor.submit(processor.process_payment, request)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            msg = f"processor did not answer within {timeout}s"
            raise ProcessorTimeout(msg) from None

    def _apply_result(
        self,
        payment: Payment,
        result: ProcessorResult,
        attempt: int,
        actor_id: str | None,
    ) -> Payment:
        common = {
            "attempts": attempt,
            "processor_reference": result.reference,
            "fee": result.fee,
            "estimated_delivery": result.estimated_delivery,
        }
        if result.status is PaymentStatus.COMPLETED:
            payment = self._save(
                payment,
                status=PaymentStatus.COMPLETED,
                processed_at=self.clock(),
                last_error=None,
                **common,
            )
            self._emit_outcome(payment, actor_id, "payment_executed")
            return payment

        if result.status is PaymentStatus.FAILED:
            message = result.error or "payment failed at processor"
            payment = self._save(
                payment, status=PaymentStatus.FAILED, last_error=message, **common
            )
            self._emit_outcome(payment, actor_id, "payment_failed")
            raise ProcessorError(message, retryable=False, payment=payment)

        payment = self._save(payment, status=PaymentStatus.PROCESSING, **common)
        self._emit_outcome(payment, actor_id, "payment_submitted")
        return payment

    def _save(self, payment: Payment, **changes: object) -> Payment:
        updated = payment.evolve(**changes, updated_at=self.clock())
        return self.store.save_payment(updated)

    def _emit_outcome(
        self, payment: Payment, actor_id: str | None, event_type: str
    ) -> None:
        emit(
            self.audit,
            event_type,
            entity_type="payment",
            entity_id=payment.id,
            owner_id=payment.owner_id,
            actor_id=actor_id,
            description=(
                f"Payment {payment.status.value}: {payment.amount} {payment.currency}"
            ),
            risk=RiskLevel.HIGH,
            bill_id=str(payment.bill_id),
            processor_reference=payment.processor_reference,
            fee=str(payment.fee) if payment.fee is not None else None,
            error=payment.last_error,
        )

    def _method_for(self, vendor: Vendor, payment_method_id: UUID) -> PaymentMethod:
        method = vendor.find_payment_method(payment_method_id)
        if method is None:
            raise NotFoundError("payment method", payment_method_id)
        if method.status is not PaymentMethodStatus.ACTIVE:
            msg = f"payment method {method.id} is {method.status}"
            raise ValidationError(msg)
        self._processor_for(method.type)
        return method

    def _processor_for(self, method_type: PaymentMethodType) -> PaymentProcessor:
        processor = self.processors.get(method_type)
        if processor is None:
            msg = f"no payment processor configured for {method_type.value}"
            raise ValidationError(msg)
        return processor
