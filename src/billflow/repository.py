"""Bill store protocol and in-memory implementation."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Protocol

from billflow.errors import IdempotencyConflict, NotFoundError, StateConflict
from billflow.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    Bill,
    BillApproval,
    BillStatus,
    Payment,
    PaymentStatus,
    Vendor,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator
    from contextlib import AbstractContextManager
    from uuid import UUID


class BillStore(Protocol):
    """Persistence for bills, vendors, workflows, approvals and payments.

    ``lock(key)`` serializes work on one key across callers, the
    equivalent of holding a row lock for the duration of the block.
    """

    def lock(self, key: str) -> AbstractContextManager[None]: ...

    def add_bill(self, bill: Bill) -> Bill: ...

    def get_bill(self, bill_id: UUID) -> Bill: ...

    def save_bill(self, bill: Bill) -> Bill: ...

    def list_bills(
        self,
        owner_id: str | None = None,
        statuses: Collection[BillStatus] | None = None,
    ) -> list[Bill]: ...

    def add_vendor(self, vendor: Vendor) -> Vendor: ...

    def get_vendor(self, vendor_id: UUID) -> Vendor: ...

    def save_vendor(self, vendor: Vendor) -> Vendor: ...

    def list_vendors(self, owner_id: str) -> list[Vendor]: ...

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow: ...

    def list_workflows(self, owner_id: str) -> list[ApprovalWorkflow]: ...

    def add_approval(self, approval: BillApproval) -> BillApproval: ...

    def get_approval(self, approval_id: UUID) -> BillApproval: ...

    def save_approval(
        self, approval: BillApproval, expected_version: int
    ) -> BillApproval: ...

    def list_approvals(
        self, statuses: Collection[ApprovalStatus] | None = None
    ) -> list[BillApproval]: ...

    def find_approval_for_bill(self, bill_id: UUID) -> BillApproval | None: ...

    def add_payment(self, payment: Payment) -> Payment: ...

    def get_payment(self, payment_id: UUID) -> Payment: ...

    def save_payment(self, payment: Payment) -> Payment: ...

    def find_active_payment(self, idempotency_key: str) -> Payment | None: ...

    def list_payments(
        self,
        bill_id: UUID | None = None,
        statuses: Collection[PaymentStatus] | None = None,
    ) -> list[Payment]: ...


class InMemoryBillStore:
    """Thread-safe in-memory BillStore.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._mutex = threading.RLock()
        self._locks: dict[str, threading.Lock] = {}
        self._bills: dict[UUID, Bill] = {}
        self._vendors: dict[UUID, Vendor] = {}
        self._workflows: dict[UUID, ApprovalWorkflow] = {}
        self._approvals: dict[UUID, BillApproval] = {}
        self._payments: dict[UUID, Payment] = {}

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._mutex:
            key_lock = self._locks.setdefault(key, threading.Lock())
        with key_lock:
            yield

    # Bills

    def add_bill(self, bill: Bill) -> Bill:
        with self._mutex:
            self._bills[bill.id] = bill.model_copy(deep=True)
        return bill

    def get_bill(self, bill_id: UUID) -> Bill:
        with self._mutex:
            bill = self._bills.get(bill_id)
            if bill is None:
                raise NotFoundError("bill", bill_id)
            return bill.model_copy(deep=True)

    def save_bill(self, bill: Bill) -> Bill:
        with self._mutex:
            if bill.id not in self._bills:
                raise NotFoundError("bill", bill.id)
            self._bills[bill.id] = bill.model_copy(deep=True)
        return bill

    def list_bills(
        self,
        owner_id: str | None = None,
        statuses: Collection[BillStatus] | None = None,
    ) -> list[Bill]:
        with self._mutex:
            return [
                bill.model_copy(deep=True)
                for bill in self._bills.values()
                if (owner_id is None or bill.owner_id == owner_id)
                and (statuses is None or bill.status in statuses)
            ]

    # Vendors

    def add_vendor(self, vendor: Vendor) -> Vendor:
        with self._mutex:
            self._vendors[vendor.id] = vendor.model_copy(deep=True)
        return vendor

    def get_vendor(self, vendor_id: UUID) -> Vendor:
        with self._mutex:
            vendor = self._vendors.get(vendor_id)
            if vendor is None:
                raise NotFoundError("vendor", vendor_id)
            return vendor.model_copy(deep=True)

    def save_vendor(self, vendor: Vendor) -> Vendor:
        with self._mutex:
            if vendor.id not in self._vendors:
                raise NotFoundError("vendor", vendor.id)
            self._vendors[vendor.id] = vendor.model_copy(deep=True)
        return vendor

    def list_vendors(self, owner_id: str) -> list[Vendor]:
        with self._mutex:
            return [
                v.model_copy(deep=True)
                for v in self._vendors.values()
                if v.owner_id == owner_id
            ]

    # Workflows

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        with self._mutex:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    def list_workflows(self, owner_id: str) -> list[ApprovalWorkflow]:
        with self._mutex:
            return [
                w.model_copy(deep=True)
                for w in self._workflows.values()
                if w.owner_id == owner_id
            ]

    # Approvals

    def add_approval(self, approval: BillApproval) -> BillApproval:
        with self._mutex:
            self._approvals[approval.id] = approval.model_copy(deep=True)
        return approval

    def get_approval(self, approval_id: UUID) -> BillApproval:
        with self._mutex:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise NotFoundError("approval", approval_id)
            return approval.model_copy(deep=True)

    def save_approval(
        self, approval: BillApproval, expected_version: int
    ) -> BillApproval:
        """Store ``approval`` if the stored version is ``expected_version``.

        The saved record carries the next version number.
        """
        with self._mutex:
            current = self._approvals.get(approval.id)
            if current is None:
                raise NotFoundError("approval", approval.id)
            if current.version != expected_version:
                msg = (
                    f"approval {approval.id} was modified concurrently "
                    f"(expected version {expected_version}, found {current.version})"
                )
                raise StateConflict(msg)
            saved = approval.model_copy(update={"version": expected_version + 1})
            self._approvals[approval.id] = saved.model_copy(deep=True)
        return saved

    def list_approvals(
        self, statuses: Collection[ApprovalStatus] | None = None
    ) -> list[BillApproval]:
        with self._mutex:
            return [
                a.model_copy(deep=True)
                for a in self._approvals.values()
                if statuses is None or a.status in statuses
            ]

    def find_approval_for_bill(self, bill_id: UUID) -> BillApproval | None:
        with self._mutex:
            matches = [a for a in self._approvals.values() if a.bill_id == bill_id]
            if not matches:
                return None
            latest = max(matches, key=lambda a: a.initiated_at)
            return latest.model_copy(deep=True)

    # Payments

    def add_payment(self, payment: Payment) -> Payment:
        """Insert ``payment``.

        Raises IdempotencyConflict if a non-failed payment already holds
        the same idempotency key.
        """
        with self._mutex:
            if self._active_payment(payment.idempotency_key) is not None:
                raise IdempotencyConflict(payment.idempotency_key)
            self._payments[payment.id] = payment.model_copy(deep=True)
        return payment

    def get_payment(self, payment_id: UUID) -> Payment:
        with self._mutex:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise NotFoundError("payment", payment_id)
            return payment.model_copy(deep=True)

    def save_payment(self, payment: Payment) -> Payment:
        with self._mutex:
            if payment.id not in self._payments:
                raise NotFoundError("payment", payment.id)
            self._payments[payment.id] = payment.model_copy(deep=True)
        return payment

    def find_active_payment(self, idempotency_key: str) -> Payment | None:
        with self._mutex:
            payment = self._active_payment(idempotency_key)
            return payment.model_copy(deep=True) if payment is not None else None

    def list_payments(
        self,
        bill_id: UUID | None = None,
        statuses: Collection[PaymentStatus] | None = None,
    ) -> list[Payment]:
        with self._mutex:
            return [
                p.model_copy(deep=True)
                for p in self._payments.values()
                if (bill_id is None or p.bill_id == bill_id)
                and (statuses is None or p.status in statuses)
            ]

    def _active_payment(self, idempotency_key: str) -> Payment | None:
        for payment in self._payments.values():
            if (
                payment.idempotency_key == idempotency_key
                and payment.status is not PaymentStatus.FAILED
            ):
                return payment
        return None
