"""Bill-pay engine: the public operation surface.

Sequences extraction, vendor resolution, categorization, bill creation,
approval routing, payment dispatch and reconciliation. Every bill
mutation goes through :func:`billflow.lifecycle.transition` so the state
machine is enforced in one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from billflow.approvals import ApprovalEngine
from billflow.audit import LoggingAuditSink, emit
from billflow.categorizer import Categorizer
from billflow.config import get_policy
from billflow.errors import (
    ExtractionFailure,
    ProcessorError,
    ProcessorTimeout,
    StateConflict,
    ValidationError,
)
from billflow.extraction import extract_fields, is_low_confidence
from billflow.lifecycle import (
    can_transition,
    default_due_date,
    is_overdue,
    requires_approval,
    transition,
)
from billflow.models import (
    ApprovalStatus,
    Bill,
    BillStatus,
    DocumentType,
    ExtractionMetadata,
    PaymentStatus,
    RiskLevel,
    utcnow,
)
from billflow.payments import PaymentDispatcher
from billflow.store import describe
from billflow.vendors import VendorResolver

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import date, datetime
    from uuid import UUID

    from billflow.approvals import Authorizer
    from billflow.audit import AuditSink
    from billflow.config import EnginePolicy
    from billflow.extraction import Extractor
    from billflow.models import (
        ApprovalWorkflow,
        BillApproval,
        BillCategory,
        Decision,
        ExtractedFields,
        Payment,
        PaymentMethodType,
        SourceDocument,
        SourceFile,
        Vendor,
    )
    from billflow.processors.base import PaymentProcessor
    from billflow.repository import BillStore
    from billflow.store import DocumentStore
    from billflow.vendors import VendorCache

logger = logging.getLogger(__name__)

_UNPAID = (
    BillStatus.DRAFT,
    BillStatus.RECEIVED,
    BillStatus.PENDING_APPROVAL,
    BillStatus.APPROVED,
)


@dataclass
class IngestResult:
    """Outcome of creating a bill from a document or manual input."""

    bill: Bill
    vendor: Vendor | None
    approval: BillApproval | None = None
    payment: Payment | None = None
    fields: ExtractedFields | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class SweepResult:
    overdue_bills: list[Bill] = field(default_factory=list)
    escalated_approvals: list[BillApproval] = field(default_factory=list)


@dataclass
class AttentionReport:
    """Bills an owner should look at today."""

    overdue: list[Bill] = field(default_factory=list)
    pending_approval: list[Bill] = field(default_factory=list)
    scheduled_today: list[Bill] = field(default_factory=list)
    disputed: list[Bill] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.overdue)
            + len(self.pending_approval)
            + len(self.scheduled_today)
            + len(self.disputed)
        )


class BillPayEngine:
    """Single entry point for the bill lifecycle."""

    def __init__(
        self,
        store: BillStore,
        extractor: Extractor,
        authorizer: Authorizer,
        processors: Mapping[PaymentMethodType, PaymentProcessor],
        audit: AuditSink | None = None,
        documents: DocumentStore | None = None,
        policy: EnginePolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        vendor_cache: VendorCache | None = None,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.audit = audit if audit is not None else LoggingAuditSink()
        self.documents = documents
        self.policy = policy if policy is not None else get_policy()
        self.clock = clock or utcnow

        self.vendors = VendorResolver(store, self.audit, self.policy, vendor_cache)
        self.categorizer = Categorizer(self.policy.confidence_threshold)
        self.approvals = ApprovalEngine(
            store, authorizer, self.audit, self.policy, self.clock
        )
        self.payments = PaymentDispatcher(
            store, processors, self.audit, self.policy, self.clock
        )

    def close(self) -> None:
        self.payments.close()

    # --- Bill creation ----------------------------------------------------------

    def ingest_document(
        self,
        document: SourceDocument,
        owner_id: str,
        actor_id: str,
        document_type: DocumentType = DocumentType.AUTO,
    ) -> IngestResult:
        """Turn an uploaded document into a routed bill.

        Extraction failures do not raise: the bill is created as a draft
        holding the raw document, to be finished with :meth:`complete_draft`.
        """
        try:
            fields = extract_fields(self.extractor, document, document_type, self.policy)
        except ExtractionFailure as exc:
            logger.warning("Extraction failed for %s: %s", document.filename, exc.message)
            return self._create_draft(document, owner_id, actor_id, document_type, exc)

        low_confidence = is_low_confidence(fields, self.policy)
        warnings: list[str] = []
        if low_confidence:
            warnings.append(
                f"Low extraction confidence ({fields.confidence:.2f}): "
                "verify vendor, amount and dates before approving"
            )

        vendor = self.vendors.resolve(fields.vendor_name, fields.vendor_email, owner_id)
        issue_date = fields.issue_date or self.clock().date()
        source_file = self._keep_document(
            document, issue_date, vendor.name, fields.amount
        )
        extraction = ExtractionMetadata(
            document_type=document_type,
            raw_text=fields.raw_text,
            confidence=fields.confidence,
            low_confidence=low_confidence,
            source_file=source_file,
        )
        bill = self._new_bill(
            fields,
            vendor,
            owner_id,
            actor_id,
            category=self.categorizer.categorize(fields),
            approval_required=low_confidence,
            extraction=extraction,
        )
        bill, approval, payment = self._route(bill, vendor, actor_id, warnings)
        return IngestResult(
            bill=bill,
            vendor=vendor,
            approval=approval,
            payment=payment,
            fields=fields,
            warnings=warnings,
        )

    def create_bill_manually(
        self,
        owner_id: str,
        fields: ExtractedFields,
        actor_id: str,
        category: BillCategory | None = None,
        submit: bool = True,
    ) -> IngestResult:
        """Create a bill from caller-entered fields.

        With ``submit`` false the bill stays ``received`` until
        :meth:`schedule_approval` is called.
        """
        _require_usable(fields)
        vendor = self.vendors.resolve(fields.vendor_name, fields.vendor_email, owner_id)
        bill = self._new_bill(
            fields,
            vendor,
            owner_id,
            actor_id,
            category=category or self.categorizer.categorize(fields),
            approval_required=False,
            extraction=None,
        )
        if not submit:
            return IngestResult(bill=bill, vendor=vendor, fields=fields)
        bill, approval, payment = self._route(bill, vendor, actor_id, [])
        return IngestResult(
            bill=bill, vendor=vendor, approval=approval, payment=payment, fields=fields
        )

    def complete_draft(
        self, bill_id: UUID, fields: ExtractedFields, actor_id: str
    ) -> IngestResult:
        """Fill in a draft bill by hand and route it."""
        _require_usable(fields)
        with self.store.lock(f"bill:{bill_id}"):
            bill = self.store.get_bill(bill_id)
            if bill.effective_status is not BillStatus.DRAFT:
                msg = f"bill {bill.id} is {bill.status}, not a draft"
                raise StateConflict(msg)

            vendor = self.vendors.resolve(
                fields.vendor_name, fields.vendor_email, bill.owner_id
            )
            issue_date = fields.issue_date or bill.issue_date
            bill = self._transition(
                bill,
                BillStatus.RECEIVED,
                actor_id,
                vendor_id=vendor.id,
                vendor_bill_number=fields.invoice_number,
                amount=fields.amount,
                tax_amount=fields.tax_amount,
                discount_amount=fields.discount_amount,
                currency=fields.currency,
                issue_date=issue_date,
                due_date=(
                    fields.due_date or default_due_date(issue_date, vendor, self.policy)
                ),
                description=fields.description,
                line_items=fields.line_items,
                category=self.categorizer.categorize(fields),
            )
        bill, approval, payment = self._route(
            bill, vendor, actor_id, _draft_warnings(bill)
        )
        return IngestResult(
            bill=bill, vendor=vendor, approval=approval, payment=payment, fields=fields
        )

    # --- Approval ---------------------------------------------------------------

    def schedule_approval(self, bill_id: UUID, actor_id: str) -> BillApproval:
        """Start the approval run for a received bill.

        Returns the active run if the bill already has one.
        """
        with self.store.lock(f"bill:{bill_id}"):
            bill = self.store.get_bill(bill_id)
            existing = self.store.find_approval_for_bill(bill.id)
            if existing is not None and existing.is_active:
                return existing

            status = bill.effective_status
            if status is BillStatus.RECEIVED:
                bill = self._transition(
                    bill, BillStatus.PENDING_APPROVAL, actor_id, approval_required=True
                )
            elif status is not BillStatus.PENDING_APPROVAL:
                msg = f"bill {bill.id} is {bill.status}; approval cannot be scheduled"
                raise StateConflict(msg)

            vendor = self._vendor_of(bill)
            return self.approvals.build_approval(
                bill, vendor, actor_id, _draft_warnings(bill)
            )

    def decide_approval(
        self,
        approval_id: UUID,
        actor_id: str,
        decision: Decision,
        step_order: int,
        notes: str | None = None,
    ) -> BillApproval:
        """Record one approver decision and move the bill when the run ends.

        ``step_order`` must name the pending step. A final approval on an
        auto-pay vendor's bill also schedules its payment.
        """
        approved: Bill | None = None
        approval = self.store.get_approval(approval_id)
        with self.store.lock(f"bill:{approval.bill_id}"):
            bill = self.store.get_bill(approval.bill_id)
            if bill.effective_status is not BillStatus.PENDING_APPROVAL:
                msg = f"bill {bill.id} is {bill.status}; decisions are closed"
                raise StateConflict(msg)

            approval = self.approvals.decide(
                approval_id, actor_id, decision, step_order, notes
            )
            if approval.status is ApprovalStatus.APPROVED:
                approved = self._transition(
                    bill,
                    BillStatus.APPROVED,
                    actor_id,
                    approved_by=approval.approved_by,
                    approved_at=approval.approved_at,
                )
            elif approval.status is ApprovalStatus.REJECTED:
                self._transition(bill, BillStatus.REJECTED, actor_id, risk=RiskLevel.MEDIUM)
        if approved is not None:
            self._auto_schedule(approved, self._vendor_of(approved), actor_id)
        return approval

    # --- Payment ----------------------------------------------------------------

    def schedule_payment(
        self,
        bill_id: UUID,
        payment_method_id: UUID | None = None,
        scheduled_date: date | None = None,
        actor_id: str | None = None,
    ) -> Payment:
        """Create a pending payment; the vendor's default method if none given."""
        bill = self.store.get_bill(bill_id)
        if bill.effective_status is not BillStatus.APPROVED:
            msg = f"bill {bill.id} is {bill.status}; only approved bills can be paid"
            raise StateConflict(msg)
        vendor = self._vendor_of(bill)
        if vendor is None:
            msg = f"bill {bill.id} has no vendor to pay"
            raise ValidationError(msg)

        if payment_method_id is None:
            method = vendor.default_payment_method()
            if method is None:
                msg = f"vendor {vendor.name} has no default payment method"
                raise ValidationError(msg)
            payment_method_id = method.id

        return self.payments.schedule(
            bill,
            vendor,
            payment_method_id,
            scheduled_date or self.clock().date(),
            actor_id,
        )

    def execute_payment(
        self,
        payment_id: UUID,
        actor_id: str | None = None,
        timeout: float | None = None,
    ) -> Payment:
        """Dispatch a payment; the bill becomes ``paid`` once it completes.

        Processor errors are re-raised carrying the last-known Payment.
        """
        try:
            payment = self.payments.execute(payment_id, actor_id, timeout)
        except ProcessorTimeout:
            raise
        except ProcessorError as exc:
            if exc.payment is not None:
                self._after_failure(exc.payment, actor_id)
            raise

        if payment.status is PaymentStatus.COMPLETED:
            self._mark_paid(payment, actor_id)
        return payment

    def reconcile_payment(self, payment_id: UUID) -> Payment:
        """Confirm a payment's final status with its processor."""
        payment = self.payments.reconcile(payment_id)
        if payment.status is PaymentStatus.COMPLETED:
            self._mark_paid(payment, None)
        elif payment.status is PaymentStatus.FAILED:
            self._after_failure(payment, None)
        return payment

    # --- Housekeeping -----------------------------------------------------------

    def sweep_overdue(self, now: datetime | None = None) -> SweepResult:
        """Flag unpaid bills past due and escalate stale approval steps."""
        now = now or self.clock()
        today = now.date()
        result = SweepResult()

        for candidate in self.store.list_bills(statuses=_UNPAID):
            if not is_overdue(candidate, today) or self._has_live_payment(candidate):
                continue
            with self.store.lock(f"bill:{candidate.id}"):
                bill = self.store.get_bill(candidate.id)
                if not is_overdue(bill, today) or self._has_live_payment(bill):
                    continue
                bill = self._transition(
                    bill, BillStatus.OVERDUE, None, risk=RiskLevel.MEDIUM
                )
            result.overdue_bills.append(bill)

        result.escalated_approvals = self.approvals.escalate_overdue(now)
        logger.info(
            "Overdue sweep: %d bill(s) flagged, %d approval(s) escalated",
            len(result.overdue_bills),
            len(result.escalated_approvals),
        )
        return result

    def bills_requiring_attention(
        self, owner_id: str, today: date | None = None
    ) -> AttentionReport:
        today = today or self.clock().date()
        report = AttentionReport()
        for bill in self.store.list_bills(owner_id=owner_id):
            if bill.status is BillStatus.OVERDUE:
                report.overdue.append(bill)
            elif bill.status is BillStatus.DISPUTED:
                report.disputed.append(bill)
            if bill.effective_status is BillStatus.PENDING_APPROVAL:
                report.pending_approval.append(bill)
            pending = self.store.list_payments(bill.id, [PaymentStatus.PENDING])
            if any(p.scheduled_date == today for p in pending):
                report.scheduled_today.append(bill)
        return report

    def dispute_bill(self, bill_id: UUID, actor_id: str, reason: str) -> Bill:
        """Hold an unpaid bill for human resolution."""
        reason = reason.strip()
        if not reason:
            msg = "a dispute reason is required"
            raise ValidationError(msg)
        with self.store.lock(f"bill:{bill_id}"):
            bill = self.store.get_bill(bill_id)
            return self._transition(
                bill,
                BillStatus.DISPUTED,
                actor_id,
                risk=RiskLevel.HIGH,
                dispute_reason=reason,
            )

    def add_vendor(self, vendor: Vendor) -> Vendor:
        return self.vendors.register(vendor)

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        self.store.add_workflow(workflow)
        logger.info("Added workflow %s for %s", workflow.name, workflow.owner_id)
        emit(
            self.audit,
            "workflow_created",
            entity_type="workflow",
            entity_id=workflow.id,
            owner_id=workflow.owner_id,
            description=f"Approval workflow added: {workflow.name}",
        )
        return workflow

    # --- Internals --------------------------------------------------------------

    def _new_bill(
        self,
        fields: ExtractedFields,
        vendor: Vendor,
        owner_id: str,
        actor_id: str,
        *,
        category: BillCategory,
        approval_required: bool,
        extraction: ExtractionMetadata | None,
    ) -> Bill:
        issue_date = fields.issue_date or self.clock().date()
        try:
            bill = Bill(
                owner_id=owner_id,
                vendor_id=vendor.id,
                bill_number=self._bill_number(),
                vendor_bill_number=fields.invoice_number,
                amount=fields.amount,
                tax_amount=fields.tax_amount,
                discount_amount=fields.discount_amount,
                currency=fields.currency,
                issue_date=issue_date,
                due_date=(
                    fields.due_date or default_due_date(issue_date, vendor, self.policy)
                ),
                category=category,
                description=fields.description,
                line_items=fields.line_items,
                approval_required=approval_required,
                extraction=extraction,
                created_by=actor_id,
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        return self._add_bill(bill, actor_id)

    def _create_draft(
        self,
        document: SourceDocument,
        owner_id: str,
        actor_id: str,
        document_type: DocumentType,
        error: ExtractionFailure,
    ) -> IngestResult:
        today = self.clock().date()
        extraction = ExtractionMetadata(
            document_type=document_type,
            confidence=0.0,
            low_confidence=True,
            error=error.message,
            source_file=self._keep_document(document, today, None, None),
        )
        bill = Bill(
            owner_id=owner_id,
            bill_number=self._bill_number(),
            amount=0,
            issue_date=today,
            status=BillStatus.DRAFT,
            approval_required=True,
            extraction=extraction,
            created_by=actor_id,
        )
        bill = self._add_bill(bill, actor_id)
        return IngestResult(
            bill=bill,
            vendor=None,
            warnings=[f"Extraction failed, manual completion needed: {error.message}"],
        )

    def _add_bill(self, bill: Bill, actor_id: str) -> Bill:
        self.store.add_bill(bill)
        logger.info(
            "Created bill %s (%s %s, %s)",
            bill.bill_number,
            bill.total_amount,
            bill.currency,
            bill.status,
        )
        emit(
            self.audit,
            "bill_created",
            entity_type="bill",
            entity_id=bill.id,
            owner_id=bill.owner_id,
            actor_id=actor_id,
            description=f"Bill {bill.bill_number} created as {bill.status.value}",
            total=str(bill.total_amount),
            currency=bill.currency,
        )
        return bill

    def _route(
        self,
        bill: Bill,
        vendor: Vendor | None,
        actor_id: str,
        warnings: list[str],
    ) -> tuple[Bill, BillApproval | None, Payment | None]:
        """Send a received bill to approval or approve it outright.

        An approved bill from an auto-pay vendor gets a pending payment on
        the vendor's default method.
        """
        workflows = self.store.list_workflows(bill.owner_id)
        if requires_approval(bill, vendor, workflows, self.policy):
            bill = self._transition(
                bill, BillStatus.PENDING_APPROVAL, actor_id, approval_required=True
            )
            approval = self.approvals.build_approval(bill, vendor, actor_id, warnings)
            return bill, approval, None
        bill = self._transition(
            bill, BillStatus.APPROVED, actor_id, approved_at=self.clock()
        )
        return bill, None, self._auto_schedule(bill, vendor, actor_id)

    def _auto_schedule(
        self, bill: Bill, vendor: Vendor | None, actor_id: str | None
    ) -> Payment | None:
        if vendor is None or not vendor.auto_pay:
            return None
        method = vendor.default_payment_method()
        if method is None:
            logger.warning(
                "Vendor %s is set to auto-pay but has no default payment method",
                vendor.name,
            )
            return None
        try:
            return self.payments.schedule(
                bill, vendor, method.id, self.clock().date(), actor_id
            )
        except (StateConflict, ValidationError) as exc:
            # The bill stays approved; payment can be scheduled by hand
            logger.warning(
                "Auto-pay scheduling failed for bill %s: %s", bill.id, exc.message
            )
            return None

    def _transition(
        self,
        bill: Bill,
        target: BillStatus,
        actor_id: str | None,
        risk: RiskLevel = RiskLevel.LOW,
        **changes: Any,
    ) -> Bill:
        previous = bill.status
        bill = transition(bill, target, **changes)
        self.store.save_bill(bill)
        emit(
            self.audit,
            "bill_status_changed",
            entity_type="bill",
            entity_id=bill.id,
            owner_id=bill.owner_id,
            actor_id=actor_id,
            description=f"Bill {bill.bill_number}: {previous.value} -> {target.value}",
            risk=risk,
            from_status=previous.value,
            to_status=target.value,
        )
        return bill

    def _mark_paid(self, payment: Payment, actor_id: str | None) -> None:
        with self.store.lock(f"bill:{payment.bill_id}"):
            bill = self.store.get_bill(payment.bill_id)
            if bill.status is BillStatus.PAID:
                return
            if self.payments.outstanding_balance(bill) > 0:
                logger.info("Bill %s still has a balance after payment", bill.id)
                return
            if not can_transition(bill, BillStatus.PAID):
                logger.error(
                    "Payment %s completed but bill %s is %s",
                    payment.id,
                    bill.id,
                    bill.status,
                )
                return
            processed = payment.processed_at or self.clock()
            self._transition(
                bill,
                BillStatus.PAID,
                actor_id,
                risk=RiskLevel.HIGH,
                paid_date=processed.date(),
            )

    def _after_failure(self, payment: Payment, actor_id: str | None) -> None:
        failures = self.payments.failure_count(payment.bill_id)
        if failures < self.policy.payment_failure_limit:
            return
        with self.store.lock(f"bill:{payment.bill_id}"):
            bill = self.store.get_bill(payment.bill_id)
            if not can_transition(bill, BillStatus.DISPUTED):
                return
            logger.warning(
                "Bill %s disputed after %d failed payments", bill.id, failures
            )
            self._transition(
                bill,
                BillStatus.DISPUTED,
                actor_id,
                risk=RiskLevel.HIGH,
                dispute_reason=f"{failures} failed payment attempts",
            )

    def _has_live_payment(self, bill: Bill) -> bool:
        return bool(
            self.store.list_payments(
                bill.id, [PaymentStatus.PROCESSING, PaymentStatus.COMPLETED]
            )
        )

    def _vendor_of(self, bill: Bill) -> Vendor | None:
        if bill.vendor_id is None:
            return None
        return self.store.get_vendor(bill.vendor_id)

    def _keep_document(
        self,
        document: SourceDocument,
        issue_date: date,
        vendor_name: str | None,
        amount: Any,
    ) -> SourceFile:
        if self.documents is None:
            return describe(document)
        return self.documents.save(issue_date, vendor_name, amount, document)

    def _bill_number(self) -> str:
        return f"BILL-{self.clock():%Y%m%d}-{uuid4().hex[:6].upper()}"


def _require_usable(fields: ExtractedFields) -> None:
    if not fields.is_usable:
        msg = "vendor name and amount are required"
        raise ValidationError(msg)


def _draft_warnings(bill: Bill) -> list[str]:
    if bill.extraction is not None and bill.extraction.low_confidence:
        return ["Entered manually after failed or low-confidence extraction"]
    return []
