"""Tests for billflow.orchestrator."""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
from conftest import OWNER, make_fields, make_vendor

from billflow.errors import (
    NoPendingStep,
    NotAuthorized,
    ProcessorError,
    ProcessorTimeout,
    StateConflict,
    ValidationError,
)
from billflow.models import (
    ApprovalStatus,
    ApprovalWorkflow,
    BillCategory,
    BillPriority,
    BillStatus,
    Decision,
    PaymentStatus,
    RoleApprovalStep,
    WorkflowConditions,
)
from billflow.store import LocalDocumentStore

if TYPE_CHECKING:
    from pathlib import Path
    from uuid import UUID

    from conftest import FakeExtractor, FakeProcessor

    from billflow.audit import MemoryAuditSink
    from billflow.models import Bill, Payment, SourceDocument
    from billflow.orchestrator import BillPayEngine
    from billflow.repository import InMemoryBillStore


def _approved_bill(
    engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
) -> Bill:
    engine.add_vendor(make_vendor())
    extractor.fields = make_fields()
    result = engine.ingest_document(document, OWNER, "clerk")
    assert result.bill.status is BillStatus.APPROVED
    return result.bill


def _payments(store: InMemoryBillStore, bill: Bill) -> list[Payment]:
    return store.list_payments(bill.id)


class TestIngestDocument:
    """Tests for BillPayEngine.ingest_document."""

    def test_small_bill_is_auto_approved(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.APPROVED
        assert result.bill.approved_at is not None
        assert result.bill.approval_required is False
        assert result.approval is None
        assert result.warnings == []
        assert store.find_approval_for_bill(result.bill.id) is None

    def test_fields_carried_onto_bill(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        fields = make_fields(
            tax_amount=Decimal("16.00"), discount_amount=Decimal("6.00")
        )
        extractor.fields = fields

        result = engine.ingest_document(document, OWNER, "clerk")

        bill = store.get_bill(result.bill.id)
        assert bill.amount == fields.amount
        assert bill.tax_amount == Decimal("16.00")
        assert bill.discount_amount == Decimal("6.00")
        assert bill.total_amount == Decimal("210.00")
        assert bill.vendor_bill_number == "INV-1001"
        assert bill.issue_date == date(2025, 6, 1)
        assert bill.due_date == date(2025, 7, 1)
        assert bill.description == "Printer paper and toner"
        assert bill.category is BillCategory.OFFICE_SUPPLIES
        assert bill.bill_number.startswith("BILL-")
        assert bill.created_by == "clerk"
        assert bill.extraction is not None
        assert bill.extraction.confidence == 0.95
        assert bill.extraction.source_file is not None
        assert bill.extraction.source_file.filename == "invoice.pdf"

    def test_missing_due_date_defaults(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        extractor.fields = make_fields(due_date=None)

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.due_date == date(2025, 7, 1)

    def test_missing_due_date_uses_vendor_terms(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        engine.add_vendor(make_vendor(payment_terms_days=15))
        extractor.fields = make_fields(due_date=None)

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.due_date == date(2025, 6, 16)

    def test_stated_due_date_beats_vendor_terms(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        engine.add_vendor(make_vendor(payment_terms_days=15))
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.due_date == date(2025, 7, 1)

    def test_vendor_is_resolved(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        known = engine.add_vendor(make_vendor())
        extractor.fields = make_fields(vendor_name="ACME Office Supply Inc.")

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.vendor is not None
        assert result.vendor.id == known.id
        assert result.bill.vendor_id == known.id

    def test_vendor_threshold_requires_approval(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_vendor(
            make_vendor(approval_required=True, approval_threshold=Decimal("1000"))
        )
        extractor.fields = make_fields(amount=Decimal("1250.00"))

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.PENDING_APPROVAL
        assert result.approval is not None
        assert result.approval.status is ApprovalStatus.PENDING
        assert result.approval.workflow_id is None
        assert store.find_approval_for_bill(result.bill.id) is not None
        assert result.bill.approval_required is True
        assert store.get_bill(result.bill.id).approval_required is True

    def test_low_confidence_forces_approval(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        extractor.fields = make_fields(amount=Decimal("50.00"), confidence=0.3)

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.PENDING_APPROVAL
        assert result.bill.approval_required is True
        assert result.bill.category is BillCategory.OTHER
        assert result.approval is not None
        assert any("Low extraction confidence (0.30)" in w for w in result.warnings)
        assert result.bill.extraction is not None
        assert result.bill.extraction.low_confidence is True

    def test_extraction_failure_creates_draft(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        audit: MemoryAuditSink,
    ) -> None:
        result = engine.ingest_document(document, OWNER, "clerk")

        bill = result.bill
        assert bill.status is BillStatus.DRAFT
        assert bill.amount == Decimal("0")
        assert bill.vendor_id is None
        assert bill.approval_required is True
        assert bill.extraction is not None
        assert bill.extraction.error == "provider returned nothing"
        assert bill.extraction.confidence == 0.0
        assert result.vendor is None
        assert result.approval is None
        assert result.warnings[0].startswith("Extraction failed")
        assert audit.of_type("bill_created")

    def test_documents_kept_in_store(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store_root: Path,
    ) -> None:
        engine.documents = LocalDocumentStore(store_root)
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.extraction is not None
        source = result.bill.extraction.source_file
        assert source is not None
        assert source.storage_path == (
            "2025/06/2025-06-01__acme-office-supply__200.00.pdf"
        )
        assert (store_root / source.storage_path).read_bytes() == document.data


class TestManualBills:
    """Tests for create_bill_manually and complete_draft."""

    def test_manual_bill_is_routed(self, engine: BillPayEngine) -> None:
        result = engine.create_bill_manually(OWNER, make_fields(), "clerk")

        assert result.bill.status is BillStatus.APPROVED
        assert result.bill.extraction is None

    def test_manual_bill_requires_vendor_and_amount(self, engine: BillPayEngine) -> None:
        with pytest.raises(ValidationError, match="vendor name and amount"):
            engine.create_bill_manually(OWNER, make_fields(amount=None), "clerk")

    def test_unsubmitted_bill_waits_for_schedule_approval(
        self, engine: BillPayEngine
    ) -> None:
        result = engine.create_bill_manually(
            OWNER, make_fields(), "clerk", category=BillCategory.MARKETING, submit=False
        )
        assert result.bill.status is BillStatus.RECEIVED
        assert result.bill.category is BillCategory.MARKETING

        approval = engine.schedule_approval(result.bill.id, "clerk")
        again = engine.schedule_approval(result.bill.id, "clerk")

        assert approval.id == again.id
        assert engine.store.get_bill(result.bill.id).status is (
            BillStatus.PENDING_APPROVAL
        )
        assert engine.store.get_bill(result.bill.id).approval_required is True

    def test_schedule_approval_rejects_approved_bill(
        self, engine: BillPayEngine
    ) -> None:
        result = engine.create_bill_manually(OWNER, make_fields(), "clerk")

        with pytest.raises(StateConflict):
            engine.schedule_approval(result.bill.id, "clerk")

    def test_complete_draft_routes_to_approval(
        self, engine: BillPayEngine, document: SourceDocument
    ) -> None:
        draft = engine.ingest_document(document, OWNER, "clerk").bill

        result = engine.complete_draft(draft.id, make_fields(), "clerk")

        assert result.bill.status is BillStatus.PENDING_APPROVAL
        assert result.bill.amount == Decimal("200.00")
        assert result.bill.vendor_id is not None
        assert result.approval is not None
        assert result.approval.warnings

    def test_complete_draft_only_for_drafts(self, engine: BillPayEngine) -> None:
        bill = engine.create_bill_manually(OWNER, make_fields(), "clerk").bill

        with pytest.raises(StateConflict, match="not a draft"):
            engine.complete_draft(bill.id, make_fields(), "clerk")


class TestApprovalFlow:
    """Tests for approval decisions driving the bill."""

    @pytest.fixture
    def pending(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> tuple[Bill, UUID]:
        engine.add_vendor(
            make_vendor(approval_required=True, approval_threshold=Decimal("1000"))
        )
        extractor.fields = make_fields(amount=Decimal("1250.00"))
        result = engine.ingest_document(document, OWNER, "clerk")
        assert result.approval is not None
        return result.bill, result.approval.id

    def test_approve_then_pay(
        self,
        engine: BillPayEngine,
        pending: tuple[Bill, UUID],
        processor: FakeProcessor,
        store: InMemoryBillStore,
    ) -> None:
        bill, approval_id = pending

        approval = engine.decide_approval(approval_id, "maria", Decision.APPROVE, 1)

        assert approval.status is ApprovalStatus.APPROVED
        approved = store.get_bill(bill.id)
        assert approved.status is BillStatus.APPROVED
        assert approved.approved_by == "maria"

        payment = engine.schedule_payment(bill.id, actor_id="maria")
        assert payment.amount == Decimal("1250.00")
        executed = engine.execute_payment(payment.id, actor_id="maria")

        assert executed.status is PaymentStatus.COMPLETED
        assert len(processor.calls) == 1
        paid = store.get_bill(bill.id)
        assert paid.status is BillStatus.PAID
        assert paid.paid_date is not None
        completed = [
            p for p in _payments(store, bill) if p.status is PaymentStatus.COMPLETED
        ]
        assert len(completed) == 1

    def test_reject_is_final(
        self,
        engine: BillPayEngine,
        pending: tuple[Bill, UUID],
        store: InMemoryBillStore,
    ) -> None:
        bill, approval_id = pending

        approval = engine.decide_approval(
            approval_id, "maria", Decision.REJECT, 1, notes="budget exceeded"
        )

        assert approval.status is ApprovalStatus.REJECTED
        assert store.get_bill(bill.id).status is BillStatus.REJECTED
        with pytest.raises(StateConflict):
            engine.schedule_payment(bill.id)
        with pytest.raises(StateConflict):
            engine.decide_approval(approval_id, "omar", Decision.APPROVE, 1)

    def test_unauthorized_actor_changes_nothing(
        self,
        engine: BillPayEngine,
        pending: tuple[Bill, UUID],
        store: InMemoryBillStore,
    ) -> None:
        bill, approval_id = pending

        with pytest.raises(NotAuthorized):
            engine.decide_approval(approval_id, "fiona", Decision.APPROVE, 1)

        assert store.get_bill(bill.id).status is BillStatus.PENDING_APPROVAL

    def test_multi_step_workflow(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
        audit: MemoryAuditSink,
    ) -> None:
        engine.add_workflow(
            ApprovalWorkflow(
                owner_id=OWNER,
                name="Large purchases",
                conditions=WorkflowConditions(amount_threshold=Decimal("500")),
                steps=[
                    RoleApprovalStep(id="mgr", name="Manager", order=1, role="manager"),
                    RoleApprovalStep(id="cfo", name="CFO", order=2, role="cfo"),
                ],
            )
        )
        extractor.fields = make_fields(amount=Decimal("800.00"))
        result = engine.ingest_document(document, OWNER, "clerk")
        assert result.approval is not None
        assert result.approval.total_steps == 2
        assert audit.of_type("workflow_created")

        first = engine.decide_approval(
            result.approval.id, "maria", Decision.APPROVE, 1
        )
        assert first.status is ApprovalStatus.PENDING
        assert store.get_bill(result.bill.id).status is BillStatus.PENDING_APPROVAL

        second = engine.decide_approval(
            result.approval.id, "carol", Decision.APPROVE, 2
        )
        assert second.status is ApprovalStatus.APPROVED
        assert store.get_bill(result.bill.id).status is BillStatus.APPROVED

    def test_stale_step_decision_is_rejected(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_workflow(
            ApprovalWorkflow(
                owner_id=OWNER,
                name="Large purchases",
                conditions=WorkflowConditions(amount_threshold=Decimal("500")),
                steps=[
                    RoleApprovalStep(id="mgr", name="Manager", order=1, role="manager"),
                    RoleApprovalStep(id="cfo", name="CFO", order=2, role="cfo"),
                ],
            )
        )
        extractor.fields = make_fields(amount=Decimal("800.00"))
        result = engine.ingest_document(document, OWNER, "clerk")
        assert result.approval is not None
        engine.decide_approval(result.approval.id, "maria", Decision.APPROVE, 1)

        # carol holds both roles; a replayed step-1 approval must not pass step 2
        with pytest.raises(NoPendingStep):
            engine.decide_approval(result.approval.id, "carol", Decision.APPROVE, 1)

        approval = store.get_approval(result.approval.id)
        assert approval.status is ApprovalStatus.PENDING
        assert approval.current_step == 2
        assert store.get_bill(result.bill.id).status is BillStatus.PENDING_APPROVAL


class TestAutoPay:
    """Tests for payment scheduling on auto-pay vendors."""

    def test_auto_approved_bill_is_scheduled(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
        processor: FakeProcessor,
    ) -> None:
        vendor = engine.add_vendor(make_vendor(auto_pay=True))
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.APPROVED
        assert result.payment is not None
        assert result.payment.status is PaymentStatus.PENDING
        assert result.payment.amount == result.bill.total_amount
        method = vendor.default_payment_method()
        assert method is not None
        assert result.payment.payment_method_id == method.id
        assert [p.id for p in _payments(store, result.bill)] == [result.payment.id]
        assert processor.calls == []

    def test_vendor_without_auto_pay_is_not_scheduled(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_vendor(make_vendor())
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.APPROVED
        assert result.payment is None
        assert _payments(store, result.bill) == []

    def test_scheduled_after_final_approval(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_vendor(
            make_vendor(
                auto_pay=True,
                approval_required=True,
                approval_threshold=Decimal("1000"),
            )
        )
        extractor.fields = make_fields(amount=Decimal("1250.00"))
        result = engine.ingest_document(document, OWNER, "clerk")
        assert result.approval is not None
        assert result.payment is None
        assert _payments(store, result.bill) == []

        engine.decide_approval(result.approval.id, "maria", Decision.APPROVE, 1)

        (payment,) = _payments(store, result.bill)
        assert payment.status is PaymentStatus.PENDING
        assert payment.amount == Decimal("1250.00")

    def test_rejected_bill_is_not_scheduled(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_vendor(
            make_vendor(
                auto_pay=True,
                approval_required=True,
                approval_threshold=Decimal("1000"),
            )
        )
        extractor.fields = make_fields(amount=Decimal("1250.00"))
        result = engine.ingest_document(document, OWNER, "clerk")
        assert result.approval is not None

        engine.decide_approval(result.approval.id, "maria", Decision.REJECT, 1)

        assert _payments(store, result.bill) == []

    def test_missing_default_method_leaves_bill_approved(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        engine.add_vendor(make_vendor(auto_pay=True, payment_methods=[]))
        extractor.fields = make_fields()

        result = engine.ingest_document(document, OWNER, "clerk")

        assert result.bill.status is BillStatus.APPROVED
        assert result.payment is None
        assert _payments(store, result.bill) == []


class TestPayments:
    """Tests for payment scheduling and execution through the engine."""

    def test_schedule_requires_approved_bill(
        self, engine: BillPayEngine, document: SourceDocument
    ) -> None:
        draft = engine.ingest_document(document, OWNER, "clerk").bill

        with pytest.raises(StateConflict, match="only approved bills"):
            engine.schedule_payment(draft.id)

    def test_vendor_without_default_method(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        extractor.fields = make_fields()
        bill = engine.ingest_document(document, OWNER, "clerk").bill

        with pytest.raises(ValidationError, match="no default payment method"):
            engine.schedule_payment(bill.id)

    def test_schedule_twice_returns_same_payment(
        self, engine: BillPayEngine, extractor: FakeExtractor, document: SourceDocument
    ) -> None:
        bill = _approved_bill(engine, extractor, document)

        first = engine.schedule_payment(bill.id)
        second = engine.schedule_payment(bill.id)

        assert first.id == second.id

    def test_concurrent_execution_pays_once(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        processor: FakeProcessor,
        store: InMemoryBillStore,
    ) -> None:
        processor.delay = 0.05
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id)
        barrier = threading.Barrier(8)
        errors: list[Exception] = []

        def run() -> None:
            barrier.wait()
            try:
                engine.execute_payment(payment.id)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(processor.calls) == 1
        assert store.get_bill(bill.id).status is BillStatus.PAID
        assert len(_payments(store, bill)) == 1

    def test_timeout_then_reconcile(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        processor: FakeProcessor,
        store: InMemoryBillStore,
    ) -> None:
        processor.delay = 0.5
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id)

        with pytest.raises(ProcessorTimeout) as excinfo:
            engine.execute_payment(payment.id, timeout=0.05)

        assert excinfo.value.payment is not None
        assert excinfo.value.payment.status is PaymentStatus.PROCESSING
        assert store.get_bill(bill.id).status is BillStatus.APPROVED

        reconciled = engine.reconcile_payment(payment.id)

        assert reconciled.status is PaymentStatus.COMPLETED
        assert reconciled.reconciled is True
        assert store.get_bill(bill.id).status is BillStatus.PAID

    def test_repeated_failures_dispute_bill(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        processor: FakeProcessor,
        store: InMemoryBillStore,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        processor.results = [
            ProcessorError("card declined", retryable=False) for _ in range(3)
        ]

        for _ in range(3):
            payment = engine.schedule_payment(bill.id)
            with pytest.raises(ProcessorError, match="card declined"):
                engine.execute_payment(payment.id)

        disputed = store.get_bill(bill.id)
        assert disputed.status is BillStatus.DISPUTED
        assert disputed.dispute_reason == "3 failed payment attempts"
        with pytest.raises(StateConflict):
            engine.schedule_payment(bill.id)

    def test_single_failure_keeps_bill_payable(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        processor: FakeProcessor,
        store: InMemoryBillStore,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        processor.results = [ProcessorError("card declined", retryable=False)]
        failed = engine.schedule_payment(bill.id)
        with pytest.raises(ProcessorError):
            engine.execute_payment(failed.id)

        retry = engine.schedule_payment(bill.id)
        engine.execute_payment(retry.id)

        assert retry.id != failed.id
        assert store.get_bill(bill.id).status is BillStatus.PAID

    def test_audit_trail(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        audit: MemoryAuditSink,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id, actor_id="maria")
        engine.execute_payment(payment.id, actor_id="maria")

        kinds = [event.event_type for event in audit.events]
        for expected in (
            "bill_created",
            "bill_status_changed",
            "payment_scheduled",
            "payment_executed",
        ):
            assert expected in kinds
        paid_events = [
            e
            for e in audit.of_type("bill_status_changed")
            if e.metadata.get("to_status") == "paid"
        ]
        assert len(paid_events) == 1
        assert paid_events[0].actor_id == "maria"


class TestSweepOverdue:
    """Tests for BillPayEngine.sweep_overdue."""

    LATE = datetime(2025, 7, 5, 9, 0, tzinfo=UTC)

    def test_flags_unpaid_bills_past_due(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)

        result = engine.sweep_overdue(self.LATE)

        assert [b.id for b in result.overdue_bills] == [bill.id]
        overdue = store.get_bill(bill.id)
        assert overdue.status is BillStatus.OVERDUE
        assert overdue.overdue_from is BillStatus.APPROVED
        assert overdue.priority is BillPriority.URGENT

    def test_overdue_bill_can_still_be_paid(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        store: InMemoryBillStore,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        engine.sweep_overdue(self.LATE)

        payment = engine.schedule_payment(bill.id)
        engine.execute_payment(payment.id)

        paid = store.get_bill(bill.id)
        assert paid.status is BillStatus.PAID
        assert paid.overdue_from is None

    def test_skips_bills_not_yet_due_and_paid_bills(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id)
        engine.execute_payment(payment.id)
        engine.create_bill_manually(
            OWNER, make_fields(due_date=date(2025, 8, 1)), "clerk"
        )

        result = engine.sweep_overdue(self.LATE)

        assert result.overdue_bills == []

    def test_skips_bills_with_payment_in_flight(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
        processor: FakeProcessor,
    ) -> None:
        processor.delay = 0.5
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id)
        with pytest.raises(ProcessorTimeout):
            engine.execute_payment(payment.id, timeout=0.05)

        result = engine.sweep_overdue(self.LATE)

        assert result.overdue_bills == []

    def test_sweep_is_idempotent(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
    ) -> None:
        _approved_bill(engine, extractor, document)

        engine.sweep_overdue(self.LATE)
        second = engine.sweep_overdue(self.LATE)

        assert second.overdue_bills == []


class TestAttention:
    """Tests for bills_requiring_attention and dispute_bill."""

    def test_report_groups_bills(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
    ) -> None:
        today = date(2025, 6, 10)
        scheduled = _approved_bill(engine, extractor, document)
        engine.schedule_payment(scheduled.id, scheduled_date=today)

        extractor.fields = make_fields(confidence=0.2)
        pending = engine.ingest_document(document, OWNER, "clerk").bill

        disputed = engine.create_bill_manually(OWNER, make_fields(), "clerk").bill
        engine.dispute_bill(disputed.id, "clerk", "duplicate invoice")

        report = engine.bills_requiring_attention(OWNER, today)

        assert [b.id for b in report.scheduled_today] == [scheduled.id]
        assert [b.id for b in report.pending_approval] == [pending.id]
        assert [b.id for b in report.disputed] == [disputed.id]
        assert report.overdue == []
        assert report.total == 3

    def test_other_owner_is_empty(self, engine: BillPayEngine) -> None:
        engine.create_bill_manually(OWNER, make_fields(), "clerk")
        assert engine.bills_requiring_attention("owner-2").total == 0

    def test_dispute_requires_reason(self, engine: BillPayEngine) -> None:
        bill = engine.create_bill_manually(OWNER, make_fields(), "clerk").bill

        with pytest.raises(ValidationError, match="reason"):
            engine.dispute_bill(bill.id, "clerk", "   ")

    def test_paid_bill_cannot_be_disputed(
        self,
        engine: BillPayEngine,
        extractor: FakeExtractor,
        document: SourceDocument,
    ) -> None:
        bill = _approved_bill(engine, extractor, document)
        payment = engine.schedule_payment(bill.id)
        engine.execute_payment(payment.id)

        with pytest.raises(StateConflict):
            engine.dispute_bill(bill.id, "clerk", "wrong amount")
