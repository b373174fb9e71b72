"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from billflow.approvals import RoleTableAuthorizer
from billflow.audit import MemoryAuditSink
from billflow.config import EnginePolicy
from billflow.errors import ExtractionFailure
from billflow.models import (
    ExtractedFields,
    PaymentMethod,
    PaymentMethodType,
    PaymentStatus,
    SourceDocument,
    Vendor,
    VendorStatus,
)
from billflow.orchestrator import BillPayEngine
from billflow.processors.base import PaymentRequest, ProcessorResult
from billflow.repository import InMemoryBillStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from billflow.models import DocumentType

OWNER = "owner-1"

APPROVERS = {
    "maria": ["manager"],
    "omar": ["manager"],
    "fiona": ["finance_admin"],
    "carol": ["manager", "finance_admin", "cfo"],
}


class FakeProcessor:
    """Scriptable PaymentProcessor that records every call.

    ``results`` is consumed in order; an Exception entry is raised. Once
    empty, calls complete successfully.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.results: list[ProcessorResult | Exception] = []
        self.status_result: ProcessorResult | None = None
        self.calls: list[PaymentRequest] = []
        self.status_calls: list[str] = []
        self.delay = delay
        self._lock = threading.Lock()

    def process_payment(self, request: PaymentRequest) -> ProcessorResult:
        with self._lock:
            self.calls.append(request)
            outcome = self.results.pop(0) if self.results else None
            number = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return ProcessorResult(
            reference=f"ref-{number}",
            status=PaymentStatus.COMPLETED,
            fee=Decimal("0.25"),
            estimated_delivery=date(2025, 7, 4),
        )

    def fetch_status(self, idempotency_token: str) -> ProcessorResult:
        self.status_calls.append(idempotency_token)
        if self.status_result is not None:
            return self.status_result
        return ProcessorResult(reference="ref-settled", status=PaymentStatus.COMPLETED)


class FakeExtractor:
    """Extractor returning preset fields, or failing when none are set."""

    def __init__(self) -> None:
        self.fields: ExtractedFields | None = None
        self.calls: list[tuple[str, DocumentType, float]] = []

    def extract(
        self,
        document: SourceDocument,
        document_type: DocumentType,
        *,
        timeout: float,
    ) -> ExtractedFields:
        self.calls.append((document.filename, document_type, timeout))
        if self.fields is None:
            msg = "provider returned nothing"
            raise ExtractionFailure(msg)
        return self.fields


def make_fields(**overrides: Any) -> ExtractedFields:
    values: dict[str, Any] = {
        "vendor_name": "Acme Office Supply",
        "vendor_email": "billing@acme.example",
        "amount": Decimal("200.00"),
        "currency": "USD",
        "issue_date": date(2025, 6, 1),
        "due_date": date(2025, 7, 1),
        "invoice_number": "INV-1001",
        "description": "Printer paper and toner",
        "confidence": 0.95,
    }
    values.update(overrides)
    return ExtractedFields(**values)


def make_vendor(**overrides: Any) -> Vendor:
    values: dict[str, Any] = {
        "owner_id": OWNER,
        "name": "Acme Office Supply",
        "email": "billing@acme.example",
        "status": VendorStatus.ACTIVE,
        "payment_methods": [
            PaymentMethod(
                type=PaymentMethodType.ACH,
                details={"routing": "110000000", "account": "000123456789"},
                is_default=True,
            )
        ],
    }
    values.update(overrides)
    return Vendor(**values)


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    """Provide a temporary directory as the document store root."""
    root = tmp_path / "documents"
    root.mkdir()
    return root


@pytest.fixture
def policy() -> EnginePolicy:
    return EnginePolicy()


@pytest.fixture
def store() -> InMemoryBillStore:
    return InMemoryBillStore()


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def authorizer() -> RoleTableAuthorizer:
    return RoleTableAuthorizer(APPROVERS)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def document() -> SourceDocument:
    return SourceDocument(
        filename="invoice.pdf",
        content_type="application/pdf",
        data=b"%PDF-1.4 fake invoice",
    )


@pytest.fixture
def engine(
    store: InMemoryBillStore,
    extractor: FakeExtractor,
    authorizer: RoleTableAuthorizer,
    processor: FakeProcessor,
    audit: MemoryAuditSink,
    policy: EnginePolicy,
) -> Iterator[BillPayEngine]:
    """Engine wired to in-memory collaborators and an ACH fake processor."""
    bill_engine = BillPayEngine(
        store=store,
        extractor=extractor,
        authorizer=authorizer,
        processors={PaymentMethodType.ACH: processor},
        audit=audit,
        policy=policy,
    )
    yield bill_engine
    bill_engine.close()
