"""Domain and extraction models for the bill-pay engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal, Self
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class DocumentType(StrEnum):
    INVOICE = "invoice"
    RECEIPT = "receipt"
    BILL = "bill"
    STATEMENT = "statement"
    AUTO = "auto"


class BillStatus(StrEnum):
    DRAFT = "draft"
    RECEIVED = "received"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PAID = "paid"
    OVERDUE = "overdue"
    DISPUTED = "disputed"
    REJECTED = "rejected"


class BillPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class BillCategory(StrEnum):
    OFFICE_SUPPLIES = "office_supplies"
    SOFTWARE = "software"
    MARKETING = "marketing"
    UTILITIES = "utilities"
    PROFESSIONAL_SERVICES = "professional_services"
    TRAVEL = "travel"
    OTHER = "other"


class VendorStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentMethodType(StrEnum):
    ACH = "ach"
    CARD = "card"
    WIRE = "wire"
    WALLET = "wallet"


class PaymentMethodStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class StepStatus(StrEnum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class _Entity(BaseModel):
    """Base for stored entities; updates go through :meth:`evolve`."""

    def evolve(self, **changes: Any) -> Self:
        """Return a re-validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return self.model_validate(data)


# --- Extraction ---------------------------------------------------------------


@dataclass
class SourceDocument:
    """A raw uploaded document."""

    filename: str
    content_type: str
    data: bytes


class LineItem(BaseModel):
    """One line of an invoice."""

    description: str
    amount: Decimal = Field(ge=0)
    quantity: Decimal | None = None
    unit_price: Decimal | None = None


class ExtractedFields(BaseModel):
    """Structured fields guessed from a document by the extraction provider."""

    vendor_name: str | None = None
    vendor_email: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    issue_date: date | None = None
    due_date: date | None = None
    invoice_number: str | None = None
    description: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    raw_text: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def is_usable(self) -> bool:
        """Whether the fields carry enough to create a bill."""
        return self.amount is not None and bool(self.vendor_name)


class SourceFile(BaseModel):
    """Descriptor of the stored source document."""

    filename: str
    content_type: str
    size: int = Field(ge=0)
    sha256: str
    storage_path: str | None = None


class ExtractionMetadata(BaseModel):
    """How a bill's data was obtained."""

    document_type: DocumentType = DocumentType.AUTO
    raw_text: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    low_confidence: bool = False
    error: str | None = None
    source_file: SourceFile | None = None


# --- Bills ----------------------------------------------------------------------


class Bill(_Entity):
    """One financial obligation owed to a vendor."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(min_length=1)
    vendor_id: UUID | None = None
    bill_number: str = Field(min_length=1)
    vendor_bill_number: str | None = None
    amount: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    issue_date: date
    due_date: date | None = None
    paid_date: date | None = None
    status: BillStatus = BillStatus.RECEIVED
    overdue_from: BillStatus | None = None
    priority: BillPriority = BillPriority.MEDIUM
    category: BillCategory = BillCategory.OTHER
    description: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    approval_required: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    dispute_reason: str | None = None
    extraction: ExtractionMetadata | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_amount(self) -> Decimal:
        return self.amount + self.tax_amount - self.discount_amount

    @property
    def effective_status(self) -> BillStatus:
        """The status transitions are evaluated against.

        An overdue bill keeps moving through its lifecycle from the
        status it had when the sweep flagged it.
        """
        if self.status is BillStatus.OVERDUE and self.overdue_from is not None:
            return self.overdue_from
        return self.status

    @model_validator(mode="after")
    def _check_invariants(self) -> Bill:
        if self.total_amount < 0:
            msg = "discount_amount cannot exceed amount plus tax_amount"
            raise ValueError(msg)
        if (self.status is BillStatus.PAID) != (self.paid_date is not None):
            msg = "paid_date must be set if and only if status is paid"
            raise ValueError(msg)
        if (self.status is BillStatus.OVERDUE) != (self.overdue_from is not None):
            msg = "overdue_from must be set if and only if status is overdue"
            raise ValueError(msg)
        return self


# --- Vendors --------------------------------------------------------------------


class Address(BaseModel):
    street: str
    city: str
    state: str | None = None
    zip_code: str | None = None
    country: str = "US"


class PaymentMethod(BaseModel):
    """A way of paying a vendor."""

    id: UUID = Field(default_factory=uuid4)
    type: PaymentMethodType
    details: dict[str, str] = Field(default_factory=dict)
    is_default: bool = False
    status: PaymentMethodStatus = PaymentMethodStatus.ACTIVE


class Vendor(_Entity):
    """A payee identity owned by one user."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    address: Address | None = None
    tax_id: str | None = None
    category: str | None = None
    payment_terms_days: int | None = Field(default=None, ge=0)
    approval_required: bool = False
    approval_threshold: Decimal | None = Field(default=None, ge=0)
    payment_methods: list[PaymentMethod] = Field(default_factory=list)
    auto_pay: bool = False
    status: VendorStatus = VendorStatus.PENDING
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _single_default_method(self) -> Vendor:
        defaults = [pm for pm in self.payment_methods if pm.is_default]
        if len(defaults) > 1:
            msg = "at most one payment method may be marked default"
            raise ValueError(msg)
        return self

    def find_payment_method(self, method_id: UUID) -> PaymentMethod | None:
        for method in self.payment_methods:
            if method.id == method_id:
                return method
        return None

    def default_payment_method(self) -> PaymentMethod | None:
        for method in self.payment_methods:
            if method.is_default:
                return method
        return None


# --- Approval workflows ---------------------------------------------------------


class RoleApprovalStep(BaseModel):
    """An approver holding ``role`` must decide."""

    kind: Literal["role_approval"] = "role_approval"
    id: str
    name: str
    order: int = Field(ge=1)
    role: str


class AmountGateStep(BaseModel):
    """A role approval only required from ``min_amount`` upwards."""

    kind: Literal["amount_gate"] = "amount_gate"
    id: str
    name: str
    order: int = Field(ge=1)
    role: str
    min_amount: Decimal = Field(ge=0)


class EscalationStep(BaseModel):
    """Fallback routing for approval steps left pending too long."""

    kind: Literal["escalation"] = "escalation"
    id: str
    name: str
    order: int = Field(ge=1)
    fallback_role: str
    after_hours: int = Field(ge=1)


WorkflowStep = Annotated[
    RoleApprovalStep | AmountGateStep | EscalationStep,
    Field(discriminator="kind"),
]


class WorkflowConditions(BaseModel):
    """When a workflow applies."""

    amount_threshold: Decimal | None = Field(default=None, ge=0)
    vendor_categories: list[str] = Field(default_factory=list)
    required_approver_roles: list[str] = Field(default_factory=list)


class ApprovalWorkflow(_Entity):
    """A reusable approval rule set."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(min_length=1)
    name: str
    description: str | None = None
    conditions: WorkflowConditions = Field(default_factory=WorkflowConditions)
    steps: list[WorkflowStep] = Field(min_length=1)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _unique_step_order(self) -> ApprovalWorkflow:
        orders = [step.order for step in self.steps]
        if len(orders) != len(set(orders)):
            msg = "workflow step orders must be unique"
            raise ValueError(msg)
        if not any(not isinstance(step, EscalationStep) for step in self.steps):
            msg = "workflow needs at least one approval step"
            raise ValueError(msg)
        return self

    def matches_category(self, category: str | None) -> bool:
        if not self.conditions.vendor_categories:
            return True
        return category is not None and category in self.conditions.vendor_categories


class ApprovalStepState(BaseModel):
    """Per-bill state of one materialized approval step."""

    step_id: str
    name: str
    order: int = Field(ge=1)
    kind: str
    role: str
    original_role: str
    status: StepStatus = StepStatus.NOT_STARTED
    due_at: datetime | None = None
    escalated_at: datetime | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    notes: str | None = None


class ApprovalHistoryEntry(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    actor_id: str | None
    action: str
    step_order: int | None = None
    notes: str | None = None


class BillApproval(_Entity):
    """One workflow instance bound to one bill."""

    id: UUID = Field(default_factory=uuid4)
    bill_id: UUID
    owner_id: str
    workflow_id: UUID | None = None
    workflow_name: str
    current_step: int = Field(default=1, ge=1)
    total_steps: int = Field(ge=1)
    status: ApprovalStatus = ApprovalStatus.PENDING
    initiated_by: str
    initiated_at: datetime = Field(default_factory=utcnow)
    steps: list[ApprovalStepState]
    fallback_role: str
    escalation_hours: int = Field(ge=1)
    approved_at: datetime | None = None
    approved_by: str | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None
    notes: str | None = None
    warnings: list[str] = Field(default_factory=list)
    history: list[ApprovalHistoryEntry] = Field(default_factory=list)
    version: int = 0

    @model_validator(mode="after")
    def _check_steps(self) -> BillApproval:
        if self.total_steps != len(self.steps):
            msg = "total_steps must equal the number of steps"
            raise ValueError(msg)
        if self.current_step > self.total_steps:
            msg = "current_step cannot exceed total_steps"
            raise ValueError(msg)
        pending = [s for s in self.steps if s.status is StepStatus.PENDING]
        if self.is_active and len(pending) != 1:
            msg = "an active approval has exactly one pending step"
            raise ValueError(msg)
        if not self.is_active and pending:
            msg = "a finalized approval has no pending step"
            raise ValueError(msg)
        return self

    @property
    def is_active(self) -> bool:
        return self.status in (ApprovalStatus.PENDING, ApprovalStatus.ESCALATED)

    def pending_step(self) -> ApprovalStepState | None:
        for step in self.steps:
            if step.status is StepStatus.PENDING:
                return step
        return None


# --- Payments -------------------------------------------------------------------


class Payment(_Entity):
    """A record of funds movement for a bill."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str
    bill_id: UUID
    vendor_id: UUID
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    payment_method_id: UUID
    payment_method: PaymentMethodType
    idempotency_key: str
    processor_reference: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    fee: Decimal | None = None
    scheduled_date: date
    processed_at: datetime | None = None
    estimated_delivery: date | None = None
    attempts: int = 0
    last_error: str | None = None
    reconciled: bool = False
    reconciled_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


# --- Audit ----------------------------------------------------------------------


class AuditEvent(BaseModel):
    """One state transition reported to the audit sink."""

    event_type: str
    entity_type: str
    entity_id: str
    owner_id: str | None = None
    actor_id: str | None = None
    risk: RiskLevel = RiskLevel.LOW
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)
