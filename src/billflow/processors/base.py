"""Payment processor protocol."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import NAMESPACE_URL, uuid5

if TYPE_CHECKING:
    from datetime import date
    from decimal import Decimal
    from uuid import UUID

    from billflow.models import PaymentMethod, PaymentStatus, Vendor

_TOKEN_NAMESPACE = uuid5(NAMESPACE_URL, "billflow:payments")


@dataclass(frozen=True)
class PaymentRequest:
    """What a processor needs to move funds for one payment."""

    amount: Decimal
    currency: str
    vendor: Vendor
    method: PaymentMethod
    bill_reference: str
    idempotency_token: str


@dataclass(frozen=True)
class ProcessorResult:
    """A processor's answer for one payment."""

    reference: str | None
    status: PaymentStatus
    fee: Decimal | None = None
    estimated_delivery: date | None = None
    error: str | None = None


@runtime_checkable
class PaymentProcessor(Protocol):
    """Protocol for payment processor adapters."""

    def process_payment(self, request: PaymentRequest) -> ProcessorResult: ...

    def fetch_status(self, idempotency_token: str) -> ProcessorResult: ...


def idempotency_token(bill_id: UUID, payment_method_id: UUID, payment_id: UUID) -> str:
    """Deterministic processor token for one payment attempt chain.

    Retries of the same payment reuse the token; a payment scheduled
    after a failure gets a new one.
    """
    return str(uuid5(_TOKEN_NAMESPACE, f"{bill_id}:{payment_method_id}:{payment_id}"))
