"""Error taxonomy for the bill-pay engine.

Every error crossing the public operation surface derives from
:class:`BillPayError` and carries a ``kind`` plus a human-readable message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from billflow.models import Payment


class BillPayError(Exception):
    """Base class for engine errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ValidationError(BillPayError):
    """Malformed input, raised before any mutation."""

    kind = "validation_error"


class NotFoundError(BillPayError):
    """Unknown bill, vendor, approval, workflow or payment id."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StateConflict(BillPayError):
    """Operation attempted against an entity not in the required state."""

    kind = "state_conflict"


class NoPendingStep(StateConflict):
    """Decision targets a step that is not the unique pending step."""

    kind = "no_pending_step"


class NotAuthorized(BillPayError):
    """Actor lacks the role required for the current approval step."""

    kind = "not_authorized"


class ExtractionFailure(BillPayError):
    """Document could not be parsed into usable fields."""

    kind = "extraction_failure"


class ProcessorError(BillPayError):
    """Payment provider rejected or timed out.

    ``payment`` is the last-known payment record, so callers can decide
    whether to retry or escalate.
    """

    kind = "processor_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        payment: Payment | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.payment = payment


class ProcessorTimeout(ProcessorError):
    """Processor call exceeded its deadline; outcome unknown."""

    kind = "processor_timeout"

    def __init__(self, message: str, *, payment: Payment | None = None) -> None:
        super().__init__(message, retryable=False, payment=payment)


class IdempotencyConflict(BillPayError):
    """A duplicate dispatch was short-circuited by the idempotency key.

    Raised by stores when the unique key is already held by an active
    payment; the dispatcher answers it with the existing record.
    """

    kind = "idempotency_conflict"

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"payment already active for key {idempotency_key}")
        self.idempotency_key = idempotency_key
