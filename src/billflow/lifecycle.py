"""Bill state machine.

    draft -> received -> pending_approval -> approved -> paid
                      \\-> approved          pending_approval -> rejected

Any state before ``paid`` may move to ``disputed``. Unpaid bills past
their due date are flagged ``overdue`` by the sweep; an overdue bill
keeps its underlying status in ``overdue_from`` and transitions are
checked against that, so the flag never blocks the lifecycle.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from billflow.errors import StateConflict, ValidationError
from billflow.models import Bill, BillPriority, BillStatus, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import date
    from decimal import Decimal

    from billflow.config import EnginePolicy
    from billflow.models import ApprovalWorkflow, Vendor

logger = logging.getLogger(__name__)

_PRE_PAID = frozenset(
    {
        BillStatus.DRAFT,
        BillStatus.RECEIVED,
        BillStatus.PENDING_APPROVAL,
        BillStatus.APPROVED,
    }
)

TRANSITIONS: dict[BillStatus, frozenset[BillStatus]] = {
    BillStatus.DRAFT: frozenset({BillStatus.RECEIVED, BillStatus.DISPUTED}),
    BillStatus.RECEIVED: frozenset(
        {BillStatus.PENDING_APPROVAL, BillStatus.APPROVED, BillStatus.DISPUTED}
    ),
    BillStatus.PENDING_APPROVAL: frozenset(
        {BillStatus.APPROVED, BillStatus.REJECTED, BillStatus.DISPUTED}
    ),
    BillStatus.APPROVED: frozenset({BillStatus.PAID, BillStatus.DISPUTED}),
    BillStatus.PAID: frozenset(),
    BillStatus.REJECTED: frozenset(),
    BillStatus.DISPUTED: frozenset(),
}

TERMINAL = frozenset({BillStatus.PAID, BillStatus.REJECTED})


def can_transition(bill: Bill, target: BillStatus) -> bool:
    """Whether ``bill`` may move to ``target``."""
    if target is BillStatus.OVERDUE:
        return can_flag_overdue(bill)
    return target in TRANSITIONS[bill.effective_status]


def can_flag_overdue(bill: Bill) -> bool:
    return bill.status in _PRE_PAID


def transition(bill: Bill, target: BillStatus, **changes: Any) -> Bill:
    """Return ``bill`` moved to ``target`` with ``changes`` applied.

    Raises StateConflict for edges the state machine does not define;
    the input bill is never modified.
    """
    if not can_transition(bill, target):
        msg = f"bill {bill.id} cannot move from {bill.status} to {target}"
        raise StateConflict(msg)

    now = utcnow()
    update: dict[str, Any] = {"status": target, "updated_at": now}
    if target is BillStatus.OVERDUE:
        update["overdue_from"] = bill.status
        update["priority"] = BillPriority.URGENT
    else:
        update["overdue_from"] = None
    if target is BillStatus.PAID:
        update.setdefault("paid_date", now.date())
    update.update(changes)

    logger.debug("Bill %s: %s -> %s", bill.id, bill.status, target)
    return apply_changes(bill, **update)


def apply_changes(bill: Bill, **changes: Any) -> Bill:
    """Re-validate ``bill`` with ``changes``, mapping failures to ValidationError."""
    try:
        return bill.evolve(**changes)
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


def approval_threshold(vendor: Vendor, policy: EnginePolicy) -> Decimal:
    if vendor.approval_threshold is not None:
        return vendor.approval_threshold
    return policy.default_approval_threshold


def default_due_date(
    issue_date: date, vendor: Vendor | None, policy: EnginePolicy
) -> date:
    """Return the due date for a bill that states none.

    Vendor payment terms take precedence over ``policy.default_due_days``.
    """
    days = policy.default_due_days
    if vendor is not None and vendor.payment_terms_days is not None:
        days = vendor.payment_terms_days
    return issue_date + timedelta(days=days)


def requires_approval(
    bill: Bill,
    vendor: Vendor | None,
    workflows: Iterable[ApprovalWorkflow],
    policy: EnginePolicy,
) -> bool:
    """Routing guard for ``received``.

    True sends the bill to ``pending_approval``, False auto-approves it.
    """
    if bill.approval_required:
        return True
    if vendor is not None and vendor.approval_required:
        if bill.total_amount >= approval_threshold(vendor, policy):
            return True
    category = vendor.category if vendor is not None else None
    for workflow in workflows:
        threshold = workflow.conditions.amount_threshold
        if not workflow.active or threshold is None:
            continue
        if bill.total_amount >= threshold and workflow.matches_category(category):
            return True
    return False


def is_overdue(bill: Bill, today: date) -> bool:
    return (
        can_flag_overdue(bill)
        and bill.due_date is not None
        and bill.due_date < today
    )
