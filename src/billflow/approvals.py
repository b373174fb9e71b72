"""Approval engine: workflow selection, step decisions and escalation."""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from billflow.audit import emit
from billflow.errors import NoPendingStep, NotAuthorized, StateConflict
from billflow.models import (
    AmountGateStep,
    ApprovalHistoryEntry,
    ApprovalStatus,
    ApprovalStepState,
    ApprovalWorkflow,
    BillApproval,
    Decision,
    EscalationStep,
    RiskLevel,
    RoleApprovalStep,
    StepStatus,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from datetime import datetime
    from uuid import UUID

    from billflow.audit import AuditSink
    from billflow.config import EnginePolicy
    from billflow.models import Bill, Vendor
    from billflow.repository import BillStore

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_NAME = "Default approval"


@runtime_checkable
class Authorizer(Protocol):
    """Decides whether an actor holds an approver role."""

    def is_authorized_for_role(
        self, actor_id: str, role: str, organization_id: str
    ) -> bool: ...


class RoleTableAuthorizer:
    """Authorizer backed by a static actor -> roles table.

    Roles are not scoped per organization.
    """

    def __init__(self, roles: Mapping[str, Iterable[str]]) -> None:
        self.roles = {actor: frozenset(names) for actor, names in roles.items()}

    def is_authorized_for_role(
        self, actor_id: str, role: str, organization_id: str
    ) -> bool:
        return role in self.roles.get(actor_id, frozenset())


class ApprovalEngine:
    """Builds and advances BillApproval instances."""

    def __init__(
        self,
        store: BillStore,
        authorizer: Authorizer,
        audit: AuditSink,
        policy: EnginePolicy,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.authorizer = authorizer
        self.audit = audit
        self.policy = policy
        self.clock = clock

    def select_workflow(self, bill: Bill, vendor: Vendor | None) -> ApprovalWorkflow | None:
        """Pick the owner's workflow for ``bill``, or None for the default.

        Highest amount threshold not exceeding the bill total wins;
        category-specific workflows beat generic ones at equal threshold.
        """
        category = vendor.category if vendor is not None else None
        candidates = [
            w
            for w in self.store.list_workflows(bill.owner_id)
            if w.active
            and w.matches_category(category)
            and (
                w.conditions.amount_threshold is None
                or w.conditions.amount_threshold <= bill.total_amount
            )
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda w: (
                w.conditions.amount_threshold or Decimal("0"),
                bool(w.conditions.vendor_categories),
                w.created_at,
            ),
        )

    def default_workflow(self, owner_id: str) -> ApprovalWorkflow:
        return ApprovalWorkflow(
            owner_id=owner_id,
            name=DEFAULT_WORKFLOW_NAME,
            steps=[
                RoleApprovalStep(
                    id="manager_approval",
                    name="Manager approval",
                    order=1,
                    role=self.policy.default_approver_role,
                )
            ],
        )

    def build_approval(
        self,
        bill: Bill,
        vendor: Vendor | None,
        initiated_by: str,
        warnings: Iterable[str] = (),
    ) -> BillApproval:
        """Materialize and store the approval run for ``bill``."""
        workflow = self.select_workflow(bill, vendor)
        workflow_id = workflow.id if workflow is not None else None
        if workflow is None:
            workflow = self.default_workflow(bill.owner_id)

        now = self.clock()
        fallback_role = self.policy.fallback_approver_role
        escalation_hours = self.policy.approval_step_hours
        history = [
            ApprovalHistoryEntry(
                at=now,
                actor_id=initiated_by,
                action="created",
                notes=f"workflow {workflow.name}",
            )
        ]
        steps: list[ApprovalStepState] = []

        for step in sorted(workflow.steps, key=lambda s: s.order):
            if isinstance(step, EscalationStep):
                fallback_role = step.fallback_role
                escalation_hours = step.after_hours
            elif isinstance(step, AmountGateStep):
                if bill.total_amount < step.min_amount:
                    history.append(
                        ApprovalHistoryEntry(
                            at=now,
                            actor_id=None,
                            action="skipped",
                            notes=f"{step.name}: total below {step.min_amount}",
                        )
                    )
                    continue
                steps.append(_step_state(step.id, step.name, step.kind, step.role))
            elif isinstance(step, RoleApprovalStep):
                steps.append(_step_state(step.id, step.name, step.kind, step.role))
            else:
                msg = f"unknown workflow step kind: {step!r}"
                raise TypeError(msg)

        present_roles = {s.role for s in steps}
        for role in workflow.conditions.required_approver_roles:
            if role not in present_roles:
                steps.append(
                    _step_state(f"required_{role}", f"{role} approval", "role_approval", role)
                )
                present_roles.add(role)

        if not steps:
            role = self.policy.default_approver_role
            steps.append(
                _step_state("manager_approval", "Manager approval", "role_approval", role)
            )

        steps = [
            s.model_copy(update={"order": index})
            for index, s in enumerate(steps, start=1)
        ]
        steps[0] = steps[0].model_copy(
            update={
                "status": StepStatus.PENDING,
                "due_at": now + timedelta(hours=escalation_hours),
            }
        )

        approval = BillApproval(
            bill_id=bill.id,
            owner_id=bill.owner_id,
            workflow_id=workflow_id,
            workflow_name=workflow.name,
            total_steps=len(steps),
            initiated_by=initiated_by,
            initiated_at=now,
            steps=steps,
            fallback_role=fallback_role,
            escalation_hours=escalation_hours,
            warnings=list(warnings),
            history=history,
        )
        self.store.add_approval(approval)
        logger.info(
            "Approval %s for bill %s: %d step(s) via %s",
            approval.id,
            bill.id,
            approval.total_steps,
            workflow.name,
        )
        emit(
            self.audit,
            "approval_created",
            entity_type="approval",
            entity_id=approval.id,
            owner_id=bill.owner_id,
            actor_id=initiated_by,
            description=f"Approval started for bill {bill.bill_number}",
            bill_id=str(bill.id),
            warnings=approval.warnings,
        )
        return approval

    def decide(
        self,
        approval_id: UUID,
        actor_id: str,
        decision: Decision,
        step_order: int,
        notes: str | None = None,
    ) -> BillApproval:
        """Apply one approver decision to the current step.

        ``step_order`` names the step the caller believes is pending; a
        decision on any other step fails with NoPendingStep, so a retried
        or stale decision can never land on the step after it. The stored
        approval is replaced in one versioned write, so a concurrent
        decision on the same step fails instead of overwriting.
        """
        with self.store.lock(f"approval:{approval_id}"):
            approval = self.store.get_approval(approval_id)
            if not approval.is_active:
                msg = f"approval {approval.id} is already {approval.status}"
                raise StateConflict(msg)

            step = approval.pending_step()
            if step is None:
                msg = f"approval {approval.id} has no pending step"
                raise NoPendingStep(msg)
            if step_order != step.order:
                msg = f"step {step_order} is not pending; step {step.order} is"
                raise NoPendingStep(msg)

            if not self.authorizer.is_authorized_for_role(
                actor_id, step.role, approval.owner_id
            ):
                msg = f"{actor_id} is not authorized for role {step.role}"
                raise NotAuthorized(msg)

            updated = self._apply_decision(approval, step, actor_id, decision, notes)
            saved = self.store.save_approval(updated, expected_version=approval.version)

        logger.info(
            "Approval %s step %d %s by %s -> %s",
            saved.id,
            step.order,
            decision.value,
            actor_id,
            saved.status,
        )
        emit(
            self.audit,
            "approval_decided",
            entity_type="approval",
            entity_id=saved.id,
            owner_id=saved.owner_id,
            actor_id=actor_id,
            description=f"Step {step.order} {decision.value}d",
            risk=RiskLevel.LOW if decision is Decision.APPROVE else RiskLevel.MEDIUM,
            bill_id=str(saved.bill_id),
            status=saved.status.value,
            notes=notes,
        )
        return saved

    def escalate_overdue(self, now: datetime | None = None) -> list[BillApproval]:
        """Route pending steps past their due time to the fallback role."""
        now = now or self.clock()
        escalated: list[BillApproval] = []
        for candidate in self.store.list_approvals(
            [ApprovalStatus.PENDING, ApprovalStatus.ESCALATED]
        ):
            if not _needs_escalation(candidate, now):
                continue
            with self.store.lock(f"approval:{candidate.id}"):
                approval = self.store.get_approval(candidate.id)
                if not _needs_escalation(approval, now):
                    continue
                updated = self._escalate(approval, now)
                saved = self.store.save_approval(
                    updated, expected_version=approval.version
                )
            escalated.append(saved)
            logger.info(
                "Escalated approval %s step %d to %s",
                saved.id,
                saved.current_step,
                saved.fallback_role,
            )
            emit(
                self.audit,
                "approval_escalated",
                entity_type="approval",
                entity_id=saved.id,
                owner_id=saved.owner_id,
                description=f"Step {saved.current_step} escalated to {saved.fallback_role}",
                risk=RiskLevel.MEDIUM,
                bill_id=str(saved.bill_id),
            )
        return escalated

    def _apply_decision(
        self,
        approval: BillApproval,
        step: ApprovalStepState,
        actor_id: str,
        decision: Decision,
        notes: str | None,
    ) -> BillApproval:
        now = self.clock()
        decided_status = (
            StepStatus.APPROVED if decision is Decision.APPROVE else StepStatus.REJECTED
        )
        steps = [
            s.model_copy(
                update={
                    "status": decided_status,
                    "decided_by": actor_id,
                    "decided_at": now,
                    "notes": notes,
                }
            )
            if s.order == step.order
            else s
            for s in approval.steps
        ]
        history = [
            *approval.history,
            ApprovalHistoryEntry(
                at=now,
                actor_id=actor_id,
                action=decision.value,
                step_order=step.order,
                notes=notes,
            ),
        ]

        if decision is Decision.REJECT:
            return approval.evolve(
                steps=steps,
                history=history,
                status=ApprovalStatus.REJECTED,
                rejected_at=now,
                rejected_by=actor_id,
                notes=notes,
            )

        if step.order == approval.total_steps:
            return approval.evolve(
                steps=steps,
                history=history,
                status=ApprovalStatus.APPROVED,
                approved_at=now,
                approved_by=actor_id,
                notes=notes,
            )

        next_index = step.order  # orders are 1-based
        steps[next_index] = steps[next_index].model_copy(
            update={
                "status": StepStatus.PENDING,
                "due_at": now + timedelta(hours=approval.escalation_hours),
            }
        )
        return approval.evolve(
            steps=steps,
            history=history,
            current_step=step.order + 1,
            status=ApprovalStatus.PENDING,
        )

    def _escalate(self, approval: BillApproval, now: datetime) -> BillApproval:
        step = approval.pending_step()
        if step is None:
            msg = f"approval {approval.id} has no pending step to escalate"
            raise NoPendingStep(msg)
        steps = [
            s.model_copy(update={"role": approval.fallback_role, "escalated_at": now})
            if s.order == step.order
            else s
            for s in approval.steps
        ]
        history = [
            *approval.history,
            ApprovalHistoryEntry(
                at=now,
                actor_id=None,
                action="escalated",
                step_order=step.order,
                notes=f"{step.role} -> {approval.fallback_role}",
            ),
        ]
        return approval.evolve(
            steps=steps, history=history, status=ApprovalStatus.ESCALATED
        )


def _step_state(step_id: str, name: str, kind: str, role: str) -> ApprovalStepState:
    return ApprovalStepState(
        step_id=step_id,
        name=name,
        order=1,
        kind=kind,
        role=role,
        original_role=role,
    )


def _needs_escalation(approval: BillApproval, now: datetime) -> bool:
    if not approval.is_active:
        return False
    step = approval.pending_step()
    return (
        step is not None
        and step.escalated_at is None
        and step.due_at is not None
        and step.due_at <= now
    )
