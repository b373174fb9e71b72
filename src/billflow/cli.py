"""CLI entry point for billflow."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import UUID

import click

from billflow.errors import BillPayError
from billflow.models import Decision, DocumentType, SourceDocument

if TYPE_CHECKING:
    from billflow.models import Bill
    from billflow.orchestrator import BillPayEngine


def _build_engine() -> BillPayEngine:
    from billflow.approvals import RoleTableAuthorizer
    from billflow.audit import LoggingAuditSink
    from billflow.config import (
        get_approver_roles,
        get_document_store_path,
        get_gateway_config,
        get_policy,
    )
    from billflow.db import PostgresBillStore
    from billflow.extraction import AgentExtractor
    from billflow.orchestrator import BillPayEngine
    from billflow.processors.gateway import build_processors
    from billflow.store import LocalDocumentStore

    policy = get_policy()
    return BillPayEngine(
        store=PostgresBillStore(),
        extractor=AgentExtractor(),
        authorizer=RoleTableAuthorizer(get_approver_roles()),
        processors=build_processors(
            get_gateway_config(), timeout=policy.processor_timeout
        ),
        audit=LoggingAuditSink(),
        documents=LocalDocumentStore(get_document_store_path()),
        policy=policy,
    )


def _describe(bill: Bill) -> str:
    return (
        f"{bill.bill_number}  {bill.status.value:<16} "
        f"{bill.total_amount:>12} {bill.currency}  due {bill.due_date or '-'}"
    )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Billflow: from uploaded bill to reconciled payment."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
def init_db() -> None:
    """Create the database schema."""
    from billflow.db import get_connection, init_schema

    with get_connection() as conn:
        init_schema(conn)
    click.echo("Schema ready.")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", required=True, help="Owning user id.")
@click.option("--actor", required=True, help="User performing the upload.")
@click.option(
    "--type",
    "document_type",
    type=click.Choice([t.value for t in DocumentType]),
    default=DocumentType.AUTO.value,
    show_default=True,
)
def ingest(path: Path, owner: str, actor: str, document_type: str) -> None:
    """Create a bill from a document."""
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    document = SourceDocument(
        filename=path.name, content_type=content_type, data=path.read_bytes()
    )
    engine = _build_engine()
    try:
        result = engine.ingest_document(
            document, owner, actor, DocumentType(document_type)
        )
    except BillPayError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        engine.close()

    click.echo(_describe(result.bill))
    if result.vendor is not None:
        click.echo(f"Vendor: {result.vendor.name} ({result.vendor.status.value})")
    if result.approval is not None:
        click.echo(
            f"Approval {result.approval.id}: {result.approval.total_steps} step(s)"
        )
    if result.payment is not None:
        click.echo(f"Payment {result.payment.id} scheduled for {result.payment.amount}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)


@cli.command()
@click.argument("approval_id", type=click.UUID)
@click.option("--actor", required=True, help="Approver user id.")
@click.option(
    "--step", "step_order", required=True, type=int, help="Order of the pending step."
)
@click.option("--reject", is_flag=True, help="Reject instead of approving.")
@click.option("--notes", default=None)
def decide(
    approval_id: UUID, actor: str, step_order: int, reject: bool, notes: str | None
) -> None:
    """Approve or reject the pending step of an approval."""
    decision = Decision.REJECT if reject else Decision.APPROVE
    engine = _build_engine()
    try:
        approval = engine.decide_approval(
            approval_id, actor, decision, step_order, notes=notes
        )
    except BillPayError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        engine.close()
    click.echo(
        f"Approval {approval.id}: {approval.status.value} "
        f"(step {approval.current_step}/{approval.total_steps})"
    )


@cli.command("sweep-overdue")
def sweep_overdue() -> None:
    """Flag overdue bills and escalate stale approval steps."""
    engine = _build_engine()
    try:
        result = engine.sweep_overdue()
    except BillPayError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        engine.close()
    for bill in result.overdue_bills:
        click.echo(f"Overdue: {_describe(bill)}")
    click.echo(
        f"{len(result.overdue_bills)} bill(s) flagged, "
        f"{len(result.escalated_approvals)} approval(s) escalated."
    )


@cli.command()
@click.argument("payment_id", type=click.UUID)
def reconcile(payment_id: UUID) -> None:
    """Confirm a payment's status with its processor."""
    engine = _build_engine()
    try:
        payment = engine.reconcile_payment(payment_id)
    except BillPayError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        engine.close()
    click.echo(
        f"Payment {payment.id}: {payment.status.value}"
        f"{' (reconciled)' if payment.reconciled else ''}"
    )


@cli.command()
@click.option("--owner", required=True, help="Owning user id.")
def attention(owner: str) -> None:
    """List bills that need action today."""
    engine = _build_engine()
    try:
        report = engine.bills_requiring_attention(owner)
    finally:
        engine.close()
    if not report.total:
        click.echo("Nothing needs attention.")
        return
    sections = (
        ("Overdue", report.overdue),
        ("Pending approval", report.pending_approval),
        ("Scheduled today", report.scheduled_today),
        ("Disputed", report.disputed),
    )
    for title, bills in sections:
        if not bills:
            continue
        click.echo(f"{title}:")
        for bill in bills:
            click.echo(f"  {_describe(bill)}")
