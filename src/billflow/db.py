"""PostgreSQL-backed bill store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import psycopg
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import BaseModel

from billflow.config import get_database_url
from billflow.errors import IdempotencyConflict, NotFoundError, StateConflict
from billflow.models import (
    ApprovalWorkflow,
    Bill,
    BillApproval,
    Payment,
    PaymentStatus,
    Vendor,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterator
    from uuid import UUID

    from billflow.models import ApprovalStatus, BillStatus

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS vendors (
    id uuid PRIMARY KEY,
    owner_id text NOT NULL,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS vendors_owner_idx ON vendors (owner_id);

CREATE TABLE IF NOT EXISTS bills (
    id uuid PRIMARY KEY,
    owner_id text NOT NULL,
    status text NOT NULL,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS bills_owner_status_idx ON bills (owner_id, status);

CREATE TABLE IF NOT EXISTS approval_workflows (
    id uuid PRIMARY KEY,
    owner_id text NOT NULL,
    data jsonb NOT NULL
);

CREATE TABLE IF NOT EXISTS bill_approvals (
    id uuid PRIMARY KEY,
    bill_id uuid NOT NULL REFERENCES bills (id),
    status text NOT NULL,
    version integer NOT NULL DEFAULT 0,
    initiated_at timestamptz NOT NULL,
    data jsonb NOT NULL
);
CREATE INDEX IF NOT EXISTS bill_approvals_bill_idx ON bill_approvals (bill_id);

CREATE TABLE IF NOT EXISTS payments (
    id uuid PRIMARY KEY,
    bill_id uuid NOT NULL REFERENCES bills (id),
    idempotency_key text NOT NULL,
    status text NOT NULL,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS payments_active_key_idx
    ON payments (idempotency_key) WHERE status <> 'failed';
"""


def get_connection() -> psycopg.Connection[dict[str, Any]]:
    """Create and return a new database connection."""
    return psycopg.connect(get_database_url(), row_factory=dict_row)


def init_schema(conn: psycopg.Connection[Any]) -> None:
    """Create tables and indexes if they do not exist."""
    with conn.transaction():
        conn.execute(SCHEMA)


class PostgresBillStore:
    """BillStore on PostgreSQL.

    Each entity is stored as a JSONB document next to the columns used
    for filtering. Idempotency of payments is backed by a unique partial
    index; ``lock`` uses session advisory locks.
    """

    def __init__(
        self,
        connect: Callable[[], psycopg.Connection[dict[str, Any]]] = get_connection,
    ) -> None:
        self._connect = connect

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._connect() as conn:
            conn.autocommit = True
            conn.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (key,))
            try:
                yield
            finally:
                conn.execute(
                    "SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (key,)
                )

    # Bills

    def add_bill(self, bill: Bill) -> Bill:
        self._execute(
            "INSERT INTO bills (id, owner_id, status, data) VALUES (%s, %s, %s, %s)",
            (bill.id, bill.owner_id, bill.status.value, _doc(bill)),
        )
        return bill

    def get_bill(self, bill_id: UUID) -> Bill:
        return self._get("SELECT data FROM bills WHERE id = %s", bill_id, Bill, "bill")

    def save_bill(self, bill: Bill) -> Bill:
        self._update(
            "UPDATE bills SET status = %s, data = %s, updated_at = now() WHERE id = %s",
            (bill.status.value, _doc(bill), bill.id),
            "bill",
            bill.id,
        )
        return bill

    def list_bills(
        self,
        owner_id: str | None = None,
        statuses: Collection[BillStatus] | None = None,
    ) -> list[Bill]:
        query = "SELECT data FROM bills WHERE TRUE"
        params: list[Any] = []
        if owner_id is not None:
            query += " AND owner_id = %s"
            params.append(owner_id)
        if statuses is not None:
            query += " AND status = ANY(%s)"
            params.append([s.value for s in statuses])
        return self._list(query, params, Bill)

    # Vendors

    def add_vendor(self, vendor: Vendor) -> Vendor:
        self._execute(
            "INSERT INTO vendors (id, owner_id, data) VALUES (%s, %s, %s)",
            (vendor.id, vendor.owner_id, _doc(vendor)),
        )
        return vendor

    def get_vendor(self, vendor_id: UUID) -> Vendor:
        return self._get(
            "SELECT data FROM vendors WHERE id = %s", vendor_id, Vendor, "vendor"
        )

    def save_vendor(self, vendor: Vendor) -> Vendor:
        self._update(
            "UPDATE vendors SET data = %s, updated_at = now() WHERE id = %s",
            (_doc(vendor), vendor.id),
            "vendor",
            vendor.id,
        )
        return vendor

    def list_vendors(self, owner_id: str) -> list[Vendor]:
        return self._list(
            "SELECT data FROM vendors WHERE owner_id = %s", [owner_id], Vendor
        )

    # Workflows

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        self._execute(
            "INSERT INTO approval_workflows (id, owner_id, data) VALUES (%s, %s, %s)",
            (workflow.id, workflow.owner_id, _doc(workflow)),
        )
        return workflow

    def list_workflows(self, owner_id: str) -> list[ApprovalWorkflow]:
        return self._list(
            "SELECT data FROM approval_workflows WHERE owner_id = %s",
            [owner_id],
            ApprovalWorkflow,
        )

    # Approvals

    def add_approval(self, approval: BillApproval) -> BillApproval:
        self._execute(
            "INSERT INTO bill_approvals (id, bill_id, status, version, initiated_at, data)"
            " VALUES (%s, %s, %s, %s, %s, %s)",
            (
                approval.id,
                approval.bill_id,
                approval.status.value,
                approval.version,
                approval.initiated_at,
                _doc(approval),
            ),
        )
        return approval

    def get_approval(self, approval_id: UUID) -> BillApproval:
        return self._get(
            "SELECT data FROM bill_approvals WHERE id = %s",
            approval_id,
            BillApproval,
            "approval",
        )

    def save_approval(
        self, approval: BillApproval, expected_version: int
    ) -> BillApproval:
        """Compare-and-set on the version column."""
        saved = approval.model_copy(update={"version": expected_version + 1})
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE bill_approvals SET status = %s, version = %s, data = %s"
                " WHERE id = %s AND version = %s",
                (
                    saved.status.value,
                    saved.version,
                    _doc(saved),
                    approval.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 1:
                return saved
            exists = conn.execute(
                "SELECT 1 FROM bill_approvals WHERE id = %s", (approval.id,)
            ).fetchone()
        if exists is None:
            raise NotFoundError("approval", approval.id)
        msg = f"approval {approval.id} was modified concurrently"
        raise StateConflict(msg)

    def list_approvals(
        self, statuses: Collection[ApprovalStatus] | None = None
    ) -> list[BillApproval]:
        query = "SELECT data FROM bill_approvals"
        params: list[Any] = []
        if statuses is not None:
            query += " WHERE status = ANY(%s)"
            params.append([s.value for s in statuses])
        return self._list(query, params, BillApproval)

    def find_approval_for_bill(self, bill_id: UUID) -> BillApproval | None:
        rows = self._list(
            "SELECT data FROM bill_approvals WHERE bill_id = %s"
            " ORDER BY initiated_at DESC LIMIT 1",
            [bill_id],
            BillApproval,
        )
        return rows[0] if rows else None

    # Payments

    def add_payment(self, payment: Payment) -> Payment:
        try:
            self._execute(
                "INSERT INTO payments (id, bill_id, idempotency_key, status, data)"
                " VALUES (%s, %s, %s, %s, %s)",
                (
                    payment.id,
                    payment.bill_id,
                    payment.idempotency_key,
                    payment.status.value,
                    _doc(payment),
                ),
            )
        except UniqueViolation as exc:
            raise IdempotencyConflict(payment.idempotency_key) from exc
        return payment

    def get_payment(self, payment_id: UUID) -> Payment:
        return self._get(
            "SELECT data FROM payments WHERE id = %s", payment_id, Payment, "payment"
        )

    def save_payment(self, payment: Payment) -> Payment:
        self._update(
            "UPDATE payments SET status = %s, data = %s, updated_at = now()"
            " WHERE id = %s",
            (payment.status.value, _doc(payment), payment.id),
            "payment",
            payment.id,
        )
        return payment

    def find_active_payment(self, idempotency_key: str) -> Payment | None:
        rows = self._list(
            "SELECT data FROM payments WHERE idempotency_key = %s AND status <> %s",
            [idempotency_key, PaymentStatus.FAILED.value],
            Payment,
        )
        return rows[0] if rows else None

    def list_payments(
        self,
        bill_id: UUID | None = None,
        statuses: Collection[PaymentStatus] | None = None,
    ) -> list[Payment]:
        query = "SELECT data FROM payments WHERE TRUE"
        params: list[Any] = []
        if bill_id is not None:
            query += " AND bill_id = %s"
            params.append(bill_id)
        if statuses is not None:
            query += " AND status = ANY(%s)"
            params.append([s.value for s in statuses])
        return self._list(query, params, Payment)

    # Helpers

    def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        with self._connect() as conn:
            conn.execute(query, params)

    def _update(
        self, query: str, params: tuple[Any, ...], entity: str, entity_id: UUID
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(query, params)
            if cur.rowcount == 0:
                raise NotFoundError(entity, entity_id)

    def _get(self, query: str, entity_id: UUID, model: type[_M], entity: str) -> _M:
        with self._connect() as conn:
            row = conn.execute(query, (entity_id,)).fetchone()
        if row is None:
            raise NotFoundError(entity, entity_id)
        return model.model_validate(row["data"])

    def _list(self, query: str, params: list[Any], model: type[_M]) -> list[_M]:
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [model.model_validate(row["data"]) for row in rows]


def _doc(model: BaseModel) -> Jsonb:
    return Jsonb(model.model_dump(mode="json"))
