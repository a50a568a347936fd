"""
Invoice Chaser -- Invoice Store

Read access to invoices for the scheduler, plus the tenant -> plan lookup.

The batch dispatcher only ever asks for a bounded page of *candidates*:
pending, auto-chase-enabled invoices whose due date falls inside a window
around "now" (default 63 days back, 30 days ahead) and whose check cursor
(``next_check_at``) is empty or has passed.  The page is ordered by the
cursor, never-checked invoices first, so invoices the dispatcher just
looked at rotate to the back instead of holding the page.  The window is a
cheap pre-filter; the schedule resolver makes the real decision.

Implementations:

    InMemoryInvoiceStore  - dict-backed, used by tests and previews
    SQLiteInvoiceStore    - invoices + tenants tables in the shared database
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Protocol

from .clock import ensure_utc, format_instant, to_instant, utc_now
from .models import Invoice, InvoiceStatus, Plan
from .plan_limiter import default_plan

logger = logging.getLogger(__name__)

# Late week 8 runs through day 62 past due.
DEFAULT_LOOKBACK_DAYS = 63
DEFAULT_LOOKAHEAD_DAYS = 30


class InvoiceSource(Protocol):
    """What the dispatcher needs from the invoice store."""

    def fetch_candidates(
        self,
        now: datetime,
        limit: int,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    ) -> list[Invoice]: ...

    def get(self, invoice_id: str) -> Optional[Invoice]: ...

    def reschedule(self, invoice_id: str, next_check_at: datetime | None) -> None: ...


def _window(now: datetime, lookback_days: int, lookahead_days: int) -> tuple[datetime, datetime]:
    now = ensure_utc(now)
    return now - timedelta(days=lookback_days), now + timedelta(days=lookahead_days)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryInvoiceStore:
    """Dict-backed invoice store.

    Candidates come back never-checked first, then by ``next_check_at``;
    ties keep insertion order.
    """

    def __init__(self, invoices: Iterable[Invoice] = ()):
        self._lock = threading.Lock()
        self._invoices: dict[str, Invoice] = {}
        for inv in invoices:
            self.upsert_invoice(inv)

    def upsert_invoice(self, invoice: Invoice) -> None:
        with self._lock:
            self._invoices[invoice.invoice_id] = invoice

    def mark_paid(self, invoice_id: str) -> None:
        with self._lock:
            inv = self._invoices.get(invoice_id)
            if inv is not None:
                inv.status = InvoiceStatus.PAID
                inv.auto_chase_enabled = False
                inv.next_check_at = None

    def set_auto_chase(self, invoice_id: str, enabled: bool) -> None:
        with self._lock:
            inv = self._invoices.get(invoice_id)
            if inv is not None:
                inv.auto_chase_enabled = bool(enabled)

    def reschedule(self, invoice_id: str, next_check_at: datetime | None) -> None:
        with self._lock:
            inv = self._invoices.get(invoice_id)
            if inv is not None:
                inv.next_check_at = ensure_utc(next_check_at) if next_check_at else None

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(invoice_id)

    def fetch_candidates(
        self,
        now: datetime,
        limit: int,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    ) -> list[Invoice]:
        now = ensure_utc(now)
        start, end = _window(now, lookback_days, lookahead_days)
        with self._lock:
            page = [
                inv for inv in self._invoices.values()
                if inv.is_pending and inv.auto_chase_enabled
                and inv.due_at is not None and start <= inv.due_at <= end
                and (inv.next_check_at is None or inv.next_check_at <= now)
            ]
        page.sort(key=lambda inv: (inv.next_check_at is not None, inv.next_check_at or now))
        return page[:max(limit, 0)]

    def __len__(self) -> int:
        return len(self._invoices)


# ---------------------------------------------------------------------------
# SQLite store
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS invoices (
    invoice_id      TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL DEFAULT '',
    customer_email  TEXT NOT NULL DEFAULT '',
    customer_name   TEXT NOT NULL DEFAULT 'Customer',
    due_at          TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    auto_chase_enabled INTEGER NOT NULL DEFAULT 1,
    next_check_at   TEXT,
    amount          REAL NOT NULL DEFAULT 0.0,
    payment_link    TEXT,
    invoice_number  TEXT NOT NULL DEFAULT '',
    updated_at      TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_invoices_status_due ON invoices(status, due_at);

CREATE TABLE IF NOT EXISTS tenants (
    tenant_id       TEXT PRIMARY KEY,
    plan            TEXT NOT NULL DEFAULT 'trial'
);
"""

# Columns added after the first schema; older databases gain them on open.
_ADDED_COLUMNS = {
    "auto_chase_enabled": "INTEGER NOT NULL DEFAULT 1",
    "next_check_at": "TEXT",
}

_CURSOR_INDEX_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_invoices_status_check ON invoices(status, next_check_at);"
)


class SQLiteInvoiceStore:
    """Invoices and tenant plans stored in SQLite.

    Also serves as the dispatcher's ``PlanDirectory``.  Tenants with no
    row, or an unrecognised plan value, get the environment's default plan.
    """

    def __init__(self, db_path: str | Path, *, environment: str = "development"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.environment = environment
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            existing = {r["name"] for r in conn.execute("PRAGMA table_info(invoices)")}
            for column, decl in _ADDED_COLUMNS.items():
                if column not in existing:
                    logger.info("Adding invoices.%s to %s", column, self.db_path)
                    conn.execute(f"ALTER TABLE invoices ADD COLUMN {column} {decl}")
            conn.execute(_CURSOR_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> Invoice:
        return Invoice(
            invoice_id=row["invoice_id"],
            tenant_id=row["tenant_id"],
            customer_email=row["customer_email"],
            due_at=to_instant(row["due_at"]),
            status=InvoiceStatus.parse(row["status"]),
            auto_chase_enabled=bool(row["auto_chase_enabled"]),
            next_check_at=to_instant(row["next_check_at"]),
            customer_name=row["customer_name"] or "Customer",
            amount=float(row["amount"] or 0.0),
            payment_link=row["payment_link"],
            invoice_number=row["invoice_number"],
        )

    # --- writes ---

    def upsert_invoice(self, invoice: Invoice) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO invoices
                   (invoice_id, tenant_id, customer_email, customer_name, due_at,
                    status, auto_chase_enabled, next_check_at,
                    amount, payment_link, invoice_number, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(invoice_id) DO UPDATE SET
                    tenant_id = excluded.tenant_id,
                    customer_email = excluded.customer_email,
                    customer_name = excluded.customer_name,
                    due_at = excluded.due_at,
                    status = excluded.status,
                    auto_chase_enabled = excluded.auto_chase_enabled,
                    next_check_at = excluded.next_check_at,
                    amount = excluded.amount,
                    payment_link = excluded.payment_link,
                    invoice_number = excluded.invoice_number,
                    updated_at = excluded.updated_at""",
                (
                    invoice.invoice_id,
                    invoice.tenant_id,
                    invoice.customer_email,
                    invoice.customer_name,
                    format_instant(invoice.due_at) if invoice.due_at else None,
                    invoice.status.value if invoice.status else "",
                    1 if invoice.auto_chase_enabled else 0,
                    format_instant(invoice.next_check_at) if invoice.next_check_at else None,
                    invoice.amount,
                    invoice.payment_link,
                    invoice.invoice_number,
                    format_instant(utc_now()),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def mark_paid(self, invoice_id: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE invoices
                   SET status = ?, auto_chase_enabled = 0, next_check_at = NULL
                   WHERE invoice_id = ?""",
                (InvoiceStatus.PAID.value, invoice_id),
            )
            conn.commit()
        finally:
            conn.close()

    def set_auto_chase(self, invoice_id: str, enabled: bool) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE invoices SET auto_chase_enabled = ? WHERE invoice_id = ?",
                (1 if enabled else 0, invoice_id),
            )
            conn.commit()
        finally:
            conn.close()

    def reschedule(self, invoice_id: str, next_check_at: datetime | None) -> None:
        """Move the batch cursor; None puts the invoice back at the front."""
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE invoices SET next_check_at = ? WHERE invoice_id = ?",
                (format_instant(next_check_at) if next_check_at else None, invoice_id),
            )
            conn.commit()
        finally:
            conn.close()

    def set_plan(self, tenant_id: str, plan: Plan | str) -> None:
        value = plan.value if isinstance(plan, Plan) else str(plan)
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO tenants (tenant_id, plan) VALUES (?, ?)
                   ON CONFLICT(tenant_id) DO UPDATE SET plan = excluded.plan""",
                (tenant_id, value),
            )
            conn.commit()
        finally:
            conn.close()

    # --- reads ---

    def get(self, invoice_id: str) -> Optional[Invoice]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM invoices WHERE invoice_id = ?", (invoice_id,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_invoice(row) if row else None

    def fetch_candidates(
        self,
        now: datetime,
        limit: int,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    ) -> list[Invoice]:
        start, end = _window(now, lookback_days, lookahead_days)
        conn = self._get_conn()
        try:
            # NULL sorts first under ASC, so never-checked invoices lead.
            rows = conn.execute(
                """SELECT * FROM invoices
                   WHERE status = ? AND auto_chase_enabled = 1
                     AND due_at IS NOT NULL AND due_at >= ? AND due_at <= ?
                     AND (next_check_at IS NULL OR next_check_at <= ?)
                   ORDER BY next_check_at ASC, due_at ASC
                   LIMIT ?""",
                (
                    InvoiceStatus.PENDING.value,
                    format_instant(start),
                    format_instant(end),
                    format_instant(ensure_utc(now)),
                    max(limit, 0),
                ),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_invoice(r) for r in rows]

    def plan_for(self, tenant_id: str) -> Plan:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT plan FROM tenants WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
        finally:
            conn.close()
        plan = Plan.parse(row["plan"]) if row else None
        if plan is None:
            if row is not None:
                logger.warning("Unknown plan %r for tenant %s; using default", row["plan"], tenant_id)
            return default_plan(self.environment)
        return plan

    def count(self) -> int:
        conn = self._get_conn()
        try:
            return int(conn.execute("SELECT COUNT(*) FROM invoices").fetchone()[0])
        finally:
            conn.close()
