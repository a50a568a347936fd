"""
Invoice Chaser -- Email Event Ledger

Append-only record of every email the scheduler has sent (or simulated in
dry-run mode).  The ledger is the single source of truth for idempotency
("has the due email for invoice X already gone out?") and for rate-limit
counting ("how many emails did this tenant send today?").

Two implementations share one interface:

    InMemoryLedger  - deterministic fake for tests and previews
    SQLiteLedger    - durable store, WAL journal, one connection per call

Both enforce that at most one REAL event exists per
(invoice_id, email_type, week_number).  A second real write for the same key
raises ``DuplicateEventError``: the scheduler checks the ledger before
sending, and this constraint catches the narrow window where two
overlapping batch invocations both pass that check.

Usage:
    from invoice_chaser.ledger import SQLiteLedger

    ledger = SQLiteLedger("chaser.db")
    if not ledger.has_event(invoice_id, EmailType.DUE):
        ...
        ledger.record(EmailEvent(...))
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from .clock import ensure_utc, format_instant, to_instant
from .exceptions import DuplicateEventError, LedgerWriteError
from .models import EmailEvent, EmailType


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

@runtime_checkable
class LedgerReader(Protocol):
    """Read side of the ledger.  All counts include real events only."""

    def has_event(
        self,
        invoice_id: str,
        email_type: EmailType,
        week_number: int | None = None,
        *,
        include_dry_run: bool = False,
    ) -> bool: ...

    def count_invoice_events(self, invoice_id: str, email_type: EmailType) -> int: ...

    def count_tenant_sends_since(self, tenant_id: str, since: datetime) -> int: ...

    def count_sends_since(self, since: datetime) -> int: ...

    def last_tenant_send_at(self, tenant_id: str) -> datetime | None: ...


@runtime_checkable
class LedgerWriter(Protocol):
    """Write side of the ledger."""

    def record(self, event: EmailEvent) -> str: ...


class Ledger(LedgerReader, LedgerWriter, Protocol):
    """Combined reader/writer, what the dispatcher is handed."""


def _week_matches(email_type: EmailType, wanted: int | None, actual: int | None) -> bool:
    # Week only narrows LATE_WEEKLY lookups; None means "any week".
    if not email_type.is_weekly or wanted is None:
        return True
    return actual == wanted


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryLedger:
    """Thread-safe list-backed ledger."""

    def __init__(self, events: list[EmailEvent] | None = None):
        self._lock = threading.Lock()
        self._events: list[tuple[str, EmailEvent]] = []
        for event in events or []:
            self.record(event)

    @property
    def events(self) -> list[EmailEvent]:
        with self._lock:
            return [e for _, e in self._events]

    def record(self, event: EmailEvent) -> str:
        with self._lock:
            if not event.dry_run:
                for _, existing in self._events:
                    if not existing.dry_run and existing.key == event.key:
                        raise DuplicateEventError(
                            f"Real {event.email_type.value} event already recorded "
                            f"for invoice {event.invoice_id}",
                            invoice_id=event.invoice_id,
                        )
            event_id = str(uuid.uuid4())
            self._events.append((event_id, event))
            return event_id

    def has_event(
        self,
        invoice_id: str,
        email_type: EmailType,
        week_number: int | None = None,
        *,
        include_dry_run: bool = False,
    ) -> bool:
        with self._lock:
            return any(
                e.invoice_id == invoice_id
                and e.email_type is email_type
                and _week_matches(email_type, week_number, e.week_number)
                and (include_dry_run or not e.dry_run)
                for _, e in self._events
            )

    def count_invoice_events(self, invoice_id: str, email_type: EmailType) -> int:
        with self._lock:
            return sum(
                1 for _, e in self._events
                if e.invoice_id == invoice_id and e.email_type is email_type and not e.dry_run
            )

    def count_tenant_sends_since(self, tenant_id: str, since: datetime) -> int:
        since = ensure_utc(since)
        with self._lock:
            return sum(
                1 for _, e in self._events
                if e.tenant_id == tenant_id and not e.dry_run and e.created_at >= since
            )

    def count_sends_since(self, since: datetime) -> int:
        since = ensure_utc(since)
        with self._lock:
            return sum(1 for _, e in self._events if not e.dry_run and e.created_at >= since)

    def last_tenant_send_at(self, tenant_id: str) -> datetime | None:
        with self._lock:
            times = [
                e.created_at for _, e in self._events
                if e.tenant_id == tenant_id and not e.dry_run
            ]
        return max(times) if times else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

# week_number is stored as 0 for "no week" so the unique index can see it
# (SQLite treats NULLs as distinct).
_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS email_events (
    event_id        TEXT PRIMARY KEY,
    invoice_id      TEXT NOT NULL,
    tenant_id       TEXT NOT NULL DEFAULT '',
    email_type      TEXT NOT NULL,
    week_number     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    dry_run         INTEGER NOT NULL DEFAULT 0,
    recipient       TEXT NOT NULL DEFAULT '',
    message_id      TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_events_real_key
    ON email_events(invoice_id, email_type, week_number)
    WHERE dry_run = 0;

CREATE INDEX IF NOT EXISTS idx_events_invoice ON email_events(invoice_id, email_type);
CREATE INDEX IF NOT EXISTS idx_events_tenant ON email_events(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_events_created ON email_events(created_at);
"""


class SQLiteLedger:
    """Durable ledger backed by a SQLite file.

    Each method opens and closes its own connection, so one instance can
    be shared between the HTTP layer and the batch dispatcher.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
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
            conn.commit()
        finally:
            conn.close()

    # --- writes ---

    def record(self, event: EmailEvent) -> str:
        event_id = str(uuid.uuid4())
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise LedgerWriteError(str(exc), invoice_id=event.invoice_id) from exc
        try:
            conn.execute(
                """INSERT INTO email_events
                   (event_id, invoice_id, tenant_id, email_type, week_number,
                    created_at, dry_run, recipient, message_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    event.invoice_id,
                    event.tenant_id,
                    event.email_type.value,
                    event.week_number or 0,
                    format_instant(event.created_at),
                    1 if event.dry_run else 0,
                    event.recipient,
                    event.message_id,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateEventError(
                f"Real {event.email_type.value} event already recorded "
                f"for invoice {event.invoice_id}",
                invoice_id=event.invoice_id,
            ) from exc
        except sqlite3.Error as exc:
            raise LedgerWriteError(str(exc), invoice_id=event.invoice_id) from exc
        finally:
            conn.close()
        return event_id

    # --- reads ---

    def has_event(
        self,
        invoice_id: str,
        email_type: EmailType,
        week_number: int | None = None,
        *,
        include_dry_run: bool = False,
    ) -> bool:
        sql = "SELECT 1 FROM email_events WHERE invoice_id = ? AND email_type = ?"
        params: list = [invoice_id, email_type.value]
        if email_type.is_weekly and week_number is not None:
            sql += " AND week_number = ?"
            params.append(week_number)
        if not include_dry_run:
            sql += " AND dry_run = 0"
        conn = self._get_conn()
        try:
            return conn.execute(sql + " LIMIT 1", params).fetchone() is not None
        finally:
            conn.close()

    def count_invoice_events(self, invoice_id: str, email_type: EmailType) -> int:
        return self._count(
            "invoice_id = ? AND email_type = ?", (invoice_id, email_type.value)
        )

    def count_tenant_sends_since(self, tenant_id: str, since: datetime) -> int:
        return self._count(
            "tenant_id = ? AND created_at >= ?", (tenant_id, format_instant(since))
        )

    def count_sends_since(self, since: datetime) -> int:
        return self._count("created_at >= ?", (format_instant(since),))

    def last_tenant_send_at(self, tenant_id: str) -> datetime | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                """SELECT MAX(created_at) AS last FROM email_events
                   WHERE tenant_id = ? AND dry_run = 0""",
                (tenant_id,),
            ).fetchone()
        finally:
            conn.close()
        return to_instant(row["last"]) if row and row["last"] else None

    def list_events(self, invoice_id: str | None = None) -> list[EmailEvent]:
        """All events (optionally for one invoice), oldest first."""
        sql = "SELECT * FROM email_events"
        params: tuple = ()
        if invoice_id is not None:
            sql += " WHERE invoice_id = ?"
            params = (invoice_id,)
        conn = self._get_conn()
        try:
            rows = conn.execute(sql + " ORDER BY created_at ASC", params).fetchall()
        finally:
            conn.close()
        events = []
        for r in rows:
            d = dict(r)
            d["week_number"] = d["week_number"] or None
            event = EmailEvent.from_record(d)
            if event is not None:
                events.append(event)
        return events

    def _count(self, where: str, params: tuple) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM email_events WHERE dry_run = 0 AND {where}",
                params,
            ).fetchone()
            return int(row["cnt"])
        finally:
            conn.close()
