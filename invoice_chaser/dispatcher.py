"""
Invoice Chaser -- Batch Dispatcher

Drives one scheduling pass per external trigger:

    1. Fetch a bounded page of candidate invoices from the invoice store
    2. For each invoice, independently:
         resolve the next email -> check it is due -> gate it on the
         tenant's plan -> send (or simulate) -> append to the ledger
    3. Move each invoice's check cursor (``next_check_at``) past what
       this pass learned: deferred invoices to their slot, denied ones an
       hour on, idle ones to their next theoretical email
    4. Return a BatchResult with per-invoice outcomes and counts

The cursor keeps invoices that cannot send right now from holding the
page, so a fresh invoice is never starved by a backlog of stuck ones.
Dry runs and failed sends leave the cursor alone.

A failure on one invoice never aborts the batch.  Send failures leave no
ledger entry (the email is retried next pass).  A ledger write failure
AFTER a successful send is logged at CRITICAL: a real email went out with
no idempotency record and may be sent again.

The same resolver + gate + send pipeline backs the manual "send chase now"
path (``send_chase_now``), which adds ownership and prerequisite checks
and sends immediately even when the scheduled instant is in the future.

Usage:
    dispatcher = BatchDispatcher(store, ledger, store, OutboxMailer("outbox.jsonl"))
    result = dispatcher.run_batch()
    print(result.summary())
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from .clock import BusinessClock, ensure_utc, format_instant, utc_now
from .exceptions import ConfigurationError, LedgerWriteError, SendError
from .invoice_store import DEFAULT_LOOKAHEAD_DAYS, DEFAULT_LOOKBACK_DAYS, InvoiceSource, SQLiteInvoiceStore
from .ledger import Ledger, SQLiteLedger
from .mailer import Mailer, OutboxMailer, RecipientGuard
from .models import EmailEvent, EmailType, Invoice, ScheduleDecision, SendRequest
from .plan_limiter import DenyReason, GateDecision, PlanDirectory, PlanLimiter, load_send_history
from .schedule_resolver import ScheduleResolver, ScheduleRules

if TYPE_CHECKING:
    from .config import ChaserConfig

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 100

# Check cursor pushes after a pass that sent nothing.
DENIED_RECHECK = timedelta(hours=1)
IDLE_RECHECK = timedelta(days=1)


def clamp_batch_size(value: Any) -> int:
    """Coerce *value* into ``[1, MAX_BATCH_SIZE]``; junk gives the default."""
    try:
        size = int(value)
    except (TypeError, ValueError):
        return DEFAULT_BATCH_SIZE
    return max(1, min(size, MAX_BATCH_SIZE))


# ===================================================================
# Per-invoice outcomes
# ===================================================================

class Outcome(str, Enum):
    SENT = "sent"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    DENIED = "denied"
    ERROR = "error"
    LEDGER_ERROR = "ledger_error"


@dataclass
class InvoiceOutcome:
    """What happened to one invoice in a batch."""
    invoice_id: str
    outcome: Outcome
    email_type: Optional[EmailType] = None
    week_number: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    reason: str = ""
    code: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"invoiceId": self.invoice_id, "outcome": self.outcome.value}
        if self.email_type is not None:
            d["type"] = self.email_type.value
        if self.week_number is not None:
            d["weekNumber"] = self.week_number
        if self.scheduled_for is not None:
            d["scheduledFor"] = format_instant(self.scheduled_for)
        if self.reason:
            d["reason"] = self.reason
        if self.code:
            d["code"] = self.code
        if self.message_id:
            d["messageId"] = self.message_id
        return d


@dataclass
class BatchResult:
    """Aggregated result of one ``run_batch`` call."""
    started_at: datetime
    dry_run: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    outcomes: list[InvoiceOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def add(self, outcome: InvoiceOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome in (Outcome.ERROR, Outcome.LEDGER_ERROR):
            self.errors.append(f"Invoice {outcome.invoice_id}: {outcome.reason}")

    def _count(self, kind: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome is kind)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def sent(self) -> int:
        return self._count(Outcome.SENT)

    @property
    def dry_run_count(self) -> int:
        return self._count(Outcome.DRY_RUN)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def deferred(self) -> int:
        return self._count(Outcome.DEFERRED)

    @property
    def denied(self) -> int:
        return self._count(Outcome.DENIED)

    @property
    def error_count(self) -> int:
        return self._count(Outcome.ERROR)

    @property
    def ledger_errors(self) -> int:
        return self._count(Outcome.LEDGER_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": format_instant(self.started_at),
            "elapsedSeconds": round(self.elapsed_seconds, 3),
            "dryRun": self.dry_run,
            "batchSize": self.batch_size,
            "processed": self.processed,
            "sent": self.sent,
            "dryRunCount": self.dry_run_count,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "denied": self.denied,
            "errorCount": self.error_count,
            "ledgerErrors": self.ledger_errors,
            "errors": list(self.errors),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def summary(self) -> str:
        lines = [
            "",
            "=" * 60,
            "  CHASE BATCH SUMMARY" + ("  (DRY RUN)" if self.dry_run else ""),
            "=" * 60,
            f"  Started:      {format_instant(self.started_at)}",
            f"  Processed:    {self.processed}  (batch size {self.batch_size})",
            f"  Sent:         {self.sent}",
            f"  Dry run:      {self.dry_run_count}",
            f"  Skipped:      {self.skipped}",
            f"  Deferred:     {self.deferred}",
            f"  Denied:       {self.denied}",
            f"  Errors:       {self.error_count}",
            f"  Ledger fail:  {self.ledger_errors}",
            f"  Elapsed:      {self.elapsed_seconds:.2f}s",
        ]
        if self.errors:
            lines.append("")
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")
        lines.append("=" * 60)
        return "\n".join(lines)


# ===================================================================
# Manual path result
# ===================================================================

class ManualStatus(str, Enum):
    SENT = "sent"
    DRY_RUN = "dry_run"
    NOT_FOUND = "not_found"
    NOT_PENDING = "not_pending"
    INITIAL_REQUIRED = "initial_required"
    MISSING_FIELDS = "missing_fields"
    NOTHING_DUE = "nothing_due"
    RATE_LIMITED = "rate_limited"
    SEND_FAILED = "send_failed"
    LEDGER_WRITE_FAILED = "ledger_write_failed"


_MANUAL_HTTP: dict[ManualStatus, int] = {
    ManualStatus.SENT: 200,
    ManualStatus.DRY_RUN: 200,
    ManualStatus.NOT_FOUND: 404,
    ManualStatus.NOT_PENDING: 403,
    ManualStatus.INITIAL_REQUIRED: 400,
    ManualStatus.MISSING_FIELDS: 400,
    ManualStatus.NOTHING_DUE: 200,
    ManualStatus.SEND_FAILED: 502,
    ManualStatus.LEDGER_WRITE_FAILED: 500,
}

_MANUAL_ERROR_CODES: dict[ManualStatus, str] = {
    ManualStatus.NOT_FOUND: "INVOICE_NOT_FOUND",
    ManualStatus.NOT_PENDING: "INVOICE_NOT_PENDING",
    ManualStatus.INITIAL_REQUIRED: "INITIAL_REQUIRED",
    ManualStatus.MISSING_FIELDS: "MISSING_REQUIRED_FIELDS",
    ManualStatus.SEND_FAILED: "EMAIL_SEND_FAILED",
    ManualStatus.LEDGER_WRITE_FAILED: "LEDGER_WRITE_FAILED",
}


@dataclass
class ManualSendResult:
    """Structured outcome of ``send_chase_now``."""
    status: ManualStatus
    message: str
    email_type: Optional[EmailType] = None
    week_number: Optional[int] = None
    deny_reason: Optional[DenyReason] = None
    message_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (ManualStatus.SENT, ManualStatus.DRY_RUN, ManualStatus.NOTHING_DUE)

    @property
    def code(self) -> Optional[str]:
        if self.deny_reason is not None:
            return self.deny_reason.code
        return _MANUAL_ERROR_CODES.get(self.status)

    @property
    def http_status(self) -> int:
        if self.status is ManualStatus.RATE_LIMITED and self.deny_reason is not None:
            return self.deny_reason.http_status
        return _MANUAL_HTTP.get(self.status, 500)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.status is ManualStatus.NOTHING_DUE:
            d["skipped"] = True
        if self.status is ManualStatus.DRY_RUN:
            d["dryRun"] = True
        if self.email_type is not None:
            d["type"] = self.email_type.value
        if self.week_number is not None:
            d["weekNumber"] = self.week_number
        if not self.success and self.code:
            d["error"] = self.code
        if self.message_id:
            d["messageId"] = self.message_id
        return d


def _sent_message(decision: ScheduleDecision) -> str:
    if decision.email_type is EmailType.REMINDER:
        return "Reminder email sent."
    if decision.email_type is EmailType.DUE:
        return "Due date email sent."
    return f"Week {decision.week_number} follow-up sent."


# ===================================================================
# Per-invoice lock map
# ===================================================================

class _LockSlot:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class InvoiceLocks:
    """One lock per invoice id, so a manual send and a batch pass never
    resolve/send/record the same invoice concurrently in this process.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the map only ever holds invoices currently in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._slots: dict[str, _LockSlot] = {}

    @contextmanager
    def lock_for(self, invoice_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(invoice_id)
            if slot is None:
                slot = self._slots[invoice_id] = _LockSlot()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[invoice_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)


# ===================================================================
# Dispatcher
# ===================================================================

class BatchDispatcher:
    """Runs scheduling passes over the invoice store.

    Args:
        invoices: Candidate source.
        ledger: Email event ledger (read for idempotency and rate limits,
            written after each send).
        plans: Tenant -> plan lookup.
        mailer: Outbound collaborator.
        limiter: Send gate; defaults to the standard plan table.
        resolver: Schedule resolver; defaults to one over *ledger* that
            counts dry-run events as sent only when *dry_run* is set.
        batch_size: Page size, clamped to ``[1, MAX_BATCH_SIZE]``.
        dry_run: Simulate sends; writes dry-run ledger events only.
        clock: Zero-argument callable returning the current UTC instant.
    """

    def __init__(
        self,
        invoices: InvoiceSource,
        ledger: Ledger,
        plans: PlanDirectory,
        mailer: Mailer,
        *,
        limiter: Optional[PlanLimiter] = None,
        resolver: Optional[ScheduleResolver] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utc_now,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    ):
        self.invoices = invoices
        self.ledger = ledger
        self.plans = plans
        self.mailer = mailer
        self.limiter = limiter or PlanLimiter()
        self.resolver = resolver or ScheduleResolver(ledger, include_dry_run=dry_run)
        self.batch_size = clamp_batch_size(batch_size)
        self.dry_run = dry_run
        self.clock = clock
        self.lookback_days = lookback_days
        self.lookahead_days = lookahead_days
        self.locks = InvoiceLocks()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else ensure_utc(self.clock())

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    def run_batch(self, now: Optional[datetime] = None) -> BatchResult:
        """Process one page of candidate invoices."""
        now = self._now(now)
        t0 = time.monotonic()
        result = BatchResult(started_at=now, dry_run=self.dry_run, batch_size=self.batch_size)

        candidates = self.invoices.fetch_candidates(
            now,
            self.batch_size,
            lookback_days=self.lookback_days,
            lookahead_days=self.lookahead_days,
        )
        logger.info(
            "Chase batch: %d candidate(s), batch size %d%s",
            len(candidates), self.batch_size, " [DRY RUN]" if self.dry_run else "",
        )

        for invoice in candidates:
            try:
                with self.locks.lock_for(invoice.invoice_id):
                    outcome = self._process(invoice, now)
                    self._advance_cursor(invoice, outcome, now)
            except Exception as exc:
                logger.exception("Unexpected error processing invoice %s", invoice.invoice_id)
                outcome = InvoiceOutcome(invoice.invoice_id, Outcome.ERROR, reason=str(exc))
            result.add(outcome)

        result.elapsed_seconds = time.monotonic() - t0
        logger.info(
            "Chase batch done: processed=%d sent=%d dry_run=%d skipped=%d deferred=%d "
            "denied=%d errors=%d ledger_errors=%d",
            result.processed, result.sent, result.dry_run_count, result.skipped,
            result.deferred, result.denied, result.error_count, result.ledger_errors,
        )
        return result

    def _process(self, invoice: Invoice, now: datetime) -> InvoiceOutcome:
        inv_id = invoice.invoice_id

        if invoice.skip_reason is not None:
            logger.debug("Skip %s: %s", inv_id, invoice.skip_reason)
            return InvoiceOutcome(inv_id, Outcome.SKIPPED, reason=invoice.skip_reason)

        decision = self.resolver.next_email_for(invoice, now)
        if decision is None:
            logger.debug("Skip %s: no email due", inv_id)
            return InvoiceOutcome(inv_id, Outcome.SKIPPED, reason="no_email_due")

        base = dict(
            invoice_id=inv_id,
            email_type=decision.email_type,
            week_number=decision.week_number,
            scheduled_for=decision.scheduled_for,
        )

        if decision.scheduled_for > now:
            logger.debug("Defer %s: %s at %s", inv_id, decision.label, format_instant(decision.scheduled_for))
            return InvoiceOutcome(outcome=Outcome.DEFERRED, **base)

        gate = self._gate(invoice, decision, now)
        if not gate.allowed:
            logger.info("Denied %s for %s: %s", decision.label, inv_id, gate.code)
            return InvoiceOutcome(outcome=Outcome.DENIED, reason=gate.message, code=gate.code, **base)

        try:
            event = self._deliver(invoice, decision, now)
        except SendError as exc:
            logger.warning("Send failed for invoice %s (%s): %s", inv_id, decision.label, exc)
            return InvoiceOutcome(outcome=Outcome.ERROR, reason=str(exc), **base)
        except LedgerWriteError as exc:
            self._log_ledger_failure(inv_id, decision, exc)
            return InvoiceOutcome(outcome=Outcome.LEDGER_ERROR, reason=str(exc), **base)

        kind = Outcome.DRY_RUN if event.dry_run else Outcome.SENT
        return InvoiceOutcome(outcome=kind, message_id=event.message_id, **base)

    def next_check_for(self, invoice: Invoice, outcome: InvoiceOutcome, now: datetime) -> Optional[datetime]:
        """When the batch should look at *invoice* again after *outcome*.

        None leaves the cursor where it is, so failed invoices keep their
        place and are retried on the next pass.
        """
        kind = outcome.outcome
        if kind is Outcome.DEFERRED:
            return outcome.scheduled_for
        if kind is Outcome.SENT:
            # Still eligible next pass, but behind never-checked invoices.
            return now
        if kind is Outcome.DENIED:
            return now + DENIED_RECHECK
        if kind is Outcome.SKIPPED:
            if outcome.reason == "no_email_due":
                upcoming = [
                    d.scheduled_for for d in self.resolver.list_scheduled_emails(invoice, now)
                    if d.scheduled_for > now
                ]
                if upcoming:
                    return min(upcoming)
            return now + IDLE_RECHECK
        return None

    def _advance_cursor(self, invoice: Invoice, outcome: InvoiceOutcome, now: datetime) -> None:
        # Dry runs leave the cursor alone so a later real pass sees the same page.
        if self.dry_run:
            return
        when = self.next_check_for(invoice, outcome, now)
        if when is None:
            return
        try:
            self.invoices.reschedule(invoice.invoice_id, when)
        except Exception:
            logger.exception("Could not move check cursor for invoice %s", invoice.invoice_id)

    # ------------------------------------------------------------------
    # Shared pipeline pieces
    # ------------------------------------------------------------------

    def _gate(self, invoice: Invoice, decision: ScheduleDecision, now: datetime) -> GateDecision:
        plan = self.plans.plan_for(invoice.tenant_id)
        history = load_send_history(
            self.ledger, invoice.tenant_id, invoice.invoice_id, decision.email_type, now
        )
        return self.limiter.can_send(
            plan, history, decision.email_type, decision.week_number, now=now
        )

    def _deliver(self, invoice: Invoice, decision: ScheduleDecision, now: datetime) -> EmailEvent:
        """Send (or simulate) one email and append its ledger event.

        Raises:
            SendError: the mailer failed; nothing was recorded.
            LedgerWriteError: the ledger append failed (after a real send,
                the email went out without an idempotency record).
        """
        message_id: Optional[str] = None
        if not self.dry_run:
            request = SendRequest.for_decision(invoice, decision)
            try:
                message_id = self.mailer.send(request)
            except SendError:
                raise
            except Exception as exc:
                raise SendError(str(exc), invoice_id=invoice.invoice_id) from exc
            logger.info(
                "Sent %s for invoice %s to %s", decision.label, invoice.invoice_id, invoice.customer_email
            )
        else:
            logger.info("[DRY RUN] Would send %s for invoice %s", decision.label, invoice.invoice_id)

        event = EmailEvent(
            invoice_id=invoice.invoice_id,
            tenant_id=invoice.tenant_id,
            email_type=decision.email_type,
            created_at=now,
            week_number=decision.week_number,
            dry_run=self.dry_run,
            recipient=invoice.customer_email,
            message_id=message_id,
        )
        try:
            self.ledger.record(event)
        except LedgerWriteError:
            raise
        except Exception as exc:
            raise LedgerWriteError(str(exc), invoice_id=invoice.invoice_id) from exc
        return event

    def _log_ledger_failure(self, invoice_id: str, decision: ScheduleDecision, exc: Exception) -> None:
        if self.dry_run:
            logger.error("Dry-run ledger write failed for invoice %s (%s): %s", invoice_id, decision.label, exc)
        else:
            logger.critical(
                "Email %s for invoice %s was SENT but the ledger write failed; "
                "it may be sent again: %s",
                decision.label, invoice_id, exc,
            )

    # ------------------------------------------------------------------
    # Manual path
    # ------------------------------------------------------------------

    def send_chase_now(
        self,
        invoice_id: str,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> ManualSendResult:
        """Send the next owed chase email for one invoice immediately."""
        now = self._now(now)

        invoice = self.invoices.get(invoice_id)
        if invoice is None or invoice.tenant_id != tenant_id:
            return ManualSendResult(ManualStatus.NOT_FOUND, "Invoice not found")

        if not invoice.is_pending:
            return ManualSendResult(
                ManualStatus.NOT_PENDING, "Cannot send chase emails for non-pending invoices."
            )

        if not self.ledger.has_event(invoice_id, EmailType.INITIAL):
            return ManualSendResult(
                ManualStatus.INITIAL_REQUIRED, "Initial invoice email must be sent first."
            )

        if not invoice.has_customer_email or invoice.due_at is None:
            return ManualSendResult(
                ManualStatus.MISSING_FIELDS,
                "Invoice missing required fields (customerEmail, dueAt)",
            )

        with self.locks.lock_for(invoice_id):
            decision = self.resolver.next_email_for(invoice, now)
            if decision is None:
                return ManualSendResult(ManualStatus.NOTHING_DUE, "No chase email to send right now.")

            gate = self._gate(invoice, decision, now)
            if not gate.allowed:
                logger.warning("Manual send of %s for %s denied: %s", decision.label, invoice_id, gate.code)
                return ManualSendResult(
                    ManualStatus.RATE_LIMITED,
                    gate.message,
                    email_type=decision.email_type,
                    week_number=decision.week_number,
                    deny_reason=gate.reason,
                )

            try:
                event = self._deliver(invoice, decision, now)
            except SendError as exc:
                logger.warning("Manual send failed for invoice %s: %s", invoice_id, exc)
                return ManualSendResult(
                    ManualStatus.SEND_FAILED,
                    "Failed to send email.",
                    email_type=decision.email_type,
                    week_number=decision.week_number,
                )
            except LedgerWriteError as exc:
                self._log_ledger_failure(invoice_id, decision, exc)
                return ManualSendResult(
                    ManualStatus.LEDGER_WRITE_FAILED,
                    "Email sent but could not be recorded.",
                    email_type=decision.email_type,
                    week_number=decision.week_number,
                )

        status = ManualStatus.DRY_RUN if event.dry_run else ManualStatus.SENT
        message = _sent_message(decision)
        if event.dry_run:
            message = f"[DRY RUN] {message}"
        return ManualSendResult(
            status,
            message,
            email_type=decision.email_type,
            week_number=decision.week_number,
            message_id=event.message_id,
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, invoice: Invoice, now: Optional[datetime] = None) -> dict[str, Any]:
        """Next owed email plus the full theoretical schedule, read-only."""
        now = self._now(now)
        decision = self.resolver.next_email_for(invoice, now)
        return {
            "invoiceId": invoice.invoice_id,
            "status": invoice.status.value if invoice.status else None,
            "dueAt": format_instant(invoice.due_at) if invoice.due_at else None,
            "autoChaseEnabled": invoice.auto_chase_enabled,
            "nextCheckAt": format_instant(invoice.next_check_at) if invoice.next_check_at else None,
            "next": decision.to_dict() if decision else None,
            "skipReason": invoice.skip_reason,
            "scheduled": [d.to_dict() for d in self.resolver.list_scheduled_emails(invoice, now)],
        }


# ===================================================================
# Wiring
# ===================================================================

def build_dispatcher(cfg: ChaserConfig) -> BatchDispatcher:
    """Assemble the production object graph from configuration.

    Raises:
        ConfigurationError: unsafe or inconsistent settings.
    """
    sched = cfg.schedule
    if not 0 <= int(sched.business_hour) <= 23:
        raise ConfigurationError(f"schedule.business_hour out of range: {sched.business_hour}")
    if not -12 <= int(sched.utc_offset_hours) <= 14:
        raise ConfigurationError(f"schedule.utc_offset_hours out of range: {sched.utc_offset_hours}")
    if int(sched.late_weeks) < 0 or int(sched.reminder_days_before) < 1:
        raise ConfigurationError("schedule.late_weeks must be >= 0 and reminder_days_before >= 1")

    limiter = PlanLimiter(
        cfg.limits.build_plan_table(),
        environment=cfg.security.environment,
        cooldown_override_minutes=cfg.limits.cooldown_override_minutes,
        tenant_daily_ceiling=cfg.limits.tenant_daily_ceiling,
        global_daily_cap=cfg.limits.global_daily_cap,
    )

    db_path = cfg.storage.resolve(cfg.storage.database_path)
    store = SQLiteInvoiceStore(db_path, environment=cfg.security.environment)
    ledger = SQLiteLedger(db_path)

    mailer: Mailer = OutboxMailer(cfg.storage.resolve(cfg.storage.outbox_path))
    if cfg.recipients.allowed_domains:
        mailer = RecipientGuard(
            mailer, cfg.recipients.allowed_domains, cfg.recipients.test_redirect_email or None
        )

    resolver = ScheduleResolver(
        ledger,
        BusinessClock(int(sched.utc_offset_hours), int(sched.business_hour)),
        ScheduleRules(
            reminder_days_before=int(sched.reminder_days_before),
            short_fuse_delay=timedelta(minutes=int(sched.short_fuse_delay_minutes)),
            late_weeks=int(sched.late_weeks),
        ),
        include_dry_run=cfg.dispatch.dry_run,
    )

    return BatchDispatcher(
        store,
        ledger,
        store,
        mailer,
        limiter=limiter,
        resolver=resolver,
        batch_size=cfg.dispatch.batch_size,
        dry_run=cfg.dispatch.dry_run,
        lookback_days=int(cfg.dispatch.lookback_days),
        lookahead_days=int(cfg.dispatch.lookahead_days),
    )
