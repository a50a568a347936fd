"""
Invoice Chase Schedule Resolver

Decides, for one invoice snapshot and one "now", which chase email (if any)
is owed next.  Three email kinds, evaluated in strict precedence order:

    REMINDER      once, business morning 3 days before the due date
                  (degrades to now + 10 minutes when fewer than 3 days remain,
                  held at the invoice's next_check_at once a batch deferred it)
    DUE           once, business morning on the due date
                  (catch-up: "now" once the due date has passed)
    LATE_WEEKLY   once per 7-day window past due, weeks 1..8
                      week 1 = days  7-13 overdue
                      week 2 = days 14-20 overdue
                      ...
                      week 8 = days 56-62 overdue

The first rule that is both unsent and inside its window wins; later rules
are not evaluated in the same pass.  Day arithmetic uses whole UTC calendar
days, so week boundaries always fall on due date + 7*N days.

Plan-specific ceilings (trial stops at week 3) are NOT applied here; the
resolver always computes the full 8-week schedule and the plan limiter
rejects what the tenant's plan does not allow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .clock import BusinessClock, days_until, ensure_utc
from .ledger import LedgerReader
from .models import EmailType, Invoice, ScheduleDecision

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schedule constants
# ---------------------------------------------------------------------------

REMINDER_DAYS_BEFORE: int = 3
SHORT_FUSE_DELAY: timedelta = timedelta(minutes=10)
LATE_WEEK_LENGTH_DAYS: int = 7
MAX_LATE_WEEKS: int = 8


@dataclass(frozen=True)
class ScheduleRules:
    """Tunable schedule parameters.  Defaults are the production policy."""
    reminder_days_before: int = REMINDER_DAYS_BEFORE
    short_fuse_delay: timedelta = SHORT_FUSE_DELAY
    late_weeks: int = MAX_LATE_WEEKS


def late_week_for(days_past_due: int, max_weeks: int = MAX_LATE_WEEKS) -> Optional[int]:
    """Return the late-weekly window containing *days_past_due*, or None.

    >>> late_week_for(6), late_week_for(7), late_week_for(13), late_week_for(14)
    (None, 1, 1, 2)
    >>> late_week_for(62), late_week_for(63)
    (8, None)
    """
    week = days_past_due // LATE_WEEK_LENGTH_DAYS
    if 1 <= week <= max_weeks:
        return week
    return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class ScheduleResolver:
    """Computes the next pending chase email for an invoice.

    Args:
        ledger: Ledger reader used for idempotency lookups.
        clock: Business-morning policy.
        rules: Schedule parameters.
        include_dry_run: Treat dry-run ledger events as "already sent".
            Used by dry-run batches so they do not re-simulate the same
            email on every pass; real batches leave it False so a past
            dry run never suppresses a real send.
    """

    def __init__(
        self,
        ledger: LedgerReader,
        clock: BusinessClock | None = None,
        rules: ScheduleRules | None = None,
        *,
        include_dry_run: bool = False,
    ):
        self.ledger = ledger
        self.clock = clock or BusinessClock()
        self.rules = rules or ScheduleRules()
        self.include_dry_run = include_dry_run

    def _sent(self, invoice: Invoice, email_type: EmailType, week: int | None = None) -> bool:
        return self.ledger.has_event(
            invoice.invoice_id, email_type, week, include_dry_run=self.include_dry_run
        )

    def next_email_for(self, invoice: Invoice, now: datetime) -> ScheduleDecision | None:
        """Return the next email owed for *invoice*, or None.

        The returned ``scheduled_for`` may lie in the future; callers that
        execute sends must wait until it has passed.
        """
        if invoice.skip_reason is not None or invoice.due_at is None:
            logger.debug("Invoice %s not schedulable: %s", invoice.invoice_id, invoice.skip_reason)
            return None

        now = ensure_utc(now)
        due = invoice.due_at
        days_left = days_until(due, now)

        # --- 1. Reminder ---------------------------------------------------
        if days_left > 0 and not self._sent(invoice, EmailType.REMINDER):
            if days_left >= self.rules.reminder_days_before:
                slot = self.clock.business_morning(
                    due - timedelta(days=self.rules.reminder_days_before)
                )
                return ScheduleDecision(EmailType.REMINDER, slot)
            slot = now + self.rules.short_fuse_delay
            # A batch that already deferred this reminder pinned the slot.
            if invoice.next_check_at is not None and invoice.next_check_at < slot:
                slot = invoice.next_check_at
            return ScheduleDecision(EmailType.REMINDER, slot)

        # --- 2. Due ----------------------------------------------------------
        if days_left > 0:
            return None
        if not self._sent(invoice, EmailType.DUE):
            if days_left == 0:
                slot = self.clock.business_morning(due)
                return ScheduleDecision(EmailType.DUE, max(slot, now))
            return ScheduleDecision(EmailType.DUE, now)

        # --- 3. Late weekly ----------------------------------------------------
        week = late_week_for(-days_left, self.rules.late_weeks)
        if week is not None and not self._sent(invoice, EmailType.LATE_WEEKLY, week):
            slot = self.clock.business_morning(due + timedelta(days=LATE_WEEK_LENGTH_DAYS * week))
            return ScheduleDecision(EmailType.LATE_WEEKLY, max(slot, now), week_number=week)

        return None

    def list_scheduled_emails(self, invoice: Invoice, now: datetime) -> list[ScheduleDecision]:
        """Every theoretical email for *invoice*, ignoring the ledger.

        Preview/debug helper: not idempotency-checked and not filtered by
        status, only by having a due date.
        """
        if invoice.due_at is None:
            return []
        due = invoice.due_at
        scheduled: list[ScheduleDecision] = []

        if days_until(due, now) >= self.rules.reminder_days_before:
            scheduled.append(ScheduleDecision(
                EmailType.REMINDER,
                self.clock.business_morning(due - timedelta(days=self.rules.reminder_days_before)),
            ))

        scheduled.append(ScheduleDecision(EmailType.DUE, self.clock.business_morning(due)))

        for week in range(1, self.rules.late_weeks + 1):
            scheduled.append(ScheduleDecision(
                EmailType.LATE_WEEKLY,
                self.clock.business_morning(due + timedelta(days=LATE_WEEK_LENGTH_DAYS * week)),
                week_number=week,
            ))

        return sorted(scheduled, key=lambda d: d.scheduled_for)


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------

def next_email_for(
    invoice: Invoice,
    now: datetime,
    ledger: LedgerReader,
    clock: BusinessClock | None = None,
) -> ScheduleDecision | None:
    """One-shot wrapper around :meth:`ScheduleResolver.next_email_for`."""
    return ScheduleResolver(ledger, clock).next_email_for(invoice, now)


def list_scheduled_emails(
    invoice: Invoice,
    now: datetime,
    clock: BusinessClock | None = None,
) -> list[ScheduleDecision]:
    """Preview every theoretical email for *invoice*."""
    return ScheduleResolver(_NullLedger(), clock).list_scheduled_emails(invoice, now)


class _NullLedger:
    """Ledger stand-in for previews, which never consult history."""

    def has_event(self, *args, **kwargs) -> bool:
        return False

    def count_invoice_events(self, *args, **kwargs) -> int:
        return 0

    def count_tenant_sends_since(self, *args, **kwargs) -> int:
        return 0

    def count_sends_since(self, *args, **kwargs) -> int:
        return 0

    def last_tenant_send_at(self, *args, **kwargs) -> None:
        return None
