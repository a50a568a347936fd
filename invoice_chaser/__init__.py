"""Invoice Chaser - scheduled invoice chase emails.

Decides which reminder, due-date or late follow-up email each pending
invoice is owed, gates it on the tenant's subscription plan, hands it to
a mailer and records it in an append-only ledger for idempotency.

The BatchDispatcher drives one pass per external trigger; the same
pipeline backs the manual "send chase now" path.
"""

from .models import (
    EmailEvent,
    EmailType,
    Invoice,
    InvoiceStatus,
    Plan,
    ScheduleDecision,
    SendRequest,
)

from .dispatcher import BatchDispatcher, BatchResult, ManualSendResult
from .plan_limiter import PLAN_LIMITS, PlanLimiter
from .schedule_resolver import ScheduleResolver

__all__ = [
    "BatchDispatcher",
    "BatchResult",
    "EmailEvent",
    "EmailType",
    "Invoice",
    "InvoiceStatus",
    "ManualSendResult",
    "PLAN_LIMITS",
    "Plan",
    "PlanLimiter",
    "ScheduleDecision",
    "ScheduleResolver",
    "SendRequest",
]
