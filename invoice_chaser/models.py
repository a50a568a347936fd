"""Data models for the invoice chase scheduler.

All models are plain dataclasses with type hints.  Records arriving from
the invoice store or the ledger are loosely typed (string timestamps,
structured timestamp objects, missing keys); ``Invoice.from_record`` and
``EmailEvent.from_record`` are the only places that deal with that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Self

from .clock import format_instant, to_instant


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EmailType(str, Enum):
    """Ledger type tags for invoice emails.

    INITIAL is sent by the invoice creation path and is never scheduled
    here; it is only read as a prerequisite by the manual send path.
    """
    INITIAL = "invoice_initial"
    REMINDER = "invoice_reminder"
    DUE = "invoice_due"
    LATE_WEEKLY = "invoice_late_weekly"

    @property
    def is_weekly(self) -> bool:
        return self is EmailType.LATE_WEEKLY

    @classmethod
    def parse(cls, value: Any) -> Optional[EmailType]:
        """Map a raw tag to the enum, or None if unknown."""
        if isinstance(value, cls):
            return value
        for t in cls:
            if t.value == value:
                return t
        return None


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status as stored by the invoice CRUD layer."""
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> Optional[InvoiceStatus]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        raw = value.strip().lower()
        for s in cls:
            if s.value == raw:
                return s
        return None


class Plan(str, Enum):
    """Subscription tier attached to a tenant."""
    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"

    @classmethod
    def parse(cls, value: Any) -> Optional[Plan]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        raw = value.strip().lower()
        for p in cls:
            if p.value == raw:
                return p
        return None


# ---------------------------------------------------------------------------
# Invoice projection
# ---------------------------------------------------------------------------

def _parse_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


@dataclass
class Invoice:
    """Schedule-relevant projection of an invoice record.

    Only ``status``, ``customer_email`` and ``due_at`` drive scheduling.
    ``auto_chase_enabled`` is the tenant's opt-in for the batch; manual
    sends ignore it.  ``next_check_at`` is written by the batch dispatcher;
    it orders the candidate page and holds a deferred short-notice reminder
    to the slot it was deferred to.  The remaining fields are context handed
    to the mailer so it can render the email; the scheduler itself never
    looks at them.
    """

    # --- identifiers ---
    invoice_id: str
    tenant_id: str = ""

    # --- scheduling inputs ---
    customer_email: str = ""
    due_at: datetime | None = None
    status: InvoiceStatus | None = InvoiceStatus.PENDING
    auto_chase_enabled: bool = True

    # --- batch cursor: earliest instant the batch looks at this invoice again ---
    next_check_at: datetime | None = None

    # --- render context ---
    customer_name: str = "Customer"
    amount: float = 0.0
    payment_link: str | None = None
    invoice_number: str = ""

    def __post_init__(self) -> None:
        self.customer_email = (self.customer_email or "").strip()
        if not self.invoice_number:
            self.invoice_number = self.invoice_id[:8]

    @property
    def is_pending(self) -> bool:
        return self.status is InvoiceStatus.PENDING

    @property
    def has_customer_email(self) -> bool:
        return bool(self.customer_email)

    @property
    def skip_reason(self) -> str | None:
        """Why this invoice cannot be scheduled, or None if it can."""
        if not self.is_pending:
            status = self.status.value if self.status else "unknown"
            return f"status is {status}"
        if not self.has_customer_email:
            return "missing customer email"
        if self.due_at is None:
            return "missing due date"
        return None

    @classmethod
    def from_record(cls, record: Mapping[str, Any], invoice_id: str | None = None) -> Self:
        """Build an Invoice from a loosely-typed store record.

        Accepts both camelCase keys (``customerEmail``, ``dueAt``,
        ``userId``) and snake_case keys.  ``dueAt`` may be any shape
        ``to_instant`` understands.
        """
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if k in record and record[k] is not None:
                    return record[k]
            return default

        inv_id = invoice_id or str(pick("invoice_id", "invoiceId", "id", default=""))

        raw_amount = pick("amount", default=0)
        try:
            amount = float(raw_amount)
        except (TypeError, ValueError):
            amount = 0.0

        return cls(
            invoice_id=inv_id,
            tenant_id=str(pick("tenant_id", "tenantId", "userId", "user_id", default="")),
            customer_email=str(pick("customer_email", "customerEmail", default="")),
            due_at=to_instant(pick("due_at", "dueAt")),
            status=InvoiceStatus.parse(pick("status", default="pending")),
            auto_chase_enabled=_parse_flag(pick("auto_chase_enabled", "autoChaseEnabled", default=True)),
            next_check_at=to_instant(pick("next_check_at", "nextCheckAt", "nextChaseAt")),
            customer_name=str(pick("customer_name", "customerName", default="Customer")) or "Customer",
            amount=amount,
            payment_link=pick("payment_link", "paymentLink"),
            invoice_number=str(pick("invoice_number", "invoiceNumber", default="")),
        )


# ---------------------------------------------------------------------------
# Ledger entry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmailEvent:
    """Append-only ledger fact: one email (or dry run) for one invoice.

    ``week_number`` is only meaningful for LATE_WEEKLY and is forced to
    None for every other type.
    """

    invoice_id: str
    tenant_id: str
    email_type: EmailType
    created_at: datetime
    week_number: int | None = None
    dry_run: bool = False
    recipient: str = ""
    message_id: str | None = None

    def __post_init__(self) -> None:
        if not self.email_type.is_weekly and self.week_number is not None:
            object.__setattr__(self, "week_number", None)

    @property
    def key(self) -> tuple[str, EmailType, int | None]:
        """Idempotency key for real events."""
        return (self.invoice_id, self.email_type, self.week_number)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "invoiceId": self.invoice_id,
            "userId": self.tenant_id,
            "type": self.email_type.value,
            "createdAt": format_instant(self.created_at),
            "dryRun": self.dry_run,
        }
        if self.week_number is not None:
            d["weekNumber"] = self.week_number
        if self.recipient:
            d["to"] = self.recipient
        if self.message_id:
            d["messageId"] = self.message_id
        return d

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Self | None:
        """Parse a stored ledger record; returns None for unknown types."""
        email_type = EmailType.parse(record.get("type") or record.get("email_type"))
        created_at = to_instant(record.get("createdAt") or record.get("created_at"))
        if email_type is None or created_at is None:
            return None
        week = record.get("weekNumber", record.get("week_number"))
        return cls(
            invoice_id=str(record.get("invoiceId") or record.get("invoice_id") or ""),
            tenant_id=str(record.get("userId") or record.get("tenant_id") or ""),
            email_type=email_type,
            created_at=created_at,
            week_number=int(week) if week else None,
            dry_run=bool(record.get("dryRun", record.get("dry_run", False))),
            recipient=str(record.get("to") or record.get("recipient") or ""),
            message_id=record.get("messageId") or record.get("message_id"),
        )


# ---------------------------------------------------------------------------
# Scheduling output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleDecision:
    """The next email owed for an invoice.  Ephemeral, never persisted."""

    email_type: EmailType
    scheduled_for: datetime
    week_number: int | None = None

    def is_due(self, now: datetime) -> bool:
        """True once the scheduled instant has been reached."""
        return self.scheduled_for <= now

    @property
    def label(self) -> str:
        """Short human-readable label, e.g. 'invoice_late_weekly (week 2)'."""
        if self.week_number is not None:
            return f"{self.email_type.value} (week {self.week_number})"
        return self.email_type.value

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.email_type.value,
            "scheduledFor": format_instant(self.scheduled_for),
        }
        if self.week_number is not None:
            d["weekNumber"] = self.week_number
        return d


@dataclass(frozen=True)
class SendRequest:
    """Outbound request handed to the mailer collaborator.

    Carries enough invoice context for the mailer to render content; the
    scheduler never renders anything itself.
    """

    to: str
    email_type: EmailType
    invoice_id: str
    tenant_id: str
    customer_name: str
    amount: float
    due_at: datetime | None
    payment_link: str | None = None
    invoice_number: str = ""
    week_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_decision(cls, invoice: Invoice, decision: ScheduleDecision) -> Self:
        return cls(
            to=invoice.customer_email,
            email_type=decision.email_type,
            invoice_id=invoice.invoice_id,
            tenant_id=invoice.tenant_id,
            customer_name=invoice.customer_name,
            amount=invoice.amount,
            due_at=invoice.due_at,
            payment_link=invoice.payment_link,
            invoice_number=invoice.invoice_number,
            week_number=decision.week_number,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "to": self.to,
            "type": self.email_type.value,
            "invoiceId": self.invoice_id,
            "userId": self.tenant_id,
            "customerName": self.customer_name,
            "amount": self.amount,
            "dueAt": format_instant(self.due_at) if self.due_at else None,
            "paymentLink": self.payment_link,
            "invoiceNumber": self.invoice_number,
        }
        if self.week_number is not None:
            d["weekNumber"] = self.week_number
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d
