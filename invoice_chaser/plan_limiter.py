"""
Invoice Chaser -- Plan Limiter (send gate)

Every chase email passes through ``PlanLimiter.can_send`` immediately
before it is handed to the mailer.  The gate is a pure function of the
tenant's plan, a freshly loaded ``SendHistory`` snapshot and the email
being considered; it never touches the ledger itself.

Checks, in order (first failure wins):

    1. COOLDOWN            minutes since the tenant's last real send
    2. DAILY_CAP           tenant sends since UTC midnight
    3. GLOBAL_DAILY_CAP    all sends since UTC midnight (when configured)
    4. PER_TYPE_CAP        emails of this type already sent for the invoice
    5. TRIAL_WEEK_CEILING  late-weekly week beyond the plan's last week

Plan table:

    plan      daily  cooldown  per-type caps                  late weeks
    trial        50     60 min  initial/reminder/due 1, late 3    1-3
    starter     200     60 min  unlimited                         1-8
    pro         500     30 min  unlimited                         1-8
    business   2000     15 min  unlimited                         1-8
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from .clock import ensure_utc, start_of_utc_day
from .exceptions import ConfigurationError
from .ledger import LedgerReader
from .models import EmailType, Plan

logger = logging.getLogger(__name__)

PRODUCTION = "production"


# ===================================================================
# 1. Plan table
# ===================================================================

@dataclass(frozen=True)
class PerTypeCaps:
    """Maximum emails of each type per invoice.  None means unlimited."""
    initial: Optional[int] = None
    reminder: Optional[int] = None
    due: Optional[int] = None
    late_weekly: Optional[int] = None

    def for_type(self, email_type: EmailType) -> Optional[int]:
        return {
            EmailType.INITIAL: self.initial,
            EmailType.REMINDER: self.reminder,
            EmailType.DUE: self.due,
            EmailType.LATE_WEEKLY: self.late_weekly,
        }[email_type]


@dataclass(frozen=True)
class PlanLimits:
    """Limits attached to one subscription plan."""
    daily_email_cap: int
    cooldown_minutes: int
    per_type_caps: PerTypeCaps = field(default_factory=PerTypeCaps)
    max_late_week: Optional[int] = None     # None = full 8-week schedule


PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.TRIAL: PlanLimits(
        daily_email_cap=50,
        cooldown_minutes=60,
        per_type_caps=PerTypeCaps(initial=1, reminder=1, due=1, late_weekly=3),
        max_late_week=3,
    ),
    Plan.STARTER: PlanLimits(daily_email_cap=200, cooldown_minutes=60),
    Plan.PRO: PlanLimits(daily_email_cap=500, cooldown_minutes=30),
    Plan.BUSINESS: PlanLimits(daily_email_cap=2000, cooldown_minutes=15),
}


def limits_for(plan: Plan, table: Mapping[Plan, PlanLimits] = PLAN_LIMITS) -> PlanLimits:
    """Return the limits for *plan*; raises ConfigurationError if absent."""
    try:
        return table[plan]
    except KeyError:
        raise ConfigurationError(f"No limits configured for plan {plan!r}") from None


def default_plan(environment: str) -> Plan:
    """Plan assumed for tenants with a missing or unrecognised plan value."""
    return Plan.STARTER if environment == PRODUCTION else Plan.TRIAL


# ===================================================================
# 2. Gate outcome
# ===================================================================

class DenyReason(str, Enum):
    """Why the gate refused a send."""
    COOLDOWN = "COOLDOWN"
    DAILY_CAP = "DAILY_CAP"
    GLOBAL_DAILY_CAP = "GLOBAL_DAILY_CAP"
    PER_TYPE_CAP = "PER_TYPE_CAP"
    TRIAL_WEEK_CEILING = "TRIAL_WEEK_CEILING"

    @property
    def code(self) -> str:
        """Stable error code surfaced by the HTTP layer."""
        return _DENY_CODES[self]

    @property
    def http_status(self) -> int:
        # Time-based limits clear on their own; plan limits need an upgrade.
        if self in (DenyReason.COOLDOWN, DenyReason.DAILY_CAP, DenyReason.GLOBAL_DAILY_CAP):
            return 429
        return 403


_DENY_CODES: dict[DenyReason, str] = {
    DenyReason.COOLDOWN: "EMAIL_COOLDOWN_ACTIVE",
    DenyReason.DAILY_CAP: "MAX_EMAILS_PER_DAY_PER_USER_EXCEEDED",
    DenyReason.GLOBAL_DAILY_CAP: "MAX_EMAILS_PER_DAY_GLOBAL_EXCEEDED",
    DenyReason.PER_TYPE_CAP: "PER_INVOICE_TYPE_CAP_REACHED",
    DenyReason.TRIAL_WEEK_CEILING: "TRIAL_CHASE_LIMIT_REACHED",
}


@dataclass(frozen=True)
class GateDecision:
    """Result of ``PlanLimiter.can_send``."""
    allowed: bool
    reason: Optional[DenyReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> GateDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, message: str) -> GateDecision:
        return cls(allowed=False, reason=reason, message=message)

    @property
    def code(self) -> Optional[str]:
        return self.reason.code if self.reason else None

    def __bool__(self) -> bool:
        return self.allowed


# ===================================================================
# 3. Send history snapshot
# ===================================================================

@dataclass(frozen=True)
class SendHistory:
    """Gate inputs read from the ledger right before a send.

    All counts cover real (non dry-run) events only.
    """
    last_send_at: Optional[datetime] = None
    tenant_sends_today: int = 0
    global_sends_today: int = 0
    invoice_type_count: int = 0


def load_send_history(
    ledger: LedgerReader,
    tenant_id: str,
    invoice_id: str,
    email_type: EmailType,
    now: datetime,
) -> SendHistory:
    """Read a fresh ``SendHistory`` for one prospective send."""
    midnight = start_of_utc_day(now)
    return SendHistory(
        last_send_at=ledger.last_tenant_send_at(tenant_id),
        tenant_sends_today=ledger.count_tenant_sends_since(tenant_id, midnight),
        global_sends_today=ledger.count_sends_since(midnight),
        invoice_type_count=ledger.count_invoice_events(invoice_id, email_type),
    )


# ===================================================================
# 4. Limiter
# ===================================================================

def _check_limit(label: str, value: Any, *, required: bool = False) -> None:
    if value is None and not required:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"Negative {label}: {value}")


class PlanLimiter:
    """Applies plan limits plus deployment-wide ceilings.

    Args:
        limits: Plan table; every ``Plan`` member must be present.
        environment: Deployment name.  The cooldown override is ignored
            in ``"production"``.
        cooldown_override_minutes: Replaces every plan's cooldown outside
            production; 0 disables the cooldown.
        tenant_daily_ceiling: Deployment cap per tenant per UTC day; the
            effective cap is the lower of this and the plan's cap.
        global_daily_cap: Cap on all real sends per UTC day.
    """

    def __init__(
        self,
        limits: Mapping[Plan, PlanLimits] = PLAN_LIMITS,
        *,
        environment: str = "development",
        cooldown_override_minutes: Optional[int] = None,
        tenant_daily_ceiling: Optional[int] = None,
        global_daily_cap: Optional[int] = None,
    ):
        self._validate(limits, cooldown_override_minutes, tenant_daily_ceiling, global_daily_cap)
        self.limits = dict(limits)
        self.environment = environment
        self.tenant_daily_ceiling = tenant_daily_ceiling
        self.global_daily_cap = global_daily_cap

        if cooldown_override_minutes is not None and environment == PRODUCTION:
            logger.warning("Cooldown override ignored in production")
            cooldown_override_minutes = None
        self.cooldown_override_minutes = cooldown_override_minutes

    @staticmethod
    def _validate(
        limits: Mapping[Plan, PlanLimits],
        cooldown_override: Optional[int],
        tenant_ceiling: Optional[int],
        global_cap: Optional[int],
    ) -> None:
        missing = [p.value for p in Plan if p not in limits]
        if missing:
            raise ConfigurationError(f"Plan limits missing for: {', '.join(missing)}")
        for plan, lim in limits.items():
            caps = lim.per_type_caps
            _check_limit(f"{plan.value} daily cap", lim.daily_email_cap, required=True)
            _check_limit(f"{plan.value} cooldown", lim.cooldown_minutes, required=True)
            for t in EmailType:
                _check_limit(f"{plan.value} {t.value} cap", caps.for_type(t))
            _check_limit(f"{plan.value} late-week ceiling", lim.max_late_week)
        _check_limit("cooldown override", cooldown_override)
        _check_limit("tenant daily ceiling", tenant_ceiling)
        _check_limit("global daily cap", global_cap)

    def cooldown_for(self, plan: Plan) -> timedelta:
        if self.cooldown_override_minutes is not None:
            return timedelta(minutes=self.cooldown_override_minutes)
        return timedelta(minutes=limits_for(plan, self.limits).cooldown_minutes)

    def daily_cap_for(self, plan: Plan) -> int:
        cap = limits_for(plan, self.limits).daily_email_cap
        if self.tenant_daily_ceiling is not None:
            cap = min(cap, self.tenant_daily_ceiling)
        return cap

    def can_send(
        self,
        plan: Plan,
        history: SendHistory,
        email_type: EmailType,
        week_number: Optional[int] = None,
        *,
        now: datetime,
    ) -> GateDecision:
        """Decide whether this email may be sent right now."""
        now = ensure_utc(now)
        lim = limits_for(plan, self.limits)

        # --- 1. cooldown ---
        cooldown = self.cooldown_for(plan)
        if cooldown > timedelta(0) and history.last_send_at is not None:
            elapsed = now - history.last_send_at
            if elapsed < cooldown:
                remaining = int((cooldown - elapsed).total_seconds() // 60) + 1
                return GateDecision.deny(
                    DenyReason.COOLDOWN,
                    f"Please wait {remaining} more minute(s) before sending another email.",
                )

        # --- 2. tenant daily cap ---
        daily_cap = self.daily_cap_for(plan)
        if history.tenant_sends_today >= daily_cap:
            return GateDecision.deny(
                DenyReason.DAILY_CAP,
                f"Daily email limit of {daily_cap} reached.",
            )

        # --- 3. global daily cap ---
        if self.global_daily_cap is not None and history.global_sends_today >= self.global_daily_cap:
            return GateDecision.deny(
                DenyReason.GLOBAL_DAILY_CAP,
                "Global daily email limit reached.",
            )

        # --- 4. per-invoice, per-type cap ---
        type_cap = lim.per_type_caps.for_type(email_type)
        if type_cap is not None and history.invoice_type_count >= type_cap:
            return GateDecision.deny(
                DenyReason.PER_TYPE_CAP,
                f"Limit of {type_cap} {email_type.value} email(s) per invoice reached on {plan.value} plan.",
            )

        # --- 5. trial late-week ceiling ---
        if email_type.is_weekly and lim.max_late_week is not None:
            if week_number is None or week_number > lim.max_late_week:
                return GateDecision.deny(
                    DenyReason.TRIAL_WEEK_CEILING,
                    f"{plan.value.capitalize()} plan covers late reminders for weeks "
                    f"1-{lim.max_late_week} only.",
                )

        return GateDecision.allow()


# ===================================================================
# 5. Tenant plan lookup
# ===================================================================

class PlanDirectory(Protocol):
    """Resolves a tenant to its subscription plan."""

    def plan_for(self, tenant_id: str) -> Plan: ...


class StaticPlanDirectory:
    """Dict-backed plan lookup with an environment-dependent fallback."""

    def __init__(self, plans: Mapping[str, Plan | str] | None = None, *, environment: str = "development"):
        self.environment = environment
        self._plans: dict[str, Plan] = {}
        for tenant_id, raw in (plans or {}).items():
            self.set_plan(tenant_id, raw)

    def set_plan(self, tenant_id: str, plan: Plan | str) -> None:
        parsed = Plan.parse(plan)
        if parsed is None:
            logger.warning("Unknown plan %r for tenant %s; using default", plan, tenant_id)
            self._plans.pop(tenant_id, None)
            return
        self._plans[tenant_id] = parsed

    def plan_for(self, tenant_id: str) -> Plan:
        return self._plans.get(tenant_id, default_plan(self.environment))
