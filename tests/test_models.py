"""Tests for invoice_chaser.models -- Invoice, EmailEvent, ScheduleDecision.

Covers:
- Enum parsing
- Invoice construction from loosely-typed records and skip reasons
- EmailEvent week normalisation and record round-trip
- ScheduleDecision and SendRequest serialization
"""

import pytest

from invoice_chaser.models import (
    EmailEvent,
    EmailType,
    Invoice,
    InvoiceStatus,
    Plan,
    ScheduleDecision,
    SendRequest,
)

from chase_fixtures import make_invoice, utc


# ============================================================================
# Enums
# ============================================================================

class TestEnums:

    def test_email_type_tags(self):
        assert EmailType.INITIAL.value == "invoice_initial"
        assert EmailType.REMINDER.value == "invoice_reminder"
        assert EmailType.DUE.value == "invoice_due"
        assert EmailType.LATE_WEEKLY.value == "invoice_late_weekly"

    def test_only_late_weekly_is_weekly(self):
        assert [t for t in EmailType if t.is_weekly] == [EmailType.LATE_WEEKLY]

    def test_email_type_parse(self):
        assert EmailType.parse("invoice_due") is EmailType.DUE
        assert EmailType.parse("invoice_late_week_3") is None

    @pytest.mark.parametrize("raw,expected", [
        ("pending", InvoiceStatus.PENDING),
        (" Paid ", InvoiceStatus.PAID),
        ("OVERDUE", InvoiceStatus.OVERDUE),
        ("void", None),
        (None, None),
    ])
    def test_invoice_status_parse(self, raw, expected):
        assert InvoiceStatus.parse(raw) is expected

    def test_plan_parse(self):
        assert Plan.parse("Business") is Plan.BUSINESS
        assert Plan.parse("enterprise") is None


# ============================================================================
# Invoice
# ============================================================================

class TestInvoice:

    def test_invoice_number_defaults_to_id_prefix(self):
        inv = Invoice(invoice_id="abcdef123456")
        assert inv.invoice_number == "abcdef12"

    def test_email_is_stripped(self):
        inv = make_invoice(customer_email="  ap@customer.example \n")
        assert inv.customer_email == "ap@customer.example"

    @pytest.mark.parametrize("kwargs,reason", [
        ({}, None),
        ({"status": InvoiceStatus.PAID}, "status is paid"),
        ({"status": None}, "status is unknown"),
        ({"customer_email": "  "}, "missing customer email"),
        ({"due_at": None}, "missing due date"),
    ])
    def test_skip_reason(self, kwargs, reason):
        assert make_invoice(**kwargs).skip_reason == reason

    def test_from_camel_case_record(self):
        inv = Invoice.from_record({
            "userId": "tenant_a",
            "customerEmail": "ap@customer.example",
            "customerName": "Acme",
            "dueAt": "2026-02-10T00:00:00Z",
            "status": "pending",
            "amount": "99.50",
            "paymentLink": "https://pay.example/x",
        }, invoice_id="inv_9")
        assert inv.invoice_id == "inv_9"
        assert inv.tenant_id == "tenant_a"
        assert inv.due_at == utc(2026, 2, 10)
        assert inv.amount == 99.5
        assert inv.payment_link == "https://pay.example/x"
        assert inv.skip_reason is None

    def test_from_snake_case_record_with_bad_values(self):
        inv = Invoice.from_record({
            "invoice_id": "inv_2",
            "tenant_id": "t",
            "customer_email": "x@y.example",
            "due_at": "garbage",
            "status": "archived",
            "amount": "n/a",
        })
        assert inv.due_at is None
        assert inv.status is None
        assert inv.amount == 0.0
        assert inv.skip_reason == "status is unknown"
        assert inv.auto_chase_enabled is True
        assert inv.next_check_at is None

    @pytest.mark.parametrize("raw,expected", [
        (False, False),
        ("false", False),
        ("no", False),
        (True, True),
        ("TRUE", True),
        (1, True),
    ])
    def test_auto_chase_flag(self, raw, expected):
        inv = Invoice.from_record({"invoiceId": "inv_1", "autoChaseEnabled": raw})
        assert inv.auto_chase_enabled is expected

    def test_next_chase_at_read_as_cursor(self):
        inv = Invoice.from_record({"invoiceId": "inv_1", "nextChaseAt": "2026-02-12T15:00:00Z"})
        assert inv.next_check_at == utc(2026, 2, 12, 15)


# ============================================================================
# EmailEvent
# ============================================================================

class TestEmailEvent:

    def test_week_number_dropped_for_non_weekly_types(self):
        event = EmailEvent("inv_1", "t", EmailType.DUE, utc(2026, 2, 10), week_number=3)
        assert event.week_number is None
        assert event.key == ("inv_1", EmailType.DUE, None)

    def test_week_number_kept_for_late_weekly(self):
        event = EmailEvent("inv_1", "t", EmailType.LATE_WEEKLY, utc(2026, 2, 17), week_number=1)
        assert event.key == ("inv_1", EmailType.LATE_WEEKLY, 1)

    def test_dict_round_trip(self):
        event = EmailEvent(
            "inv_1", "t", EmailType.LATE_WEEKLY, utc(2026, 2, 17, 15),
            week_number=2, recipient="ap@customer.example", message_id="m-1",
        )
        d = event.to_dict()
        assert d["type"] == "invoice_late_weekly"
        assert d["weekNumber"] == 2
        assert EmailEvent.from_record(d) == event

    def test_from_record_unknown_type_is_none(self):
        assert EmailEvent.from_record({"type": "newsletter", "createdAt": "2026-02-10T00:00:00Z"}) is None


# ============================================================================
# ScheduleDecision / SendRequest
# ============================================================================

class TestDecisionAndRequest:

    def test_is_due(self):
        d = ScheduleDecision(EmailType.DUE, utc(2026, 2, 10, 15))
        assert not d.is_due(utc(2026, 2, 10, 14, 59))
        assert d.is_due(utc(2026, 2, 10, 15))

    def test_label(self):
        assert ScheduleDecision(EmailType.DUE, utc(2026, 2, 10)).label == "invoice_due"
        assert ScheduleDecision(EmailType.LATE_WEEKLY, utc(2026, 2, 17), 1).label == "invoice_late_weekly (week 1)"

    def test_decision_to_dict(self):
        d = ScheduleDecision(EmailType.REMINDER, utc(2026, 2, 7, 15)).to_dict()
        assert d == {"type": "invoice_reminder", "scheduledFor": "2026-02-07T15:00:00.000000Z"}

    def test_send_request_carries_render_context(self):
        inv = make_invoice(payment_link="https://pay.example/1", invoice_number="INV-1")
        req = SendRequest.for_decision(inv, ScheduleDecision(EmailType.LATE_WEEKLY, utc(2026, 2, 17), 1))
        assert req.to == "ap@customer.example"
        assert req.week_number == 1
        d = req.to_dict()
        assert d["invoiceNumber"] == "INV-1"
        assert d["dueAt"] == "2026-02-10T00:00:00.000000Z"
        assert d["weekNumber"] == 1
