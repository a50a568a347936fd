"""Tests for invoice_chaser.mailer -- outbox, logging mailer, recipient guard."""

import pytest

from invoice_chaser.exceptions import SendError
from invoice_chaser.mailer import LoggingMailer, OutboxMailer, RecipientGuard
from invoice_chaser.models import EmailType, ScheduleDecision, SendRequest

from chase_fixtures import make_invoice, utc


def _request(email="ap@customer.example"):
    inv = make_invoice(customer_email=email)
    return SendRequest.for_decision(inv, ScheduleDecision(EmailType.DUE, utc(2026, 2, 10, 15)))


class TestOutboxMailer:

    def test_appends_json_lines(self, tmp_path):
        outbox = OutboxMailer(tmp_path / "out" / "outbox.jsonl")
        first = outbox.send(_request())
        second = outbox.send(_request("billing@other.example"))
        rows = outbox.read_all()
        assert [r["messageId"] for r in rows] == [first, second]
        assert rows[0]["type"] == "invoice_due"
        assert rows[1]["to"] == "billing@other.example"
        assert "queuedAt" in rows[0]

    def test_read_all_missing_file(self, tmp_path):
        assert OutboxMailer(tmp_path / "none.jsonl").read_all() == []

    def test_unwritable_path_raises_send_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        outbox = OutboxMailer(blocker / "outbox.jsonl")
        with pytest.raises(SendError):
            outbox.send(_request())


class TestLoggingMailer:

    def test_records_requests(self):
        mailer = LoggingMailer()
        message_id = mailer.send(_request())
        assert message_id.startswith("log-")
        assert [r.to for r in mailer.sent] == ["ap@customer.example"]


class TestRecipientGuard:

    def test_no_allowlist_allows_everything(self):
        inner = LoggingMailer()
        RecipientGuard(inner).send(_request("anyone@anywhere.example"))
        assert inner.sent[0].to == "anyone@anywhere.example"

    def test_allowed_domain_passes_through(self):
        inner = LoggingMailer()
        RecipientGuard(inner, ["Customer.Example"]).send(_request())
        assert inner.sent[0].to == "ap@customer.example"

    def test_disallowed_domain_redirected(self):
        inner = LoggingMailer()
        guard = RecipientGuard(inner, ["internal.example"], redirect_to="qa@internal.example")
        guard.send(_request())
        assert inner.sent[0].to == "qa@internal.example"
        assert inner.sent[0].metadata["originalTo"] == "ap@customer.example"

    def test_disallowed_domain_without_redirect_refused(self):
        inner = LoggingMailer()
        guard = RecipientGuard(inner, ["internal.example"])
        with pytest.raises(SendError, match="customer.example"):
            guard.send(_request())
        assert inner.sent == []

    def test_malformed_address_not_allowed(self):
        guard = RecipientGuard(LoggingMailer(), ["internal.example"])
        assert not guard.is_allowed("no-at-sign")
