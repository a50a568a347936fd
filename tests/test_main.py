"""Tests for invoice_chaser.main -- CLI runs against a temporary database."""

import json
from datetime import date, timedelta

import openpyxl
import pytest

from invoice_chaser.ledger import SQLiteLedger
from invoice_chaser.main import main
from invoice_chaser.models import EmailType


@pytest.fixture
def workspace(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "storage:\n"
        f"  database_path: {tmp_path / 'chaser.db'}\n"
        f"  outbox_path: {tmp_path / 'outbox.jsonl'}\n"
        "  log_file: ''\n",
        encoding="utf-8",
    )

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Invoices"
    ws.append(["Invoice ID", "Tenant ID", "Customer Email", "Due Date", "Status", "Initial Sent"])
    overdue = (date.today() - timedelta(days=2)).isoformat()
    ws.append(["inv_1", "tenant_a", "ap@acme.example", overdue, "pending", "yes"])
    xlsx = tmp_path / "seed.xlsx"
    wb.save(xlsx)
    return tmp_path, config, xlsx


class TestMain:

    def test_seed_and_run(self, workspace, capsys):
        tmp_path, config, xlsx = workspace
        assert main(["--config", str(config), "--xlsx", str(xlsx)]) == 0

        out = capsys.readouterr().out
        assert "CHASE BATCH SUMMARY" in out
        ledger = SQLiteLedger(tmp_path / "chaser.db")
        assert ledger.has_event("inv_1", EmailType.INITIAL)
        assert ledger.has_event("inv_1", EmailType.DUE)
        assert len((tmp_path / "outbox.jsonl").read_text().splitlines()) == 1

    def test_reseed_keeps_single_initial_event(self, workspace):
        tmp_path, config, xlsx = workspace
        main(["--config", str(config), "--xlsx", str(xlsx), "--dry-run"])
        main(["--config", str(config), "--xlsx", str(xlsx), "--dry-run"])
        ledger = SQLiteLedger(tmp_path / "chaser.db")
        assert ledger.count_invoice_events("inv_1", EmailType.INITIAL) == 1
        assert not ledger.has_event("inv_1", EmailType.DUE)
        assert not (tmp_path / "outbox.jsonl").exists()

    def test_preview(self, workspace, capsys):
        _, config, xlsx = workspace
        assert main(["--config", str(config), "--xlsx", str(xlsx), "--preview", "inv_1"]) == 0
        out = capsys.readouterr().out
        preview = json.loads(out[out.index("{"):])
        assert preview["invoiceId"] == "inv_1"
        assert preview["next"]["type"] == "invoice_due"

    def test_db_flag_overrides_config(self, workspace):
        tmp_path, config, xlsx = workspace
        other = tmp_path / "other.db"
        assert main(["--config", str(config), "--db", str(other), "--xlsx", str(xlsx)]) == 0
        assert other.exists()

    def test_missing_workbook(self, workspace):
        _, config, _ = workspace
        assert main(["--config", str(config), "--xlsx", "/nonexistent/seed.xlsx"]) == 1

    def test_missing_config(self, tmp_path):
        assert main(["--config", str(tmp_path / "nope.yaml")]) == 1

    def test_preview_unknown_invoice(self, workspace):
        _, config, _ = workspace
        assert main(["--config", str(config), "--preview", "ghost"]) == 1
