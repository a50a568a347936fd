"""Tests for invoice_chaser.data_loader -- XLSX seed workbook parsing.

Covers:
- Invoice sheet parsing with header aliases
- Optional Tenants sheet
- Loading from a path and from a bytes buffer
- Row-level warnings (missing id, duplicates, bad dates, unknown status/plan)
- Cell cleaning helpers
"""

import io
from datetime import datetime

import openpyxl
import pytest

from invoice_chaser.data_loader import (
    LoadResult,
    _parse_currency,
    _parse_date,
    load_workbook,
)
from invoice_chaser.models import InvoiceStatus, Plan

from chase_fixtures import utc


# ============================================================================
# Workbook builders
# ============================================================================

INVOICE_HEADER = [
    "Invoice ID", "Tenant ID", "Customer", "Email", "Total Due",
    "Due Date", "Status", "Payment Link", "Invoice #", "Initial Sent",
]


def _build(invoice_rows, tenant_rows=None, sheet_title="Invoices", header=INVOICE_HEADER):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append(header)
    for row in invoice_rows:
        ws.append(row)
    if tenant_rows is not None:
        tenants = wb.create_sheet("Tenants")
        tenants.append(["Tenant ID", "Plan"])
        for row in tenant_rows:
            tenants.append(row)
    return wb


def _save(wb, tmp_path):
    path = tmp_path / "seed.xlsx"
    wb.save(path)
    return path


@pytest.fixture
def seed_path(tmp_path):
    wb = _build(
        [
            ["inv_1", "tenant_a", "Acme", "ap@acme.example", 1250.5,
             datetime(2026, 2, 10), "pending", "https://pay.example/1", "INV-001", True],
            ["inv_2", "tenant_b", "Bolt", "billing@bolt.example", "$2,000.00",
             "2026-03-01", "Paid", None, None, "no"],
            [None, None, None, None, None, None, None, None, None, None],
            ["inv_3", "tenant_a", None, None, "(50.00)", "02/15/2026", None, None, None, None],
        ],
        tenant_rows=[["tenant_a", "Pro"], ["tenant_b", "trial"]],
    )
    return _save(wb, tmp_path)


# ============================================================================
# Full load
# ============================================================================

class TestLoadWorkbook:

    @pytest.fixture
    def result(self, seed_path) -> LoadResult:
        return load_workbook(seed_path)

    def test_counts(self, result):
        assert [i.invoice_id for i in result.invoices] == ["inv_1", "inv_2", "inv_3"]
        assert result.total_rows_scanned == 4
        assert result.empty_rows_skipped == 1
        assert result.invoice_sheet_used == "Invoices"

    def test_invoice_fields(self, result):
        inv = result.invoices[0]
        assert inv.tenant_id == "tenant_a"
        assert inv.customer_name == "Acme"
        assert inv.customer_email == "ap@acme.example"
        assert inv.amount == 1250.5
        assert inv.due_at == utc(2026, 2, 10)
        assert inv.status is InvoiceStatus.PENDING
        assert inv.payment_link == "https://pay.example/1"
        assert inv.invoice_number == "INV-001"

    def test_string_cells_coerced(self, result):
        inv2, inv3 = result.invoices[1], result.invoices[2]
        assert inv2.amount == 2000.0
        assert inv2.due_at == utc(2026, 3, 1)
        assert inv2.status is InvoiceStatus.PAID
        assert inv3.amount == -50.0
        assert inv3.due_at == utc(2026, 2, 15)
        assert inv3.status is InvoiceStatus.PENDING
        assert inv3.customer_name == "Customer"

    def test_initial_sent_flags(self, result):
        assert result.initial_sent == ["inv_1"]

    def test_tenant_plans(self, result):
        assert result.plans == {"tenant_a": Plan.PRO, "tenant_b": Plan.TRIAL}

    def test_derived_views(self, result):
        assert [i.invoice_id for i in result.pending_invoices] == ["inv_1", "inv_3"]
        assert [i.invoice_id for i in result.schedulable_invoices] == ["inv_1"]

    def test_missing_email_warned(self, result):
        assert any("missing customer email" in w for w in result.warnings)

    def test_print_summary(self, result, capsys):
        result.print_summary()
        out = capsys.readouterr().out
        assert "Seed Load Summary" in out
        assert "Total invoices    : 3" in out

    def test_auto_chase_defaults_on_without_column(self, result):
        assert all(inv.auto_chase_enabled for inv in result.invoices)

    def test_auto_chase_column(self, tmp_path):
        header = ["Invoice ID", "Email", "Due Date", "Auto Chase"]
        wb = _build(
            [
                ["inv_1", "a@b.example", "2026-02-10", "no"],
                ["inv_2", "a@b.example", "2026-02-10", None],
                ["inv_3", "a@b.example", "2026-02-10", True],
            ],
            header=header,
        )
        result = load_workbook(_save(wb, tmp_path))
        assert [i.auto_chase_enabled for i in result.invoices] == [False, True, True]

    def test_load_from_buffer(self, seed_path):
        buffer = io.BytesIO(seed_path.read_bytes())
        result = load_workbook(buffer)
        assert len(result.invoices) == 3
        assert result.source_file is None


# ============================================================================
# Warnings and fallbacks
# ============================================================================

class TestWarnings:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workbook(tmp_path / "nope.xlsx")

    def test_first_sheet_used_when_no_invoices_sheet(self, tmp_path):
        wb = _build([["inv_1", "t", "C", "a@b.example", 1, "2026-02-10", "pending", None, None, None]],
                    sheet_title="Export")
        result = load_workbook(_save(wb, tmp_path))
        assert result.invoice_sheet_used == "Export"
        assert len(result.invoices) == 1

    def test_no_id_column(self, tmp_path):
        wb = _build([["x"]], header=["Something Else"])
        result = load_workbook(_save(wb, tmp_path))
        assert result.invoices == []
        assert "no Invoice ID column" in result.warnings[0]

    def test_row_problems(self, tmp_path):
        wb = _build(
            [
                [None, "t", "C", "a@b.example", 1, "2026-02-10", "pending", None, None, None],
                ["inv_1", "t", "C", "a@b.example", 1, "not a date", "pending", None, None, None],
                ["inv_1", "t", "C", "a@b.example", 1, "2026-02-10", "pending", None, None, None],
                ["inv_2", "t", "C", "a@b.example", 1, "2026-02-10", "void", None, None, None],
            ],
            tenant_rows=[["t", "platinum"]],
        )
        result = load_workbook(_save(wb, tmp_path))
        joined = "\n".join(result.warnings)

        assert "missing invoice id" in joined
        assert "could not parse date 'not a date'" in joined
        assert "duplicate invoice id inv_1" in joined
        assert "unknown status 'void'" in joined
        assert "unknown plan 'platinum'" in joined

        assert [i.invoice_id for i in result.invoices] == ["inv_1", "inv_2"]
        assert result.invoices[0].due_at is None
        assert result.invoices[1].status is None
        assert result.plans == {}


# ============================================================================
# Cell helpers
# ============================================================================

class TestCellHelpers:

    @pytest.mark.parametrize("raw,expected", [
        (None, 0.0),
        (12, 12.0),
        ("$1,234.56", 1234.56),
        ("($500.00)", -500.0),
        ("#N/A", 0.0),
        ("abc", 0.0),
    ])
    def test_parse_currency(self, raw, expected):
        assert _parse_currency(raw) == expected

    @pytest.mark.parametrize("raw", ["2026-02-10", "02/10/2026", "Feb 10, 2026", 46063])
    def test_parse_date_formats(self, raw):
        warnings = []
        assert _parse_date(raw, "ctx", warnings).isoformat() == "2026-02-10"
        assert warnings == []
