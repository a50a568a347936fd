"""Invoice Chaser - XLSX Seed Loader.

Reads invoices (and optionally tenant plans) from a workbook so a local
database can be seeded for dry runs and demos.

Supported data sources
~~~~~~~~~~~~~~~~~~~~~~
* **File path** -- local ``.xlsx`` file.
* **Bytes buffer** -- ``io.BytesIO``, e.g. an uploaded file.

Sheet layout:

+-----------------------+---------------------------------------------------+
| Sheet                 | Purpose                                           |
+=======================+===================================================+
| ``Invoices``          | One row per invoice (first sheet if not present)  |
| ``Tenants``           | Optional tenant id -> plan mapping                |
+-----------------------+---------------------------------------------------+

Columns are matched by *header text* (case-insensitive, with aliases), so
column order does not matter.  Bad rows become warnings, never exceptions.

Usage::

    from invoice_chaser.data_loader import load_workbook

    result = load_workbook("data/invoices.xlsx")
    print(f"Invoices: {len(result.invoices)}")
    result.print_summary()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .clock import to_instant
from .models import Invoice, InvoiceStatus, Plan

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_INVOICES_SHEET = "Invoices"
_TENANTS_SHEET = "Tenants"

_INVOICE_HEADERS: dict[str, list[str]] = {
    "invoice_id":     ["Invoice ID", "InvoiceId", "ID"],
    "tenant_id":      ["Tenant ID", "TenantId", "User ID", "UserId", "Business ID"],
    "customer_name":  ["Customer Name", "Customer"],
    "customer_email": ["Customer Email", "Email"],
    "amount":         ["Amount", "Total Due", "Total"],
    "due_date":       ["Due Date", "Due", "Due At"],
    "status":         ["Status"],
    "payment_link":   ["Payment Link", "Pay Link"],
    "invoice_number": ["Invoice Number", "Invoice No", "Invoice #"],
    "initial_sent":   ["Initial Sent", "Initial Email Sent"],
    "auto_chase":     ["Auto Chase", "Auto Chase Enabled", "AutoChaseEnabled"],
}

_TENANT_HEADERS: dict[str, list[str]] = {
    "tenant_id": ["Tenant ID", "TenantId", "User ID", "UserId", "Business ID"],
    "plan":      ["Plan", "Subscription"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_workbook`."""

    invoices: list[Invoice] = field(default_factory=list)
    plans: dict[str, Plan] = field(default_factory=dict)
    initial_sent: list[str] = field(default_factory=list)   # invoice ids

    # Metadata
    source_file: str | None = None
    invoice_sheet_used: str | None = None
    total_rows_scanned: int = 0
    empty_rows_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def pending_invoices(self) -> list[Invoice]:
        return [i for i in self.invoices if i.is_pending]

    @property
    def schedulable_invoices(self) -> list[Invoice]:
        return [i for i in self.invoices if i.skip_reason is None]

    @property
    def total_amount(self) -> float:
        return sum(i.amount for i in self.invoices)

    def print_summary(self) -> None:
        """Print a human-readable summary of what was loaded."""
        status_counts: dict[str, int] = {}
        for inv in self.invoices:
            label = inv.status.value if inv.status else "unknown"
            status_counts[label] = status_counts.get(label, 0) + 1

        print("=" * 65)
        print("  Invoice Chaser -- Seed Load Summary")
        print("=" * 65)
        print(f"  Source file       : {self.source_file or '(bytes buffer)'}")
        print(f"  Invoice sheet     : {self.invoice_sheet_used}")
        print(f"  Rows scanned      : {self.total_rows_scanned}")
        print(f"  Empty rows skipped: {self.empty_rows_skipped}")
        print("-" * 65)
        print(f"  Total invoices    : {len(self.invoices)}")
        print(f"  Schedulable       : {len(self.schedulable_invoices)}")
        print(f"  Initial sent      : {len(self.initial_sent)}")
        print(f"  Total amount      : ${self.total_amount:,.2f}")
        print(f"  Tenants with plan : {len(self.plans)}")
        print("-" * 65)
        print("  Status distribution:")
        for status, count in sorted(status_counts.items()):
            print(f"    {status:<22s}: {count}")
        if self.warnings:
            print("-" * 65)
            print(f"  Warnings ({len(self.warnings)}):")
            for w in self.warnings[:20]:
                print(f"    - {w}")
            if len(self.warnings) > 20:
                print(f"    ... and {len(self.warnings) - 20} more")
        print("=" * 65)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_workbook(source: Union[str, Path, IO[bytes]]) -> LoadResult:
    """Load invoices and tenant plans from a seed workbook.

    Parameters
    ----------
    source:
        File path or binary buffer.

    Returns
    -------
    LoadResult
        Parsed invoices, plans, and any warnings.

    Raises
    ------
    FileNotFoundError
        If *source* is a path that does not exist.
    """
    wb = _open_workbook(source)
    result = LoadResult(source_file=str(source) if isinstance(source, (str, Path)) else None)

    try:
        ws = wb[_INVOICES_SHEET] if _INVOICES_SHEET in wb.sheetnames else wb.worksheets[0]
        result.invoice_sheet_used = ws.title
        _parse_invoices(ws, result)

        if _TENANTS_SHEET in wb.sheetnames:
            _parse_tenants(wb[_TENANTS_SHEET], result)
    finally:
        wb.close()

    logger.info(
        "Loaded %d invoice(s), %d tenant plan(s), %d warning(s) from %s",
        len(result.invoices), len(result.plans), len(result.warnings),
        result.source_file or "buffer",
    )
    return result


def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True)


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

def _parse_invoices(ws: Worksheet, result: LoadResult) -> None:
    header_map = _build_header_map(ws, _INVOICE_HEADERS)
    if "invoice_id" not in header_map:
        result.warnings.append(f"Sheet '{ws.title}': no Invoice ID column; nothing loaded")
        return

    seen: set[str] = set()
    for row_idx, row in enumerate(ws.iter_rows(min_row=2), start=2):
        result.total_rows_scanned += 1
        if all(c.value is None for c in row):
            result.empty_rows_skipped += 1
            continue

        ctx = f"{ws.title} row {row_idx}"
        inv_id = _clean_str(_cell_value(row, header_map, "invoice_id"))
        if not inv_id:
            result.warnings.append(f"{ctx}: missing invoice id, row skipped")
            continue
        if inv_id in seen:
            result.warnings.append(f"{ctx}: duplicate invoice id {inv_id}, row skipped")
            continue
        seen.add(inv_id)

        due = _parse_date(_cell_value(row, header_map, "due_date"), ctx, result.warnings)

        raw_status = _clean_str(_cell_value(row, header_map, "status")) or "pending"
        status = InvoiceStatus.parse(raw_status)
        if status is None:
            result.warnings.append(f"{ctx}: unknown status '{raw_status}'")

        email = _clean_str(_cell_value(row, header_map, "customer_email"))
        if not email:
            result.warnings.append(f"{ctx}: missing customer email")

        result.invoices.append(Invoice(
            invoice_id=inv_id,
            tenant_id=_clean_str(_cell_value(row, header_map, "tenant_id")),
            customer_email=email,
            due_at=to_instant(due),
            status=status,
            customer_name=_clean_str(_cell_value(row, header_map, "customer_name")) or "Customer",
            amount=_parse_currency(_cell_value(row, header_map, "amount")),
            payment_link=_clean_str_or_none(_cell_value(row, header_map, "payment_link")),
            invoice_number=_clean_str(_cell_value(row, header_map, "invoice_number")),
            auto_chase_enabled=_parse_auto_chase(_cell_value(row, header_map, "auto_chase")),
        ))
        if _parse_bool(_cell_value(row, header_map, "initial_sent")):
            result.initial_sent.append(inv_id)


def _parse_tenants(ws: Worksheet, result: LoadResult) -> None:
    header_map = _build_header_map(ws, _TENANT_HEADERS)
    if "tenant_id" not in header_map or "plan" not in header_map:
        result.warnings.append(f"Sheet '{ws.title}': needs Tenant ID and Plan columns")
        return

    for row_idx, row in enumerate(ws.iter_rows(min_row=2), start=2):
        tenant_id = _clean_str(_cell_value(row, header_map, "tenant_id"))
        if not tenant_id:
            continue
        raw_plan = _clean_str(_cell_value(row, header_map, "plan"))
        plan = Plan.parse(raw_plan)
        if plan is None:
            result.warnings.append(f"{ws.title} row {row_idx}: unknown plan '{raw_plan}' for {tenant_id}")
            continue
        result.plans[tenant_id] = plan


def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Reads row 1 of the worksheet and matches each header cell against
    the known aliases in *header_spec*.
    """
    row1 = [str(c.value).strip().lower() if c.value is not None else None for c in ws[1]]

    header_map: dict[str, int] = {}
    for logical_name, aliases in header_spec.items():
        wanted = {a.lower() for a in aliases}
        for idx, text in enumerate(row1):
            if text in wanted:
                header_map[logical_name] = idx
                break

    logger.debug("Header map (%d/%d): %s", len(header_map), len(header_spec), list(header_map))
    return header_map


# ---------------------------------------------------------------------------
# Cell reading helpers
# ---------------------------------------------------------------------------

def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None if absent."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _clean_str_or_none(val) -> str | None:
    return _clean_str(val) or None


def _parse_bool(val) -> bool:
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ("true", "1", "yes", "y")


def _parse_auto_chase(val) -> bool:
    """Blank cells (or no column) keep auto-chase on."""
    if _clean_str(val) == "":
        return True
    return _parse_bool(val)


def _parse_currency(val, default: float = 0.0) -> float:
    """Parse a dollar-amount cell value.

    Handles numeric cells, ``"$1,234.56"`` strings and parenthesized
    negatives such as ``"($500.00)"``.
    """
    if val is None:
        return default
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return default

    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    s = s.replace("$", "").replace(",", "").strip()
    try:
        amount = float(s)
    except ValueError:
        return default
    return -amount if negative else amount


def _parse_date(val, context: str, warnings: list[str]) -> date | None:
    """Parse a due-date cell value.

    openpyxl returns ``datetime`` for date-typed cells; Excel serial
    numbers and common string formats are also accepted.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val

    if isinstance(val, (int, float)) and not isinstance(val, bool):
        serial = int(val)
        if 40000 < serial < 60000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()

    s = str(val).strip()
    if s in _NULL_SIGNALS:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y-%m-%dT%H:%M:%S", "%b %d, %Y", "%B %d, %Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    warnings.append(f"{context}: could not parse date '{val}'")
    return None
