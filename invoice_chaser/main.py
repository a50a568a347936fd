"""Invoice Chaser -- Command-line entry point.

Runs one chase batch against the local SQLite database, previews the
schedule for a single invoice, or serves the HTTP endpoints:

    1. Load configuration (config.yaml or defaults, then env vars)
    2. Optionally seed invoices / tenant plans from an XLSX workbook
    3. Run one batch (or a preview) and print a summary

Usage::

    # One batch with the configured database:
    python -m invoice_chaser.main

    # Seed from a workbook and simulate:
    python -m invoice_chaser.main --xlsx data/invoices.xlsx --dry-run

    # Show what would be sent for one invoice:
    python -m invoice_chaser.main --preview inv_123

    # Serve the HTTP API:
    python -m invoice_chaser.main --serve --port 8000
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import uvicorn

from .api import create_app
from .clock import utc_now
from .config import ChaserConfig, get_config
from .data_loader import LoadResult, load_workbook
from .dispatcher import BatchDispatcher, BatchResult, build_dispatcher
from .exceptions import ConfigurationError, DuplicateEventError, InvoiceChaserError
from .models import EmailEvent, EmailType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

def seed_from_workbook(dispatcher: BatchDispatcher, xlsx_path: str | Path) -> LoadResult:
    """Upsert invoices and plans from *xlsx_path* into the dispatcher's stores.

    Rows flagged "Initial Sent" get a real ``invoice_initial`` ledger event
    dated one day back, so they do not count toward today's caps.
    """
    result = load_workbook(xlsx_path)
    store = dispatcher.invoices

    for inv in result.invoices:
        store.upsert_invoice(inv)
    for tenant_id, plan in result.plans.items():
        store.set_plan(tenant_id, plan)

    seeded_at = utc_now() - timedelta(days=1)
    by_id = {inv.invoice_id: inv for inv in result.invoices}
    for invoice_id in result.initial_sent:
        if dispatcher.ledger.has_event(invoice_id, EmailType.INITIAL):
            continue
        inv = by_id[invoice_id]
        try:
            dispatcher.ledger.record(EmailEvent(
                invoice_id=invoice_id,
                tenant_id=inv.tenant_id,
                email_type=EmailType.INITIAL,
                created_at=seeded_at,
                recipient=inv.customer_email,
            ))
        except DuplicateEventError:
            logger.debug("Initial event for %s already present", invoice_id)

    logger.info("Seeded %d invoice(s) from %s", len(result.invoices), xlsx_path)
    return result


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def run_chase(
    cfg: ChaserConfig,
    *,
    xlsx_path: Optional[str] = None,
    preview: Optional[str] = None,
) -> Optional[BatchResult]:
    """Run one batch (or print a preview) with the given configuration."""
    dispatcher = build_dispatcher(cfg)

    if xlsx_path:
        load = seed_from_workbook(dispatcher, xlsx_path)
        load.print_summary()

    if preview:
        invoice = dispatcher.invoices.get(preview)
        if invoice is None:
            raise FileNotFoundError(f"Invoice not found: {preview}")
        print(json.dumps(dispatcher.preview(invoice), indent=2))
        return None

    result = dispatcher.run_batch()
    print(result.summary())
    return result


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for the chase scheduler.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    parser = argparse.ArgumentParser(
        description="Invoice Chaser - send scheduled invoice chase emails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m invoice_chaser.main\n"
            "  python -m invoice_chaser.main --xlsx data/invoices.xlsx --dry-run\n"
            "  python -m invoice_chaser.main --preview inv_123\n"
            "  python -m invoice_chaser.main --serve --port 8000\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (overrides config)",
    )
    parser.add_argument(
        "--xlsx",
        type=str,
        default=None,
        help="Seed invoices and tenant plans from this workbook first",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate sends; record dry-run events only",
    )
    parser.add_argument(
        "--preview",
        metavar="INVOICE_ID",
        default=None,
        help="Print the schedule for one invoice instead of running a batch",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Serve the HTTP API instead of running a batch",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address for --serve")
    parser.add_argument("--port", type=int, default=8000, help="Port for --serve")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        cfg = get_config(args.config)
        if args.db:
            cfg.storage.database_path = args.db
        if args.dry_run:
            cfg.dispatch.dry_run = True
        if cfg.storage.log_file:
            log_path = cfg.storage.resolve(cfg.storage.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_path, encoding="utf-8")
            handler.setFormatter(logging.Formatter(
                "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
            ))
            logging.getLogger().addHandler(handler)

        if args.serve:
            uvicorn.run(create_app(cfg), host=args.host, port=args.port)
            return 0

        result = run_chase(cfg, xlsx_path=args.xlsx, preview=args.preview)
        if result is not None and (result.error_count or result.ledger_errors):
            print(f"\nBatch finished with {len(result.errors)} error(s).")
            return 1
        return 0

    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        print(f"\nCONFIG ERROR: {exc}")
        return 1
    except InvoiceChaserError as exc:
        logger.error("Chase error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error in chase run")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
