"""Tests for invoice_chaser.invoice_store -- candidate pages, check cursor and plan lookup."""

import sqlite3
from datetime import timedelta

import pytest

from invoice_chaser.invoice_store import InMemoryInvoiceStore, SQLiteInvoiceStore
from invoice_chaser.models import InvoiceStatus, Plan

from chase_fixtures import make_invoice, utc

NOW = utc(2026, 3, 1, 16)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryInvoiceStore()
    return SQLiteInvoiceStore(tmp_path / "chaser.db")


# ============================================================================
# Candidate window
# ============================================================================

class TestFetchCandidates:

    def test_window_and_status_filter(self, any_store):
        any_store.upsert_invoice(make_invoice("in_window_past", due_at=utc(2026, 1, 15)))
        any_store.upsert_invoice(make_invoice("in_window_future", due_at=utc(2026, 3, 20)))
        any_store.upsert_invoice(make_invoice("too_old", due_at=utc(2025, 12, 1)))
        any_store.upsert_invoice(make_invoice("too_far", due_at=utc(2026, 4, 15)))
        any_store.upsert_invoice(make_invoice("paid", due_at=utc(2026, 2, 20), status=InvoiceStatus.PAID))
        any_store.upsert_invoice(make_invoice("no_due", due_at=None))

        ids = {inv.invoice_id for inv in any_store.fetch_candidates(NOW, 100)}
        assert ids == {"in_window_past", "in_window_future"}

    def test_limit(self, any_store):
        for i in range(5):
            any_store.upsert_invoice(make_invoice(f"inv_{i}", due_at=utc(2026, 2, 20 + i)))
        assert len(any_store.fetch_candidates(NOW, 3)) == 3

    def test_custom_window(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", due_at=utc(2026, 2, 1)))
        assert any_store.fetch_candidates(NOW, 10, lookback_days=10) == []

    def test_candidates_keep_missing_email(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", customer_email="", due_at=utc(2026, 2, 20)))
        page = any_store.fetch_candidates(NOW, 10)
        assert [inv.skip_reason for inv in page] == ["missing customer email"]

    def test_all_of_late_week_eight_in_default_window(self, any_store):
        # Day 62 past due is the last day of week 8.
        any_store.upsert_invoice(make_invoice("day_62", due_at=NOW - timedelta(days=62)))
        any_store.upsert_invoice(make_invoice("day_64", due_at=NOW - timedelta(days=64)))
        ids = [inv.invoice_id for inv in any_store.fetch_candidates(NOW, 10)]
        assert ids == ["day_62"]

    def test_auto_chase_disabled_excluded(self, any_store):
        any_store.upsert_invoice(make_invoice("opted_in", due_at=utc(2026, 2, 20)))
        any_store.upsert_invoice(make_invoice("opted_out", due_at=utc(2026, 2, 20), auto_chase_enabled=False))
        assert [inv.invoice_id for inv in any_store.fetch_candidates(NOW, 10)] == ["opted_in"]

        any_store.set_auto_chase("opted_in", False)
        any_store.set_auto_chase("opted_out", True)
        assert [inv.invoice_id for inv in any_store.fetch_candidates(NOW, 10)] == ["opted_out"]


# ============================================================================
# Check cursor
# ============================================================================

class TestCheckCursor:

    def test_future_cursor_hidden_until_reached(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", due_at=utc(2026, 2, 20)))
        any_store.reschedule("inv_1", NOW + timedelta(hours=1))

        assert any_store.fetch_candidates(NOW, 10) == []
        later = any_store.fetch_candidates(NOW + timedelta(hours=1), 10)
        assert [inv.invoice_id for inv in later] == ["inv_1"]
        assert later[0].next_check_at == NOW + timedelta(hours=1)

    def test_never_checked_first_then_oldest_cursor(self, any_store):
        for i in range(4):
            any_store.upsert_invoice(make_invoice(f"inv_{i}", due_at=utc(2026, 2, 10 + i)))
        any_store.reschedule("inv_0", NOW - timedelta(minutes=5))
        any_store.reschedule("inv_1", NOW - timedelta(hours=2))

        page = any_store.fetch_candidates(NOW, 10)
        assert [inv.invoice_id for inv in page] == ["inv_2", "inv_3", "inv_1", "inv_0"]
        assert [inv.invoice_id for inv in any_store.fetch_candidates(NOW, 2)] == ["inv_2", "inv_3"]

    def test_reschedule_none_returns_to_front(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", due_at=utc(2026, 2, 20)))
        any_store.reschedule("inv_1", NOW + timedelta(days=3))
        any_store.reschedule("inv_1", None)
        assert any_store.get("inv_1").next_check_at is None
        assert len(any_store.fetch_candidates(NOW, 10)) == 1

    def test_upsert_resets_cursor(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", due_at=utc(2026, 2, 20)))
        any_store.reschedule("inv_1", NOW + timedelta(days=3))
        any_store.upsert_invoice(make_invoice("inv_1", due_at=utc(2026, 2, 25)))
        assert any_store.get("inv_1").next_check_at is None


# ============================================================================
# Reads and writes
# ============================================================================

class TestStoreReadWrite:

    def test_get_round_trip(self, any_store):
        original = make_invoice("inv_1", payment_link="https://pay.example/1", invoice_number="INV-1")
        any_store.upsert_invoice(original)
        loaded = any_store.get("inv_1")
        assert loaded.tenant_id == "tenant_a"
        assert loaded.due_at == original.due_at
        assert loaded.payment_link == "https://pay.example/1"
        assert loaded.invoice_number == "INV-1"
        assert any_store.get("missing") is None

    def test_mark_paid(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1"))
        any_store.reschedule("inv_1", NOW)
        any_store.mark_paid("inv_1")
        assert any_store.get("inv_1").status is InvoiceStatus.PAID
        assert any_store.get("inv_1").auto_chase_enabled is False
        assert any_store.get("inv_1").next_check_at is None

    def test_upsert_replaces(self, any_store):
        any_store.upsert_invoice(make_invoice("inv_1", amount=10.0))
        any_store.upsert_invoice(make_invoice("inv_1", amount=20.0))
        assert any_store.get("inv_1").amount == 20.0


# ============================================================================
# Tenant plans (SQLite)
# ============================================================================

class TestSQLitePlans:

    def test_plan_lookup(self, tmp_path):
        store = SQLiteInvoiceStore(tmp_path / "chaser.db")
        store.set_plan("tenant_a", Plan.PRO)
        assert store.plan_for("tenant_a") is Plan.PRO
        store.set_plan("tenant_a", "business")
        assert store.plan_for("tenant_a") is Plan.BUSINESS

    @pytest.mark.parametrize("environment,expected", [
        ("development", Plan.TRIAL),
        ("production", Plan.STARTER),
    ])
    def test_missing_or_unknown_plan_falls_back(self, tmp_path, environment, expected):
        store = SQLiteInvoiceStore(tmp_path / "chaser.db", environment=environment)
        store.set_plan("tenant_x", "platinum")
        assert store.plan_for("tenant_x") is expected
        assert store.plan_for("tenant_unknown") is expected

    def test_count(self, tmp_path):
        store = SQLiteInvoiceStore(tmp_path / "chaser.db")
        store.upsert_invoice(make_invoice("inv_1"))
        store.upsert_invoice(make_invoice("inv_2"))
        assert store.count() == 2


# ============================================================================
# Schema upgrade (SQLite)
# ============================================================================

class TestSchemaUpgrade:

    def test_database_without_cursor_columns_is_upgraded(self, tmp_path):
        db = tmp_path / "chaser.db"
        conn = sqlite3.connect(db)
        conn.executescript("""
            CREATE TABLE invoices (
                invoice_id TEXT PRIMARY KEY, tenant_id TEXT NOT NULL DEFAULT '',
                customer_email TEXT NOT NULL DEFAULT '', customer_name TEXT NOT NULL DEFAULT 'Customer',
                due_at TEXT, status TEXT NOT NULL DEFAULT 'pending', amount REAL NOT NULL DEFAULT 0.0,
                payment_link TEXT, invoice_number TEXT NOT NULL DEFAULT '', updated_at TEXT NOT NULL DEFAULT ''
            );
            INSERT INTO invoices (invoice_id, customer_email, due_at)
                VALUES ('legacy', 'ap@customer.example', '2026-02-20T00:00:00.000000Z');
        """)
        conn.commit()
        conn.close()

        store = SQLiteInvoiceStore(db)

        legacy = store.get("legacy")
        assert legacy.auto_chase_enabled is True
        assert legacy.next_check_at is None
        assert [inv.invoice_id for inv in store.fetch_candidates(NOW, 10)] == ["legacy"]
