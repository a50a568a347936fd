"""Shared fixtures for the invoice_chaser test suite."""

import pytest

from invoice_chaser.invoice_store import InMemoryInvoiceStore
from invoice_chaser.ledger import InMemoryLedger
from invoice_chaser.mailer import LoggingMailer
from invoice_chaser.models import Plan
from invoice_chaser.plan_limiter import StaticPlanDirectory

_CHASER_ENV_VARS = [
    "APP_ENV",
    "CRON_SECRET",
    "CHASE_BATCH_LIMIT",
    "CHASE_DRY_RUN",
    "DRY_RUN",
    "EMAIL_COOLDOWN_MINUTES_OVERRIDE",
    "MAX_EMAILS_PER_DAY_PER_USER",
    "MAX_EMAILS_PER_DAY_GLOBAL",
    "ALLOWED_RECIPIENT_DOMAINS",
    "TEST_REDIRECT_EMAIL",
    "CHASER_DB_PATH",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's shell environment out of config-reading tests."""
    for name in _CHASER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def store():
    return InMemoryInvoiceStore()


@pytest.fixture
def mailer():
    return LoggingMailer()


@pytest.fixture
def plans():
    return StaticPlanDirectory({
        "tenant_a": Plan.STARTER,
        "tenant_b": Plan.STARTER,
        "tenant_t": Plan.TRIAL,
    })
