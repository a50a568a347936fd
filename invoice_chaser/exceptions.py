"""Error taxonomy for the chase scheduler.

Only genuine failures are exceptions.  Rate-limit denials and "nothing is
owed" are ordinary outcomes and are returned as values, never raised.
"""

from __future__ import annotations


class InvoiceChaserError(Exception):
    """Base class for all chase scheduler errors."""


class ConfigurationError(InvoiceChaserError):
    """Unsafe or incomplete configuration.

    Fails the whole invocation (HTTP 503) instead of proceeding with
    defaults.
    """


class SendError(InvoiceChaserError):
    """The mailer could not hand off an outbound email.

    No ledger entry is written, so the next batch may retry safely.
    """

    def __init__(self, message: str, *, invoice_id: str = "") -> None:
        super().__init__(message)
        self.invoice_id = invoice_id


class LedgerWriteError(InvoiceChaserError):
    """An email event could not be appended to the ledger.

    When raised after a successful send, a real email went out with no
    idempotency record.
    """

    def __init__(self, message: str, *, invoice_id: str = "") -> None:
        super().__init__(message)
        self.invoice_id = invoice_id


class DuplicateEventError(LedgerWriteError):
    """A real event for the same (invoice, type, week) key already exists."""
