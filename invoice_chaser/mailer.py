"""
Invoice Chaser -- Mailer collaborators

The scheduler never renders or transmits email itself.  It hands a
``SendRequest`` (recipient, type tag, invoice context) to a ``Mailer`` and
records the returned message id in the ledger.  A mailer signals failure
by raising ``SendError``; the dispatcher then writes no ledger entry so the
email is retried on the next batch.

Implementations:

    OutboxMailer    - appends one JSON line per request to an outbox file
                      consumed by the downstream renderer/sender
    LoggingMailer   - logs and keeps requests in memory (tests, local runs)
    RecipientGuard  - wrapper enforcing a recipient-domain allowlist with
                      an optional test redirect address
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional, Protocol

from .clock import format_instant, utc_now
from .exceptions import SendError
from .models import SendRequest

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """Hands one outbound email to the delivery pipeline."""

    def send(self, request: SendRequest) -> str:
        """Return the provider message id; raise ``SendError`` on failure."""
        ...


# ---------------------------------------------------------------------------
# Outbox (JSON lines)
# ---------------------------------------------------------------------------

class OutboxMailer:
    """Writes each request as a JSON line to *outbox_path*."""

    def __init__(self, outbox_path: str | Path):
        self.outbox_path = Path(outbox_path)
        self._lock = threading.Lock()

    def send(self, request: SendRequest) -> str:
        message_id = f"outbox-{uuid.uuid4()}"
        payload = request.to_dict()
        payload["messageId"] = message_id
        payload["queuedAt"] = format_instant(utc_now())
        try:
            with self._lock:
                self.outbox_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.outbox_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, default=str) + "\n")
        except OSError as exc:
            raise SendError(
                f"Could not write outbox {self.outbox_path}: {exc}",
                invoice_id=request.invoice_id,
            ) from exc
        logger.debug("Queued %s for %s -> %s", request.email_type.value, request.invoice_id, message_id)
        return message_id

    def read_all(self) -> list[dict]:
        """Parse the outbox back into dicts (oldest first)."""
        if not self.outbox_path.exists():
            return []
        with open(self.outbox_path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


# ---------------------------------------------------------------------------
# In-memory logging mailer
# ---------------------------------------------------------------------------

class LoggingMailer:
    """Logs each request and keeps it in ``sent``."""

    def __init__(self):
        self.sent: list[SendRequest] = []
        self._lock = threading.Lock()

    def send(self, request: SendRequest) -> str:
        with self._lock:
            self.sent.append(request)
        message_id = f"log-{uuid.uuid4()}"
        logger.info(
            "Mail %s to %s (invoice %s%s)",
            request.email_type.value,
            request.to,
            request.invoice_id,
            f", week {request.week_number}" if request.week_number else "",
        )
        return message_id


# ---------------------------------------------------------------------------
# Recipient allowlist
# ---------------------------------------------------------------------------

def _domain_of(address: str) -> Optional[str]:
    parts = address.split("@")
    if len(parts) != 2:
        return None
    return parts[1].strip().lower() or None


class RecipientGuard:
    """Restricts outbound recipients to an allowlist of domains.

    With no domains configured every recipient is allowed.  A recipient
    outside the allowlist is rewritten to *redirect_to* when set (the
    original address is kept in ``metadata["originalTo"]``); otherwise the
    send is refused with ``SendError``.
    """

    def __init__(
        self,
        inner: Mailer,
        allowed_domains: Iterable[str] = (),
        redirect_to: Optional[str] = None,
    ):
        self.inner = inner
        self.allowed_domains = {d.strip().lower() for d in allowed_domains if d.strip()}
        self.redirect_to = (redirect_to or "").strip() or None

    def is_allowed(self, address: str) -> bool:
        if not self.allowed_domains:
            return True
        return _domain_of(address) in self.allowed_domains

    def send(self, request: SendRequest) -> str:
        if self.is_allowed(request.to):
            return self.inner.send(request)

        if self.redirect_to is None:
            raise SendError(
                f"Recipient domain not allowed and no redirect configured: {_domain_of(request.to)}",
                invoice_id=request.invoice_id,
            )

        logger.info("Redirecting %s for invoice %s to %s", request.to, request.invoice_id, self.redirect_to)
        metadata = dict(request.metadata)
        metadata["originalTo"] = request.to
        return self.inner.send(replace(request, to=self.redirect_to, metadata=metadata))
