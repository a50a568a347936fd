"""
Invoice Chaser -- HTTP endpoints

    POST /api/invoices/process-emails      batch trigger (cron), shared secret
    GET  /api/invoices/process-emails      usage hint
    POST /api/invoices/send-chase-now      manual send for one invoice
    GET  /api/invoices/{invoice_id}/schedule   schedule preview
    GET  /health

The trigger secret is read from ``X-Cron-Secret`` or
``Authorization: Bearer <secret>`` and compared in constant time.

Tenant identity for the manual endpoints comes from an injected token
verifier (bearer token -> tenant id).  Without a verifier, development
deployments trust the ``X-Tenant-Id`` header; production refuses (503).

Run with:
    python -m invoice_chaser.main --serve
"""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ChaserConfig
from .dispatcher import BatchDispatcher, build_dispatcher
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TokenVerifier = Callable[[str], Optional[str]]


class SendChaseNowRequest(BaseModel):
    invoiceId: Optional[str] = None


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_trigger_secret(
    config: ChaserConfig,
    x_cron_secret: Optional[str],
    authorization: Optional[str],
) -> None:
    """Raise HTTPException unless the caller presented the trigger secret."""
    expected = config.security.trigger_secret
    if not expected:
        if config.is_production:
            raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
        logger.warning("CRON_SECRET not set; accepting unauthenticated trigger (development)")
        return

    supplied = x_cron_secret or _bearer(authorization)
    if not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(
    config: ChaserConfig,
    *,
    dispatcher: Optional[BatchDispatcher] = None,
    token_verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    """Build the FastAPI application.

    When *dispatcher* is omitted it is built from *config* on first use,
    so a configuration error surfaces as a 503 instead of a crash at
    startup.
    """
    app = FastAPI(title="Invoice Chaser")
    router = APIRouter(prefix="/api/invoices", tags=["invoices"])

    lock = threading.Lock()
    holder: dict[str, BatchDispatcher] = {}
    if dispatcher is not None:
        holder["dispatcher"] = dispatcher

    def get_dispatcher() -> BatchDispatcher:
        with lock:
            if "dispatcher" not in holder:
                try:
                    holder["dispatcher"] = build_dispatcher(config)
                except ConfigurationError as exc:
                    logger.error("Configuration error: %s", exc)
                    raise HTTPException(status_code=503, detail=f"Configuration error: {exc}") from exc
            return holder["dispatcher"]

    def resolve_tenant(authorization: Optional[str], x_tenant_id: Optional[str]) -> str:
        if token_verifier is not None:
            token = _bearer(authorization)
            tenant_id = token_verifier(token) if token else None
            if not tenant_id:
                raise HTTPException(status_code=401, detail="Authentication required")
            return tenant_id
        if config.is_production:
            raise HTTPException(status_code=503, detail="Authentication not configured")
        if not x_tenant_id or not x_tenant_id.strip():
            raise HTTPException(status_code=401, detail="Authentication required")
        return x_tenant_id.strip()

    # ------------------------------------------------------------------
    # Batch trigger
    # ------------------------------------------------------------------

    @router.post("/process-emails")
    def process_emails(
        x_cron_secret: Optional[str] = Header(None),
        authorization: Optional[str] = Header(None),
    ):
        verify_trigger_secret(config, x_cron_secret, authorization)
        dispatcher = get_dispatcher()
        try:
            result = dispatcher.run_batch()
        except ConfigurationError as exc:
            logger.error("Configuration error during batch: %s", exc)
            raise HTTPException(status_code=503, detail=f"Configuration error: {exc}") from exc
        except Exception as exc:
            logger.exception("Chase batch failed")
            raise HTTPException(status_code=500, detail="Failed to process emails") from exc
        return {"success": True, **result.to_dict()}

    @router.get("/process-emails")
    def process_emails_usage():
        return {
            "message": "Use POST to process scheduled invoice emails",
            "usage": "POST /api/invoices/process-emails with X-Cron-Secret or Authorization: Bearer <secret>",
        }

    # ------------------------------------------------------------------
    # Manual send
    # ------------------------------------------------------------------

    @router.post("/send-chase-now")
    def send_chase_now(
        body: SendChaseNowRequest,
        authorization: Optional[str] = Header(None),
        x_tenant_id: Optional[str] = Header(None),
    ):
        tenant_id = resolve_tenant(authorization, x_tenant_id)
        invoice_id = (body.invoiceId or "").strip()
        if not invoice_id:
            return JSONResponse(
                status_code=400,
                content={"error": "BAD_REQUEST", "code": "MISSING_INVOICE_ID",
                         "message": "invoiceId is required"},
            )
        result = get_dispatcher().send_chase_now(invoice_id, tenant_id)
        return JSONResponse(status_code=result.http_status, content=result.to_dict())

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    @router.get("/{invoice_id}/schedule")
    def invoice_schedule(
        invoice_id: str,
        authorization: Optional[str] = Header(None),
        x_tenant_id: Optional[str] = Header(None),
    ):
        tenant_id = resolve_tenant(authorization, x_tenant_id)
        dispatcher = get_dispatcher()
        invoice = dispatcher.invoices.get(invoice_id)
        if invoice is None or invoice.tenant_id != tenant_id:
            raise HTTPException(status_code=404, detail="Invoice not found")
        return dispatcher.preview(invoice)

    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": config.security.environment}

    return app
