"""Square webhook ingestion.

Payment events are recorded through the charge orchestrator and deduplicated
by gateway payment id, so a webhook arriving before or after the synchronous
charge response leaves exactly one history entry.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.models.billing import TenantBilling
from app.services.billing.charges import ChargeOrchestrator
from app.services.billing.exceptions import BillingError
from app.services.billing.ledger import BillingLedger
from app.services.billing.notifications import BillingNotifier
from app.services.square import (
    SquareGateway,
    verify_webhook_signature,
    webhook_verification_enabled,
    webhook_verification_required,
)

logger = logging.getLogger(__name__)

_SUCCESS_STATUSES = {"COMPLETED", "APPROVED"}
_FAILURE_STATUSES = {"FAILED", "CANCELED"}
_PAYMENT_EVENTS = {"payment.created", "payment.updated", "payment.completed", "payment.failed"}
_CARD_EVENTS = {"card.created", "card.updated", "card.automatically_updated"}


def _event_object(payload: dict[str, Any], kind: str) -> dict[str, Any]:
    data = payload.get("data") or {}
    return (data.get("object") or {}).get(kind) or {}


def _find_tenant(db: Session, reference_id: str | None, customer_id: str | None) -> TenantBilling | None:
    record = None
    if reference_id:
        try:
            record = BillingLedger.find_record(db, reference_id)
        except BillingError:
            record = None
    if record is None and customer_id:
        record = BillingLedger.find_by_customer_id(db, customer_id)
    return record


def _payment_status(event_type: str, payment: dict[str, Any]) -> str:
    status = str(payment.get("status") or "").upper()
    if not status and event_type == "payment.completed":
        return "COMPLETED"
    if not status and event_type == "payment.failed":
        return "FAILED"
    return status


def handle_payment_event(
    db: Session,
    event_type: str,
    payment: dict[str, Any],
    *,
    gateway: SquareGateway | None = None,
    notifier: BillingNotifier | None = None,
    now: datetime | None = None,
) -> str:
    payment_id = payment.get("id")
    if not payment_id:
        return "ignored"
    status = _payment_status(event_type, payment)
    if status not in _SUCCESS_STATUSES and status not in _FAILURE_STATUSES:
        return "ignored"
    if BillingLedger.find_history_by_payment_id(db, payment_id):
        return "duplicate"

    record = _find_tenant(db, payment.get("reference_id"), payment.get("customer_id"))
    if record is None:
        logger.warning("Square payment %s does not match any tenant", payment_id)
        return "unmatched"

    card_details = payment.get("card_details") or {}
    errors = card_details.get("errors") or payment.get("errors") or []
    first_error = errors[0] if errors else {}
    amount = (payment.get("amount_money") or {}).get("amount")
    orchestrator = ChargeOrchestrator(db, gateway=gateway, notifier=notifier)
    outcome = orchestrator.record_gateway_payment(
        record,
        gateway_payment_id=payment_id,
        succeeded=status in _SUCCESS_STATUSES,
        amount_cents=int(amount) if amount is not None else None,
        failure_code=first_error.get("code") or status,
        message=first_error.get("detail"),
        now=now,
    )
    if outcome is None:
        return "ignored"
    return "replayed" if outcome.replayed else outcome.status.value


def handle_card_event(db: Session, event_type: str, card: dict[str, Any]) -> str:
    card_id = card.get("id")
    if not card_id:
        return "ignored"
    record = _find_tenant(db, card.get("reference_id"), card.get("customer_id"))
    if record is None:
        logger.warning("Square card %s does not match any tenant", card_id)
        return "unmatched"

    if event_type == "card.disabled" or card.get("enabled") is False:
        if record.gateway_card_id != card_id:
            return "ignored"
        BillingLedger.update_record(
            db,
            record.tenant_id,
            {"gateway_card_id": None, "card_brand": None, "card_last4": None},
        )
        logger.info("Card %s disabled for tenant %s", card_id, record.tenant_id)
        return "card_removed"

    if not record.gateway_customer_id or card.get("customer_id") != record.gateway_customer_id:
        logger.warning(
            "Square card %s belongs to customer %s, not tenant %s customer %s; ignoring",
            card_id,
            card.get("customer_id"),
            record.tenant_id,
            record.gateway_customer_id,
        )
        return "ignored"

    BillingLedger.update_record(
        db,
        record.tenant_id,
        {
            "gateway_card_id": card_id,
            "card_brand": card.get("card_brand") or record.card_brand,
            "card_last4": card.get("last_4") or record.card_last4,
        },
    )
    logger.info("Card %s on file for tenant %s", card_id, record.tenant_id)
    return "card_saved"


def handle_event(
    db: Session,
    payload: dict[str, Any],
    *,
    gateway: SquareGateway | None = None,
    notifier: BillingNotifier | None = None,
) -> str:
    event_type = str(payload.get("type") or "unknown")
    if event_type in _PAYMENT_EVENTS:
        return handle_payment_event(
            db,
            event_type,
            _event_object(payload, "payment"),
            gateway=gateway,
            notifier=notifier,
        )
    if event_type in _CARD_EVENTS or event_type == "card.disabled":
        return handle_card_event(db, event_type, _event_object(payload, "card"))
    return "ignored"


def process_square_webhook(
    *,
    db: Session,
    body: bytes,
    signature: str | None,
    gateway: SquareGateway | None = None,
    notifier: BillingNotifier | None = None,
) -> JSONResponse:
    if webhook_verification_enabled():
        if not verify_webhook_signature(body, signature):
            logger.warning("Invalid Square webhook signature")
            return JSONResponse({"status": "invalid signature"}, status_code=401)
    elif webhook_verification_required():
        logger.error("Square webhook signature verification is not configured in production")
        return JSONResponse({"status": "webhook verification not configured"}, status_code=503)
    else:
        logger.warning("Square webhook signature verification is not configured")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return JSONResponse({"status": "invalid JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"status": "invalid JSON"}, status_code=400)

    event_type = payload.get("type", "unknown")
    logger.info("Square webhook: %s (%s)", event_type, payload.get("event_id"))
    try:
        result = handle_event(db, payload, gateway=gateway, notifier=notifier)
    except Exception:
        db.rollback()
        logger.exception("Square webhook %s processing failed", event_type)
        # Non-2xx makes Square redeliver the event.
        return JSONResponse({"status": "error"}, status_code=500)

    return JSONResponse({"status": "ok", "result": result}, status_code=200)
