from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.billing import SubscriptionStatus, TenantBilling
from app.services.billing.exceptions import BillingValidationError, ChargeRejectedError
from app.services.billing.ledger import BillingLedger
from app.services.square import SquareGateway, card_idempotency_key, get_gateway

logger = logging.getLogger(__name__)


def ensure_customer(db: Session, record: TenantBilling, gateway: SquareGateway) -> str:
    """Return the tenant's gateway customer id, creating it on first use.

    The customer id is committed before anything else is attempted, and the
    creation request carries a key derived from the tenant id, so repeated
    calls end up with one customer.
    """
    if record.gateway_customer_id:
        return record.gateway_customer_id
    customer_id = gateway.create_customer(record.tenant_id, record.company_name, record.billing_email)
    BillingLedger.update_record(db, record.tenant_id, {"gateway_customer_id": customer_id})
    logger.info("Created gateway customer %s for tenant %s", customer_id, record.tenant_id)
    return customer_id


def save_card(
    db: Session,
    tenant_id,
    card_nonce: str,
    postal_code: str | None = None,
    *,
    gateway: SquareGateway | None = None,
) -> TenantBilling:
    """Tokenize a card nonce from the payment form and keep it on file."""
    card_nonce = (card_nonce or "").strip()
    if not card_nonce:
        raise BillingValidationError("Card token is required")
    record = BillingLedger.get_record(db, tenant_id)
    if record.subscription_status == SubscriptionStatus.cancelled:
        raise ChargeRejectedError("Subscription is cancelled")

    gateway = gateway or get_gateway()
    customer_id = ensure_customer(db, record, gateway)
    card = gateway.create_card_on_file(
        customer_id,
        card_nonce,
        card_idempotency_key(record.tenant_id, card_nonce),
        postal_code=postal_code,
    )
    record = BillingLedger.update_record(
        db,
        record.tenant_id,
        {
            "gateway_card_id": card.card_id,
            "card_brand": card.brand,
            "card_last4": card.last4,
        },
    )
    logger.info(
        "Saved card %s (%s ****%s) for tenant %s",
        card.card_id,
        card.brand,
        card.last4,
        record.tenant_id,
    )
    return record
