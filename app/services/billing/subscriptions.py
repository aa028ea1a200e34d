from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.models.billing import SubscriptionPlan, SubscriptionStatus, TenantBilling
from app.services.billing import lifecycle
from app.services.billing.exceptions import InvalidTransitionError
from app.services.billing.ledger import BillingLedger
from app.services.common import as_utc, validate_enum

logger = logging.getLogger(__name__)


def cancel_subscription(db: Session, tenant_id, now: datetime | None = None) -> TenantBilling:
    """Cancel a tenant's subscription.

    Access continues until the current ``trial_ends_at``; no further charges
    are attempted.
    """
    now = as_utc(now) or datetime.now(UTC)
    record = BillingLedger.get_record(db, tenant_id)
    patch = lifecycle.cancel_patch(record, now)
    record = BillingLedger.update_record(db, record.tenant_id, patch)
    logger.info("Cancelled subscription for tenant %s", record.tenant_id)
    return record


def change_plan(db: Session, tenant_id, plan) -> TenantBilling:
    """Switch plans. The new price applies from the next charge."""
    plan = validate_enum(plan, SubscriptionPlan, "plan")
    record = BillingLedger.get_record(db, tenant_id)
    if record.subscription_status == SubscriptionStatus.cancelled:
        raise InvalidTransitionError("Cannot change the plan of a cancelled subscription")
    if record.plan == plan:
        return record
    previous = record.plan
    record = BillingLedger.update_record(db, record.tenant_id, {"plan": plan})
    logger.info(
        "Tenant %s plan changed from %s to %s",
        record.tenant_id,
        previous.value if previous else None,
        plan.value,
    )
    return record
