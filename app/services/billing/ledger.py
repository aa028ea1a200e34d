"""Persistence for tenant billing records and payment history.

No business rules live here: callers decide what to write, the ledger only
reads and writes rows, one tenant at a time.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    BillingHistory,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantBilling,
)
from app.services.billing.exceptions import (
    BillingValidationError,
    DuplicateChargeError,
    TenantNotFoundError,
)
from app.services.common import apply_pagination, coerce_uuid

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "company_name",
    "billing_email",
    "plan",
    "subscription_status",
    "trial_ends_at",
    "gateway_customer_id",
    "gateway_card_id",
    "card_brand",
    "card_last4",
    "is_super_admin_owned",
    "failed_attempts",
    "last_charge_attempt_at",
    "cancelled_at",
}


def _coerce_tenant_id(tenant_id):
    try:
        return coerce_uuid(tenant_id)
    except (TypeError, ValueError, AttributeError) as exc:
        raise BillingValidationError(f"Invalid tenant id: {tenant_id!r}") from exc


def _apply_patch(record: TenantBilling, patch: dict[str, Any]) -> None:
    unknown = set(patch) - _UPDATABLE_FIELDS
    if unknown:
        raise BillingValidationError(
            f"Unknown billing fields: {', '.join(sorted(unknown))}"
        )
    for key, value in patch.items():
        setattr(record, key, value)


def _duplicate_error(entry: BillingHistory) -> DuplicateChargeError:
    return DuplicateChargeError(
        "A history entry already exists for this charge",
        details={
            "idempotency_key": entry.idempotency_key,
            "gateway_payment_id": entry.gateway_payment_id,
        },
    )


class BillingLedger:
    @staticmethod
    def find_record(db: Session, tenant_id) -> TenantBilling | None:
        return db.get(TenantBilling, _coerce_tenant_id(tenant_id))

    @staticmethod
    def get_record(db: Session, tenant_id) -> TenantBilling:
        record = BillingLedger.find_record(db, tenant_id)
        if not record:
            raise TenantNotFoundError(tenant_id)
        return record

    @staticmethod
    def provision(
        db: Session,
        *,
        tenant_id,
        company_name: str,
        billing_email: str,
        plan: SubscriptionPlan = SubscriptionPlan.starter,
        is_super_admin_owned: bool = False,
        now: datetime | None = None,
    ) -> TenantBilling:
        """Create the trial record for a newly provisioned tenant.

        Provisioning the same tenant twice returns the existing record.
        """
        existing = BillingLedger.find_record(db, tenant_id)
        if existing:
            return existing
        now = now or datetime.now(UTC)
        record = TenantBilling(
            tenant_id=_coerce_tenant_id(tenant_id),
            company_name=company_name,
            billing_email=billing_email,
            plan=plan,
            subscription_status=SubscriptionStatus.trial,
            trial_ends_at=now + timedelta(days=settings.trial_days),
            is_super_admin_owned=is_super_admin_owned,
            failed_attempts=0,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info("Provisioned billing record for tenant %s (plan=%s)", record.tenant_id, plan.value)
        return record

    @staticmethod
    def update_record(db: Session, tenant_id, patch: dict[str, Any]) -> TenantBilling:
        """Apply a partial update; fields absent from ``patch`` are untouched."""
        record = BillingLedger.get_record(db, tenant_id)
        _apply_patch(record, patch)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def append_history(db: Session, entry: BillingHistory) -> BillingHistory:
        db.add(entry)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise _duplicate_error(entry) from exc
        db.refresh(entry)
        return entry

    @staticmethod
    def record_outcome(
        db: Session,
        tenant_id,
        entry: BillingHistory,
        patch: dict[str, Any],
    ) -> tuple[TenantBilling, BillingHistory]:
        """Append a history entry and update the record in one commit.

        Either both land or neither does, so a history entry never exists for
        a cycle the record still treats as unpaid.
        """
        record = BillingLedger.get_record(db, tenant_id)
        _apply_patch(record, patch)
        db.add(entry)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise _duplicate_error(entry) from exc
        db.refresh(record)
        db.refresh(entry)
        return record, entry

    @staticmethod
    def find_history_by_key(db: Session, idempotency_key: str) -> BillingHistory | None:
        return (
            db.query(BillingHistory)
            .filter(BillingHistory.idempotency_key == idempotency_key)
            .first()
        )

    @staticmethod
    def find_history_by_payment_id(db: Session, gateway_payment_id: str) -> BillingHistory | None:
        return (
            db.query(BillingHistory)
            .filter(BillingHistory.gateway_payment_id == gateway_payment_id)
            .first()
        )

    @staticmethod
    def list_history(db: Session, tenant_id, limit: int, offset: int) -> list[BillingHistory]:
        query = (
            db.query(BillingHistory)
            .filter(BillingHistory.tenant_id == _coerce_tenant_id(tenant_id))
            .order_by(BillingHistory.created_at.desc())
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def find_by_customer_id(db: Session, customer_id: str) -> TenantBilling | None:
        return (
            db.query(TenantBilling)
            .filter(TenantBilling.gateway_customer_id == customer_id)
            .first()
        )

    @staticmethod
    def list_due_for_charge(
        db: Session,
        now: datetime,
        retry_after: timedelta | None = None,
    ) -> list[TenantBilling]:
        """Tenants with a card on file whose trial or billing date has passed.

        Trial and active tenants are due as soon as ``trial_ends_at`` is in the
        past. Tenants in ``payment_failed`` are only due again once their last
        recorded attempt is older than ``retry_after``.
        """
        if retry_after is None:
            retry_after = timedelta(hours=settings.billing_retry_interval_hours)
        retry_cutoff = now - retry_after
        return (
            db.query(TenantBilling)
            .filter(TenantBilling.gateway_card_id.isnot(None))
            .filter(TenantBilling.trial_ends_at.isnot(None))
            .filter(TenantBilling.trial_ends_at < now)
            .filter(TenantBilling.is_super_admin_owned.is_(False))
            .filter(
                or_(
                    TenantBilling.subscription_status.in_(
                        [SubscriptionStatus.trial, SubscriptionStatus.active]
                    ),
                    and_(
                        TenantBilling.subscription_status == SubscriptionStatus.payment_failed,
                        or_(
                            TenantBilling.last_charge_attempt_at.is_(None),
                            TenantBilling.last_charge_attempt_at <= retry_cutoff,
                        ),
                    ),
                )
            )
            .order_by(TenantBilling.trial_ends_at.asc())
            .all()
        )

    @staticmethod
    def list_trials_ending(db: Session, start: datetime, end: datetime) -> list[TenantBilling]:
        return (
            db.query(TenantBilling)
            .filter(TenantBilling.subscription_status == SubscriptionStatus.trial)
            .filter(TenantBilling.is_super_admin_owned.is_(False))
            .filter(TenantBilling.trial_ends_at.isnot(None))
            .filter(TenantBilling.trial_ends_at >= start)
            .filter(TenantBilling.trial_ends_at <= end)
            .all()
        )


billing_ledger = BillingLedger()
