"""Per-tenant charge orchestration.

ensure customer -> charge with a deterministic idempotency key -> record the
outcome and advance the subscription state -> notify.

Replaying a charge for the same tenant and billing cycle is safe: the key is
derived from the tenant id, the cycle start and the number of failed attempts
already recorded for that cycle, and an existing history entry for the key
short-circuits before the gateway is called.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import record_charge
from app.models.billing import (
    BillingHistory,
    PaymentAttemptStatus,
    SubscriptionStatus,
    TenantBilling,
)
from app.services.billing import lifecycle
from app.services.billing.cards import ensure_customer
from app.services.billing.exceptions import (
    ChargeRejectedError,
    DuplicateChargeError,
    GatewayError,
    GatewayTransientError,
)
from app.services.billing.ledger import BillingLedger
from app.services.billing.notifications import (
    BillingNotifier,
    NotificationKind,
    get_notifier,
)
from app.services.common import as_utc
from app.services.square import (
    ChargeDeclined,
    ChargeSucceeded,
    SquareGateway,
    charge_idempotency_key,
    get_gateway,
)

logger = logging.getLogger(__name__)


class ChargeTrigger(enum.Enum):
    sweep = "sweep"
    manual = "manual"
    webhook = "webhook"


@dataclass(frozen=True)
class ChargeOutcome:
    tenant_id: uuid.UUID
    status: PaymentAttemptStatus
    amount_cents: int
    gateway_payment_id: str | None = None
    card_last4: str | None = None
    next_billing_date: datetime | None = None
    failure_code: str | None = None
    message: str | None = None
    replayed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentAttemptStatus.succeeded


def _description(record: TenantBilling, trigger: ChargeTrigger, succeeded: bool) -> str:
    plan = record.plan.value if record.plan else lifecycle.DEFAULT_PLAN.value
    label = f"Manual {plan} plan payment" if trigger == ChargeTrigger.manual else f"{plan} plan subscription"
    return label if succeeded else f"Failed: {label}"


class ChargeOrchestrator:
    def __init__(
        self,
        db: Session,
        gateway: SquareGateway | None = None,
        notifier: BillingNotifier | None = None,
    ):
        self.db = db
        self.gateway = gateway or get_gateway()
        self.notifier = notifier or get_notifier()

    def charge(
        self,
        record: TenantBilling,
        now: datetime | None = None,
        trigger: ChargeTrigger = ChargeTrigger.sweep,
    ) -> ChargeOutcome:
        """Attempt one charge for ``record``'s current billing cycle.

        Raises:
            ChargeRejectedError: the tenant cannot be charged right now.
            GatewayError: the gateway outcome is unknown (transient) or the
                gateway refused the credentials. Nothing was recorded.
        """
        now = as_utc(now) or datetime.now(UTC)
        self._ensure_chargeable(record, now, trigger)

        amount = lifecycle.price_for_plan(record.plan)
        customer_id = ensure_customer(self.db, record, self.gateway)
        cycle_start = lifecycle.billing_cycle_start(record)
        key = charge_idempotency_key(record.tenant_id, cycle_start, record.failed_attempts or 0)

        existing = BillingLedger.find_history_by_key(self.db, key)
        if existing:
            logger.info(
                "Charge for tenant %s cycle %s already recorded (%s); skipping",
                record.tenant_id,
                cycle_start.isoformat(),
                existing.status.value,
            )
            record_charge(trigger.value, "replayed")
            return self._replayed(existing)

        logger.info(
            "Charging tenant %s %s cents (plan=%s, trigger=%s)",
            record.tenant_id,
            amount,
            record.plan.value if record.plan else None,
            trigger.value,
        )
        try:
            result = self.gateway.charge(
                customer_id,
                record.gateway_card_id,
                amount,
                key,
                str(record.tenant_id),
                note=_description(record, trigger, succeeded=True),
            )
        except GatewayTransientError:
            record_charge(trigger.value, "transient")
            logger.warning("Charge for tenant %s has unknown outcome; not recorded", record.tenant_id)
            raise
        except GatewayError:
            record_charge(trigger.value, "error")
            raise

        if isinstance(result, ChargeSucceeded):
            return self._record_success(
                record,
                now,
                amount,
                trigger,
                gateway_payment_id=result.gateway_payment_id,
                card_last4=result.last4,
                idempotency_key=key,
                cycle_start=cycle_start,
            )
        return self._record_decline(
            record,
            now,
            amount,
            trigger,
            result,
            idempotency_key=key,
            cycle_start=cycle_start,
        )

    def _ensure_chargeable(self, record: TenantBilling, now: datetime, trigger: ChargeTrigger) -> None:
        if record.subscription_status == SubscriptionStatus.cancelled:
            raise ChargeRejectedError("Subscription is cancelled")
        if record.is_super_admin_owned:
            raise ChargeRejectedError("Tenant is managed by a super admin and is not billed")
        if not record.gateway_card_id:
            raise ChargeRejectedError("No payment method on file. Please add a card first.")
        if trigger == ChargeTrigger.sweep and not lifecycle.is_due(record, now):
            raise ChargeRejectedError("Tenant is not due for a charge")
        # Only a manual retry may move a declined cycle to its next attempt key early.
        if trigger == ChargeTrigger.sweep and lifecycle.retry_pending(
            record, now, timedelta(hours=settings.billing_retry_interval_hours)
        ):
            raise ChargeRejectedError("Last charge was declined; waiting for the retry interval")
        if (
            trigger == ChargeTrigger.manual
            and record.subscription_status == SubscriptionStatus.active
            and not lifecycle.is_due(record, now)
        ):
            raise ChargeRejectedError("Subscription is already paid for the current billing cycle")

    def _replayed(self, entry: BillingHistory) -> ChargeOutcome:
        record = BillingLedger.get_record(self.db, entry.tenant_id)
        return ChargeOutcome(
            tenant_id=entry.tenant_id,
            status=entry.status,
            amount_cents=entry.amount_cents,
            gateway_payment_id=entry.gateway_payment_id,
            card_last4=record.card_last4,
            next_billing_date=as_utc(record.trial_ends_at),
            failure_code=entry.failure_code,
            message=entry.description,
            replayed=True,
        )

    def _record_success(
        self,
        record: TenantBilling,
        now: datetime,
        amount: int,
        trigger: ChargeTrigger,
        *,
        gateway_payment_id: str,
        card_last4: str | None = None,
        idempotency_key: str | None = None,
        cycle_start: datetime | None = None,
    ) -> ChargeOutcome:
        entry = BillingHistory(
            tenant_id=record.tenant_id,
            amount_cents=amount,
            currency=settings.square_currency,
            status=PaymentAttemptStatus.succeeded,
            gateway_payment_id=gateway_payment_id,
            idempotency_key=idempotency_key,
            billing_cycle_start=cycle_start,
            description=_description(record, trigger, succeeded=True),
        )
        patch = lifecycle.success_patch(record, now)
        if card_last4:
            patch["card_last4"] = card_last4
        tenant_id = record.tenant_id
        try:
            record, entry = BillingLedger.record_outcome(self.db, tenant_id, entry, patch)
        except DuplicateChargeError:
            return self._replay_after_race(tenant_id, idempotency_key, gateway_payment_id, trigger)

        record_charge(trigger.value, "succeeded")
        logger.info(
            "Payment %s succeeded for tenant %s; next billing date %s",
            gateway_payment_id,
            record.tenant_id,
            record.trial_ends_at,
        )
        next_billing_date = as_utc(record.trial_ends_at)
        self._notify(
            NotificationKind.payment_succeeded,
            record,
            {
                "amount_cents": amount,
                "card_last4": card_last4 or record.card_last4,
                "next_billing_date": next_billing_date.date().isoformat(),
            },
        )
        return ChargeOutcome(
            tenant_id=record.tenant_id,
            status=PaymentAttemptStatus.succeeded,
            amount_cents=amount,
            gateway_payment_id=gateway_payment_id,
            card_last4=card_last4 or record.card_last4,
            next_billing_date=next_billing_date,
        )

    def _record_decline(
        self,
        record: TenantBilling,
        now: datetime,
        amount: int,
        trigger: ChargeTrigger,
        declined: ChargeDeclined,
        *,
        idempotency_key: str | None = None,
        cycle_start: datetime | None = None,
    ) -> ChargeOutcome:
        entry = BillingHistory(
            tenant_id=record.tenant_id,
            amount_cents=amount,
            currency=settings.square_currency,
            status=PaymentAttemptStatus.failed,
            gateway_payment_id=declined.gateway_payment_id,
            idempotency_key=idempotency_key,
            billing_cycle_start=cycle_start,
            failure_code=declined.reason_code,
            description=_description(record, trigger, succeeded=False),
        )
        patch = lifecycle.decline_patch(record, now)
        tenant_id = record.tenant_id
        try:
            record, entry = BillingLedger.record_outcome(self.db, tenant_id, entry, patch)
        except DuplicateChargeError:
            return self._replay_after_race(
                tenant_id, idempotency_key, declined.gateway_payment_id, trigger
            )

        record_charge(trigger.value, "declined")
        logger.warning(
            "Payment declined for tenant %s: %s (%s)",
            record.tenant_id,
            declined.reason_code,
            declined.message,
        )
        self._notify(
            NotificationKind.payment_failed,
            record,
            {"amount_cents": amount, "error_message": declined.message},
        )
        return ChargeOutcome(
            tenant_id=record.tenant_id,
            status=PaymentAttemptStatus.failed,
            amount_cents=amount,
            gateway_payment_id=declined.gateway_payment_id,
            next_billing_date=as_utc(record.trial_ends_at),
            failure_code=declined.reason_code,
            message=declined.message,
        )

    def _replay_after_race(
        self,
        tenant_id,
        idempotency_key: str | None,
        gateway_payment_id: str | None,
        trigger: ChargeTrigger,
    ) -> ChargeOutcome:
        """Another invocation recorded the same charge between our check and insert."""
        existing = None
        if idempotency_key:
            existing = BillingLedger.find_history_by_key(self.db, idempotency_key)
        if existing is None and gateway_payment_id:
            existing = BillingLedger.find_history_by_payment_id(self.db, gateway_payment_id)
        if existing is None:
            raise DuplicateChargeError(
                f"Charge for tenant {tenant_id} conflicted with an unknown history entry"
            )
        logger.info("Charge for tenant %s was recorded concurrently; replaying", tenant_id)
        record_charge(trigger.value, "replayed")
        return self._replayed(existing)

    def record_gateway_payment(
        self,
        record: TenantBilling,
        *,
        gateway_payment_id: str,
        succeeded: bool,
        amount_cents: int | None = None,
        failure_code: str | None = None,
        message: str | None = None,
        now: datetime | None = None,
    ) -> ChargeOutcome | None:
        """Record a payment the gateway reported asynchronously.

        Returns None when the payment is already in the ledger or the tenant
        can no longer transition (cancelled).
        """
        if BillingLedger.find_history_by_payment_id(self.db, gateway_payment_id):
            return None
        if record.subscription_status == SubscriptionStatus.cancelled:
            logger.info(
                "Ignoring gateway payment %s for cancelled tenant %s",
                gateway_payment_id,
                record.tenant_id,
            )
            return None
        now = as_utc(now) or datetime.now(UTC)
        amount = amount_cents if amount_cents is not None else lifecycle.price_for_plan(record.plan)
        cycle_start = lifecycle.billing_cycle_start(record)
        if succeeded:
            return self._record_success(
                record,
                now,
                amount,
                ChargeTrigger.webhook,
                gateway_payment_id=gateway_payment_id,
                cycle_start=cycle_start,
            )
        return self._record_decline(
            record,
            now,
            amount,
            ChargeTrigger.webhook,
            ChargeDeclined(
                reason_code=failure_code or "PAYMENT_FAILED",
                message=message or "Payment failed",
                gateway_payment_id=gateway_payment_id,
            ),
            cycle_start=cycle_start,
        )

    def _notify(self, kind: NotificationKind, record: TenantBilling, data: dict) -> None:
        payload = {"company_name": record.company_name, **data}
        try:
            self.notifier.notify(kind, record.billing_email, payload)
        except Exception:
            logger.exception("Notifier raised for tenant %s (%s)", record.tenant_id, kind.value)


def charge_now(
    db: Session,
    tenant_id,
    *,
    gateway: SquareGateway | None = None,
    notifier: BillingNotifier | None = None,
    now: datetime | None = None,
) -> ChargeOutcome:
    """Administrator-triggered charge outside the sweep."""
    record = BillingLedger.get_record(db, tenant_id)
    logger.info("Manual charge requested for tenant %s", record.tenant_id)
    orchestrator = ChargeOrchestrator(db, gateway=gateway, notifier=notifier)
    return orchestrator.charge(record, now=now, trigger=ChargeTrigger.manual)
