"""Subscription state machine and access decisions.

Everything here is a pure function of its arguments. Callers read the
tenant record and pass "now" explicitly; nothing is cached between calls.
"""

from __future__ import annotations

import enum
import logging
import math
from calendar import monthrange
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from app.models.billing import SubscriptionPlan, SubscriptionStatus, TenantBilling
from app.services.billing.exceptions import InvalidTransitionError
from app.services.common import as_utc

logger = logging.getLogger(__name__)

# Monthly plan prices in cents.
PLAN_PRICES: dict[SubscriptionPlan, int] = {
    SubscriptionPlan.starter: 2900,
    SubscriptionPlan.professional: 7900,
    SubscriptionPlan.enterprise: 19900,
}
DEFAULT_PLAN = SubscriptionPlan.starter

TRIAL_WARNING_DAYS = 3
_ONE_DAY = timedelta(days=1)


class BlockedReason(enum.Enum):
    none = "none"
    payment_required = "payment_required"
    cancelled = "cancelled"


class ChargeEvent(enum.Enum):
    charge_succeeded = "charge_succeeded"
    charge_failed = "charge_failed"
    cancel = "cancel"


_TRANSITIONS: dict[tuple[SubscriptionStatus, ChargeEvent], SubscriptionStatus] = {
    (SubscriptionStatus.trial, ChargeEvent.charge_succeeded): SubscriptionStatus.active,
    (SubscriptionStatus.active, ChargeEvent.charge_succeeded): SubscriptionStatus.active,
    (SubscriptionStatus.payment_failed, ChargeEvent.charge_succeeded): SubscriptionStatus.active,
    (SubscriptionStatus.trial, ChargeEvent.charge_failed): SubscriptionStatus.payment_failed,
    (SubscriptionStatus.active, ChargeEvent.charge_failed): SubscriptionStatus.payment_failed,
    (SubscriptionStatus.payment_failed, ChargeEvent.charge_failed): SubscriptionStatus.payment_failed,
    (SubscriptionStatus.trial, ChargeEvent.cancel): SubscriptionStatus.cancelled,
    (SubscriptionStatus.active, ChargeEvent.cancel): SubscriptionStatus.cancelled,
    (SubscriptionStatus.payment_failed, ChargeEvent.cancel): SubscriptionStatus.cancelled,
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    blocked_reason: BlockedReason = BlockedReason.none
    days_overdue: int = 0

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["blocked_reason"] = self.blocked_reason.value
        return data


ALLOWED = AccessDecision(allowed=True)


@dataclass(frozen=True)
class BillingBanner:
    show: bool
    overdue: bool = False
    trial_expiring: bool = False
    days_until_due: int = 0
    subscription_status: str | None = None
    trial_ends_at: datetime | None = None


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def price_for_plan(plan: SubscriptionPlan | str | None) -> int:
    """Monthly price in cents; unknown or missing plans bill as the default plan."""
    if isinstance(plan, str):
        try:
            plan = SubscriptionPlan(plan)
        except ValueError:
            plan = None
    if plan is None:
        return PLAN_PRICES[DEFAULT_PLAN]
    return PLAN_PRICES.get(plan, PLAN_PRICES[DEFAULT_PLAN])


def next_status(current: SubscriptionStatus, event: ChargeEvent) -> SubscriptionStatus:
    target = _TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(
            f"Cannot apply {event.value} to a {current.value} subscription"
        )
    return target


def billing_cycle_start(record: TenantBilling) -> datetime:
    """The due date that opened the cycle currently being charged."""
    return as_utc(record.trial_ends_at or record.created_at)


def is_due(record: TenantBilling, now: datetime) -> bool:
    due_at = as_utc(record.trial_ends_at)
    return due_at is not None and due_at < as_utc(now)


def retry_pending(record: TenantBilling, now: datetime, retry_after: timedelta) -> bool:
    """True while a declined tenant is still inside its retry interval."""
    if record.subscription_status != SubscriptionStatus.payment_failed:
        return False
    last_attempt = as_utc(record.last_charge_attempt_at)
    return last_attempt is not None and last_attempt > as_utc(now) - retry_after


def success_patch(record: TenantBilling, now: datetime) -> dict[str, Any]:
    """Ledger fields to write after a successful charge.

    The next billing date is one month from ``now``, not from the old due
    date.
    """
    now = as_utc(now)
    return {
        "subscription_status": next_status(record.subscription_status, ChargeEvent.charge_succeeded),
        "trial_ends_at": add_months(now, 1),
        "failed_attempts": 0,
        "last_charge_attempt_at": now,
    }


def decline_patch(record: TenantBilling, now: datetime) -> dict[str, Any]:
    """Ledger fields to write after a declined charge; the due date is kept."""
    return {
        "subscription_status": next_status(record.subscription_status, ChargeEvent.charge_failed),
        "failed_attempts": (record.failed_attempts or 0) + 1,
        "last_charge_attempt_at": as_utc(now),
    }


def cancel_patch(record: TenantBilling, now: datetime) -> dict[str, Any]:
    return {
        "subscription_status": next_status(record.subscription_status, ChargeEvent.cancel),
        "cancelled_at": as_utc(now),
    }


def _days_overdue(due_at: datetime, now: datetime) -> int:
    return max((now - due_at) // _ONE_DAY, 0)


def _decide(record: TenantBilling | None, now: datetime, is_super_admin: bool) -> AccessDecision:
    if is_super_admin:
        return ALLOWED
    if record is None:
        # Not provisioned yet: onboarding must not be blocked.
        return ALLOWED
    if record.is_super_admin_owned:
        return ALLOWED

    now = as_utc(now)
    due_at = as_utc(record.trial_ends_at)
    expired = due_at is not None and now > due_at
    status = record.subscription_status

    if status == SubscriptionStatus.cancelled and (due_at is None or expired):
        return AccessDecision(
            allowed=False,
            blocked_reason=BlockedReason.cancelled,
            days_overdue=_days_overdue(due_at, now) if due_at else 0,
        )
    if expired and status != SubscriptionStatus.active:
        return AccessDecision(
            allowed=False,
            blocked_reason=BlockedReason.payment_required,
            days_overdue=_days_overdue(due_at, now),
        )
    return ALLOWED


def decide(
    record: TenantBilling | None,
    now: datetime,
    is_super_admin: bool = False,
) -> AccessDecision:
    """Decide whether a tenant may use the product at ``now``.

    Any error while evaluating fails open: locking every tenant out during a
    billing outage costs more than a short unpaid grace period.
    """
    try:
        return _decide(record, now, is_super_admin)
    except Exception:
        logger.error(
            "Access decision failed for tenant %s; failing open",
            getattr(record, "tenant_id", None),
            exc_info=True,
        )
        return ALLOWED


def billing_banner(
    record: TenantBilling | None,
    now: datetime,
    is_super_admin: bool = False,
) -> BillingBanner:
    """Advisory banner state. Never used to block access."""
    if record is None or is_super_admin or record.is_super_admin_owned:
        return BillingBanner(show=False)
    now = as_utc(now)
    due_at = as_utc(record.trial_ends_at)
    status = record.subscription_status
    days_until_due = math.ceil((due_at - now) / _ONE_DAY) if due_at else 0
    overdue = bool(due_at and now > due_at and status != SubscriptionStatus.active)
    trial_expiring = (
        not overdue
        and 0 < days_until_due <= TRIAL_WARNING_DAYS
        and status != SubscriptionStatus.active
    )
    return BillingBanner(
        show=overdue or trial_expiring,
        overdue=overdue,
        trial_expiring=trial_expiring,
        days_until_due=days_until_due,
        subscription_status=status.value if status else None,
        trial_ends_at=due_at,
    )
