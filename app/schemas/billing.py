from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.billing import (
    PaymentAttemptStatus,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.services.billing.lifecycle import BlockedReason


class TenantBillingBase(BaseModel):
    company_name: str = Field(min_length=1, max_length=200)
    billing_email: EmailStr
    plan: SubscriptionPlan = SubscriptionPlan.starter


class TenantProvisionRequest(TenantBillingBase):
    tenant_id: UUID
    is_super_admin_owned: bool = False


class TenantBillingRead(TenantBillingBase):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    billing_email: str
    subscription_status: SubscriptionStatus
    trial_ends_at: datetime | None = None
    gateway_customer_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    has_card: bool = False
    is_super_admin_owned: bool
    failed_attempts: int
    last_charge_attempt_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class BillingHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    amount_cents: int
    currency: str
    status: PaymentAttemptStatus
    gateway_payment_id: str | None = None
    billing_cycle_start: datetime | None = None
    failure_code: str | None = None
    description: str | None = None
    created_at: datetime


class SaveCardRequest(BaseModel):
    card_nonce: str = Field(min_length=1, max_length=255)
    postal_code: str | None = Field(default=None, max_length=20)


class PlanChangeRequest(BaseModel):
    plan: SubscriptionPlan


class ChargeResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    status: PaymentAttemptStatus
    amount_cents: int
    gateway_payment_id: str | None = None
    card_last4: str | None = None
    next_billing_date: datetime | None = None
    failure_code: str | None = None
    message: str | None = None
    replayed: bool = False


class AccessCheckRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allowed: bool
    blocked_reason: BlockedReason
    days_overdue: int
    allow_listed_route: bool
    redirect_to: str | None = None


class BillingBannerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    show: bool
    overdue: bool = False
    trial_expiring: bool = False
    days_until_due: int = 0
    subscription_status: str | None = None
    trial_ends_at: datetime | None = None


class SweepErrorRead(BaseModel):
    tenant_id: str
    reason: str


class SweepRunRequest(BaseModel):
    run_at: datetime | None = None


class SweepReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_at: datetime
    processed: int
    succeeded: int
    failed: int
    skipped: int
    errors: list[SweepErrorRead] = Field(default_factory=list)


class TrialReminderResponse(BaseModel):
    expiring_sent: int
    expired_sent: int
    skipped: int
