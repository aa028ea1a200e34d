import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class SubscriptionPlan(enum.Enum):
    starter = "starter"
    professional = "professional"
    enterprise = "enterprise"


class SubscriptionStatus(enum.Enum):
    trial = "trial"
    active = "active"
    payment_failed = "payment_failed"
    cancelled = "cancelled"


class PaymentAttemptStatus(enum.Enum):
    succeeded = "succeeded"
    failed = "failed"


class TenantBilling(Base):
    """Billing state for one tenant (company)."""

    __tablename__ = "tenant_billing"
    __table_args__ = (
        Index("ix_tenant_billing_status_due", "subscription_status", "trial_ends_at"),
        Index("ix_tenant_billing_gateway_customer", "gateway_customer_id"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_name: Mapped[str] = mapped_column(String(200), nullable=False)
    billing_email: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[SubscriptionPlan] = mapped_column(
        Enum(SubscriptionPlan), default=SubscriptionPlan.starter
    )
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.trial
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    gateway_customer_id: Mapped[str | None] = mapped_column(String(120))
    gateway_card_id: Mapped[str | None] = mapped_column(String(120))
    card_brand: Mapped[str | None] = mapped_column(String(40))
    card_last4: Mapped[str | None] = mapped_column(String(4))
    is_super_admin_owned: Mapped[bool] = mapped_column(Boolean, default=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_charge_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    history = relationship(
        "BillingHistory",
        back_populates="tenant",
        order_by="BillingHistory.created_at.desc()",
    )

    @property
    def has_card(self) -> bool:
        return bool(self.gateway_card_id)


class BillingHistory(Base):
    """Append-only record of a charge attempt that reached a definitive outcome."""

    __tablename__ = "billing_history"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_billing_history_idempotency_key"),
        UniqueConstraint("gateway_payment_id", name="uq_billing_history_gateway_payment"),
        Index("ix_billing_history_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenant_billing.tenant_id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[PaymentAttemptStatus] = mapped_column(
        Enum(PaymentAttemptStatus), nullable=False
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(String(120))
    idempotency_key: Mapped[str | None] = mapped_column(String(64))
    billing_cycle_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_code: Mapped[str | None] = mapped_column(String(80))
    description: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    tenant = relationship("TenantBilling", back_populates="history")
