"""Create tenant billing and billing history tables.

Revision ID: 7c2e9a4b1d30
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c2e9a4b1d30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    plan_enum = postgresql.ENUM(
        "starter",
        "professional",
        "enterprise",
        name="subscriptionplan",
    )
    status_enum = postgresql.ENUM(
        "trial",
        "active",
        "payment_failed",
        "cancelled",
        name="subscriptionstatus",
    )
    attempt_enum = postgresql.ENUM(
        "succeeded",
        "failed",
        name="paymentattemptstatus",
    )
    bind = op.get_bind()
    plan_enum.create(bind, checkfirst=True)
    status_enum.create(bind, checkfirst=True)
    attempt_enum.create(bind, checkfirst=True)

    op.create_table(
        "tenant_billing",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("company_name", sa.String(length=200), nullable=False),
        sa.Column("billing_email", sa.String(length=255), nullable=False),
        sa.Column(
            "plan",
            postgresql.ENUM(name="subscriptionplan", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "subscription_status",
            postgresql.ENUM(name="subscriptionstatus", create_type=False),
            nullable=True,
        ),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_customer_id", sa.String(length=120), nullable=True),
        sa.Column("gateway_card_id", sa.String(length=120), nullable=True),
        sa.Column("card_brand", sa.String(length=40), nullable=True),
        sa.Column("card_last4", sa.String(length=4), nullable=True),
        sa.Column("is_super_admin_owned", sa.Boolean(), nullable=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=True),
        sa.Column("last_charge_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_tenant_billing_status_due",
        "tenant_billing",
        ["subscription_status", "trial_ends_at"],
    )
    op.create_index(
        "ix_tenant_billing_gateway_customer",
        "tenant_billing",
        ["gateway_customer_id"],
    )

    op.create_table(
        "billing_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenant_billing.tenant_id"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(name="paymentattemptstatus", create_type=False),
            nullable=False,
        ),
        sa.Column("gateway_payment_id", sa.String(length=120), nullable=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("billing_cycle_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_code", sa.String(length=80), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_billing_history_idempotency_key"),
        sa.UniqueConstraint("gateway_payment_id", name="uq_billing_history_gateway_payment"),
    )
    op.create_index(
        "ix_billing_history_tenant_created",
        "billing_history",
        ["tenant_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_history_tenant_created", table_name="billing_history")
    op.drop_table("billing_history")
    op.drop_index("ix_tenant_billing_gateway_customer", table_name="tenant_billing")
    op.drop_index("ix_tenant_billing_status_due", table_name="tenant_billing")
    op.drop_table("tenant_billing")
    postgresql.ENUM(name="paymentattemptstatus").drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name="subscriptionplan").drop(op.get_bind(), checkfirst=True)
