from app.models.billing import (  # noqa: F401
    BillingHistory,
    PaymentAttemptStatus,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantBilling,
)
