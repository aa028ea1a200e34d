"""Billing services package.

Tenant subscription billing: the ledger, the subscription state machine,
charge orchestration, card tokenization, notifications and gateway webhooks.

Modules are imported by path, for example:
    from app.services.billing import lifecycle
    from app.services.billing.charges import ChargeOrchestrator
"""

from app.services.billing.exceptions import (  # noqa: F401
    BillingConfigurationError,
    BillingError,
    BillingValidationError,
    ChargeRejectedError,
    DuplicateChargeError,
    GatewayAuthError,
    GatewayError,
    GatewayRequestError,
    GatewayTransientError,
    InvalidTransitionError,
    TenantNotFoundError,
)
