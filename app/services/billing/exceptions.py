"""Exceptions raised by the billing engine.

Every error carries a stable ``code`` and the HTTP status the API layer
renders it with (see ``app.errors.register_error_handlers``).
"""

from __future__ import annotations


class BillingError(Exception):
    code = "billing_error"
    status_code = 500

    def __init__(self, message: str, *, details: object | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class BillingConfigurationError(BillingError):
    """Gateway credentials or other required settings are missing."""

    code = "billing_not_configured"
    status_code = 500


class BillingValidationError(BillingError):
    code = "billing_validation_error"
    status_code = 400


class TenantNotFoundError(BillingError):
    code = "tenant_not_found"
    status_code = 404

    def __init__(self, tenant_id: object):
        super().__init__(f"Billing record not found for tenant {tenant_id}")
        self.tenant_id = tenant_id


class ChargeRejectedError(BillingError):
    """The tenant is in a state that does not allow a charge attempt."""

    code = "charge_rejected"
    status_code = 409


class InvalidTransitionError(BillingError):
    code = "invalid_transition"
    status_code = 409


class DuplicateChargeError(BillingError):
    """A history entry for the same idempotency key or payment already exists."""

    code = "duplicate_charge"
    status_code = 409


class GatewayError(BillingError):
    code = "gateway_error"
    status_code = 502


class GatewayTransientError(GatewayError):
    """Network failure, timeout, 429 or 5xx: outcome unknown, retry later."""

    code = "gateway_unavailable"
    status_code = 503


class GatewayAuthError(GatewayError):
    code = "gateway_auth_failed"
    status_code = 502


class GatewayRequestError(GatewayError):
    """Gateway rejected a request for a reason other than a card decline."""

    code = "gateway_request_rejected"
    status_code = 400
