"""Billing emails: trial reminders and payment outcomes.

Delivery is fire-and-forget. ``notify`` never raises; a failed send is logged
and the billing state it describes stays committed.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from typing import Any

from app.config import settings
from app.services import email as email_service
from app.services.notification_template_renderer import (
    format_cents,
    plural_days,
    render_template_text,
)

logger = logging.getLogger(__name__)


class NotificationKind(enum.Enum):
    trial_expiring = "trial_expiring"
    trial_expired = "trial_expired"
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"


_SIGNATURE = "<p>Best regards,<br>{{from_name}}</p>"

TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.trial_expiring: (
        "Your trial expires in {{days_remaining}} {{days_label}}",
        "<h1>Your Free Trial is Ending Soon</h1>"
        "<p>Hi {{company_name}},</p>"
        "<p>Your free trial will expire in <strong>{{days_remaining}} {{days_label}}</strong>.</p>"
        "<p>To continue using all features without interruption, please ensure you have "
        "a valid payment method on file. After your trial ends your subscription begins "
        "and your card will be charged.</p>" + _SIGNATURE,
    ),
    NotificationKind.trial_expired: (
        "Your trial has expired",
        "<h1>Your Free Trial Has Expired</h1>"
        "<p>Hi {{company_name}},</p>"
        "<p>Your free trial has ended. Please log in and add a payment method to "
        "restore access to all features.</p>" + _SIGNATURE,
    ),
    NotificationKind.payment_succeeded: (
        "Payment successful - Thank you!",
        "<h1>Payment Received</h1>"
        "<p>Hi {{company_name}},</p>"
        "<p>We've successfully processed your subscription payment.</p>"
        "<ul><li><strong>Amount:</strong> {{amount}}</li>"
        "<li><strong>Card:</strong> ****{{card_last4}}</li>"
        "<li><strong>Next billing date:</strong> {{next_billing_date}}</li></ul>"
        "<p>Thank you for your continued subscription.</p>" + _SIGNATURE,
    ),
    NotificationKind.payment_failed: (
        "Payment failed - Action required",
        "<h1>Payment Failed</h1>"
        "<p>Hi {{company_name}},</p>"
        "<p>We were unable to process your subscription payment of {{amount}}.</p>"
        "<p><strong>Reason:</strong> {{error_message}}</p>"
        "<p>Please update your payment method to avoid any interruption in service.</p>"
        + _SIGNATURE,
    ),
}


def render(kind: NotificationKind, template_data: dict[str, Any]) -> tuple[str, str]:
    variables = dict(template_data)
    variables.setdefault("from_name", settings.smtp_from_name)
    variables.setdefault("card_last4", "****")
    variables.setdefault("error_message", "Payment failed")
    if "amount_cents" in variables:
        variables.setdefault("amount", format_cents(variables["amount_cents"]))
    if "days_remaining" in variables:
        variables.setdefault("days_label", plural_days(variables["days_remaining"]))
    subject_template, html_template = TEMPLATES[kind]
    subject = render_template_text(subject_template, variables)
    body = render_template_text(html_template, variables, escape=True)
    return subject, body


class BillingNotifier:
    def __init__(
        self,
        sender: Callable[..., bool] | None = None,
        enabled: bool | None = None,
    ):
        self._sender = sender or email_service.send_email
        self.enabled = settings.notifications_enabled if enabled is None else enabled

    def notify(
        self,
        kind: NotificationKind | str,
        tenant_email: str | None,
        template_data: dict[str, Any] | None = None,
    ) -> bool:
        if not self.enabled:
            return False
        if not tenant_email:
            logger.warning("Skipping %s notification: tenant has no billing email", kind)
            return False
        try:
            kind = NotificationKind(kind)
            subject, body = render(kind, template_data or {})
            sent = bool(self._sender(tenant_email, subject, body))
        except Exception:
            logger.exception("Billing notification %s to %s failed", kind, tenant_email)
            return False
        if sent:
            logger.info("Sent %s notification to %s", kind.value, tenant_email)
        else:
            logger.warning("Billing notification %s to %s was not delivered", kind.value, tenant_email)
        return sent


def get_notifier() -> BillingNotifier:
    return BillingNotifier()
