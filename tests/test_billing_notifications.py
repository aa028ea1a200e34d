"""Tests for billing notification rendering and delivery."""

from app.services.billing.notifications import (
    BillingNotifier,
    NotificationKind,
    render,
)


class RecordingSender:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.sent = []

    def __call__(self, to_email, subject, body_html):
        if self.error:
            raise self.error
        self.sent.append((to_email, subject, body_html))
        return self.result


def test_render_trial_expiring():
    subject, body = render(
        NotificationKind.trial_expiring,
        {"company_name": "Acme", "days_remaining": 1},
    )
    assert subject == "Your trial expires in 1 day"
    assert "Hi Acme" in body
    assert "1 day</strong>" in body


def test_render_payment_succeeded():
    subject, body = render(
        NotificationKind.payment_succeeded,
        {
            "company_name": "Acme",
            "amount_cents": 7900,
            "card_last4": "4242",
            "next_billing_date": "2026-04-15",
        },
    )
    assert subject == "Payment successful - Thank you!"
    assert "$79.00" in body
    assert "****4242" in body
    assert "2026-04-15" in body


def test_render_escapes_tenant_values():
    _, body = render(
        NotificationKind.payment_failed,
        {"company_name": "<script>x</script>", "amount_cents": 2900, "error_message": "Card declined"},
    )
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "Card declined" in body


def test_notify_sends_email():
    sender = RecordingSender()
    notifier = BillingNotifier(sender=sender, enabled=True)

    sent = notifier.notify("trial_expired", "owner@example.com", {"company_name": "Acme"})

    assert sent is True
    assert sender.sent[0][0] == "owner@example.com"
    assert sender.sent[0][1] == "Your trial has expired"


def test_notify_disabled():
    sender = RecordingSender()
    notifier = BillingNotifier(sender=sender, enabled=False)
    assert notifier.notify(NotificationKind.trial_expired, "owner@example.com") is False
    assert sender.sent == []


def test_notify_without_email():
    sender = RecordingSender()
    notifier = BillingNotifier(sender=sender, enabled=True)
    assert notifier.notify(NotificationKind.trial_expired, None) is False
    assert sender.sent == []


def test_notify_never_raises():
    notifier = BillingNotifier(sender=RecordingSender(error=RuntimeError("smtp down")), enabled=True)
    assert notifier.notify(NotificationKind.payment_failed, "owner@example.com", {"amount_cents": 100}) is False


def test_notify_unknown_kind_returns_false():
    notifier = BillingNotifier(sender=RecordingSender(), enabled=True)
    assert notifier.notify("invoice_overdue", "owner@example.com") is False


def test_notify_reports_undelivered_email():
    notifier = BillingNotifier(sender=RecordingSender(result=False), enabled=True)
    assert notifier.notify(NotificationKind.trial_expired, "owner@example.com") is False
