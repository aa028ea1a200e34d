"""Tests for the subscription state machine and access decisions."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from app.models.billing import SubscriptionPlan, SubscriptionStatus
from app.services.billing import lifecycle
from app.services.billing.exceptions import InvalidTransitionError
from app.services.billing.lifecycle import BlockedReason, ChargeEvent

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _record(**overrides):
    values = {
        "tenant_id": "t-1",
        "subscription_status": SubscriptionStatus.trial,
        "trial_ends_at": NOW + timedelta(days=5),
        "is_super_admin_owned": False,
        "failed_attempts": 0,
        "created_at": NOW - timedelta(days=9),
        "plan": SubscriptionPlan.starter,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class TestTransitions:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (SubscriptionStatus.trial, ChargeEvent.charge_succeeded, SubscriptionStatus.active),
            (SubscriptionStatus.trial, ChargeEvent.charge_failed, SubscriptionStatus.payment_failed),
            (SubscriptionStatus.active, ChargeEvent.charge_succeeded, SubscriptionStatus.active),
            (SubscriptionStatus.active, ChargeEvent.charge_failed, SubscriptionStatus.payment_failed),
            (SubscriptionStatus.payment_failed, ChargeEvent.charge_succeeded, SubscriptionStatus.active),
            (SubscriptionStatus.payment_failed, ChargeEvent.charge_failed, SubscriptionStatus.payment_failed),
            (SubscriptionStatus.active, ChargeEvent.cancel, SubscriptionStatus.cancelled),
        ],
    )
    def test_allowed_transitions(self, current, event, expected):
        assert lifecycle.next_status(current, event) == expected

    @pytest.mark.parametrize(
        "event",
        [ChargeEvent.charge_succeeded, ChargeEvent.charge_failed, ChargeEvent.cancel],
    )
    def test_cancelled_is_terminal(self, event):
        with pytest.raises(InvalidTransitionError):
            lifecycle.next_status(SubscriptionStatus.cancelled, event)

    def test_success_patch_moves_billing_date_one_month_from_now(self):
        record = _record(trial_ends_at=NOW - timedelta(days=1), failed_attempts=2)

        patch = lifecycle.success_patch(record, NOW)

        assert patch["subscription_status"] == SubscriptionStatus.active
        assert patch["trial_ends_at"] == datetime(2026, 4, 15, 12, 0, tzinfo=UTC)
        assert patch["failed_attempts"] == 0
        assert patch["last_charge_attempt_at"] == NOW

    def test_decline_patch_keeps_due_date(self):
        record = _record(trial_ends_at=NOW - timedelta(days=1), failed_attempts=1)

        patch = lifecycle.decline_patch(record, NOW)

        assert patch["subscription_status"] == SubscriptionStatus.payment_failed
        assert patch["failed_attempts"] == 2
        assert "trial_ends_at" not in patch

    def test_retry_pending_inside_interval(self):
        interval = timedelta(hours=20)
        declined = _record(
            subscription_status=SubscriptionStatus.payment_failed,
            last_charge_attempt_at=(NOW - timedelta(hours=2)).replace(tzinfo=None),
        )
        stale = _record(
            subscription_status=SubscriptionStatus.payment_failed,
            last_charge_attempt_at=NOW - timedelta(hours=21),
        )
        trial = _record(last_charge_attempt_at=NOW - timedelta(hours=2))

        assert lifecycle.retry_pending(declined, NOW, interval) is True
        assert lifecycle.retry_pending(stale, NOW, interval) is False
        assert lifecycle.retry_pending(trial, NOW, interval) is False


def test_add_months_clamps_to_month_end():
    value = datetime(2026, 1, 31, 9, 30, tzinfo=UTC)
    assert lifecycle.add_months(value, 1) == datetime(2026, 2, 28, 9, 30, tzinfo=UTC)
    assert lifecycle.add_months(value, 12) == datetime(2027, 1, 31, 9, 30, tzinfo=UTC)


def test_price_for_plan_defaults_to_starter():
    assert lifecycle.price_for_plan(SubscriptionPlan.professional) == 7900
    assert lifecycle.price_for_plan("enterprise") == 19900
    assert lifecycle.price_for_plan(None) == 2900
    assert lifecycle.price_for_plan("platinum") == 2900


def test_billing_cycle_start_falls_back_to_created_at():
    record = _record(trial_ends_at=None)
    assert lifecycle.billing_cycle_start(record) == NOW - timedelta(days=9)


class TestDecide:
    def test_trial_in_future_is_allowed(self):
        decision = lifecycle.decide(_record(), NOW)
        assert decision.allowed is True
        assert decision.blocked_reason == BlockedReason.none

    def test_expired_trial_is_blocked_with_days_overdue(self):
        record = _record(trial_ends_at=NOW - timedelta(days=10))

        decision = lifecycle.decide(record, NOW)

        assert decision.allowed is False
        assert decision.blocked_reason == BlockedReason.payment_required
        assert decision.days_overdue == 10

    def test_days_overdue_is_floored(self):
        record = _record(trial_ends_at=NOW - timedelta(days=2, hours=23))
        assert lifecycle.decide(record, NOW).days_overdue == 2

    def test_payment_failed_past_due_is_blocked(self):
        record = _record(
            subscription_status=SubscriptionStatus.payment_failed,
            trial_ends_at=NOW - timedelta(days=3),
        )
        decision = lifecycle.decide(record, NOW)
        assert decision.allowed is False
        assert decision.blocked_reason == BlockedReason.payment_required

    def test_active_past_due_date_is_allowed(self):
        record = _record(
            subscription_status=SubscriptionStatus.active,
            trial_ends_at=NOW - timedelta(days=3),
        )
        assert lifecycle.decide(record, NOW).allowed is True

    def test_super_admin_is_always_allowed(self):
        record = _record(trial_ends_at=NOW - timedelta(days=30))
        assert lifecycle.decide(record, NOW, is_super_admin=True).allowed is True

    def test_super_admin_owned_tenant_is_allowed(self):
        record = _record(trial_ends_at=NOW - timedelta(days=30), is_super_admin_owned=True)
        assert lifecycle.decide(record, NOW).allowed is True

    def test_missing_record_is_allowed(self):
        assert lifecycle.decide(None, NOW).allowed is True

    def test_cancelled_keeps_access_until_period_end(self):
        record = _record(
            subscription_status=SubscriptionStatus.cancelled,
            trial_ends_at=NOW + timedelta(days=4),
        )
        assert lifecycle.decide(record, NOW).allowed is True

    def test_cancelled_after_period_end_is_blocked(self):
        record = _record(
            subscription_status=SubscriptionStatus.cancelled,
            trial_ends_at=NOW - timedelta(days=1),
        )
        decision = lifecycle.decide(record, NOW)
        assert decision.allowed is False
        assert decision.blocked_reason == BlockedReason.cancelled

    def test_naive_datetimes_are_treated_as_utc(self):
        record = _record(trial_ends_at=(NOW - timedelta(days=10)).replace(tzinfo=None))
        assert lifecycle.decide(record, NOW).days_overdue == 10

    def test_decide_is_deterministic(self):
        record = _record(trial_ends_at=NOW - timedelta(days=4))
        assert lifecycle.decide(record, NOW) == lifecycle.decide(record, NOW)

    def test_internal_error_fails_open(self):
        class BrokenRecord:
            tenant_id = "broken"
            is_super_admin_owned = False

            @property
            def trial_ends_at(self):
                raise RuntimeError("corrupt row")

        decision = lifecycle.decide(BrokenRecord(), NOW)
        assert decision.allowed is True


class TestBanner:
    def test_trial_expiring_banner(self):
        banner = lifecycle.billing_banner(_record(trial_ends_at=NOW + timedelta(days=2)), NOW)
        assert banner.show is True
        assert banner.trial_expiring is True
        assert banner.overdue is False
        assert banner.days_until_due == 2

    def test_overdue_banner(self):
        banner = lifecycle.billing_banner(_record(trial_ends_at=NOW - timedelta(days=2)), NOW)
        assert banner.show is True
        assert banner.overdue is True

    def test_no_banner_for_active_tenant(self):
        record = _record(
            subscription_status=SubscriptionStatus.active,
            trial_ends_at=NOW + timedelta(days=2),
        )
        assert lifecycle.billing_banner(record, NOW).show is False

    def test_no_banner_for_super_admin(self):
        record = _record(trial_ends_at=NOW - timedelta(days=2))
        assert lifecycle.billing_banner(record, NOW, is_super_admin=True).show is False
