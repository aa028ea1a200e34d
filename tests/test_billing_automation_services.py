"""Tests for the batch billing sweep and trial reminders."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db import Base
from app.models.billing import SubscriptionStatus, TenantBilling
from app.services import billing_automation
from app.services.billing.exceptions import BillingConfigurationError, GatewayTransientError
from app.services.billing.ledger import BillingLedger
from app.services.square import ChargeDeclined


class TestRunSweep:
    def test_one_tenant_error_does_not_stop_the_sweep(
        self, db_session, make_tenant, fake_gateway, fake_notifier, now
    ):
        """A transient error for tenant A is reported and B is still charged."""
        tenant_a = make_tenant(company_name="A")
        tenant_b = make_tenant(company_name="B")
        fake_gateway.charge_results[str(tenant_a.tenant_id)] = GatewayTransientError("timeout")

        report = billing_automation.run_sweep(
            db_session, now, gateway=fake_gateway, notifier=fake_notifier, max_workers=1
        )

        assert report.processed == 2
        assert report.succeeded == 1
        assert report.failed == 1
        assert report.errors == [{"tenant_id": str(tenant_a.tenant_id), "reason": "timeout"}]
        record_a = BillingLedger.get_record(db_session, tenant_a.tenant_id)
        assert record_a.subscription_status == SubscriptionStatus.trial
        assert record_a.failed_attempts == 0
        assert BillingLedger.list_history(db_session, tenant_a.tenant_id, 50, 0) == []
        record_b = BillingLedger.get_record(db_session, tenant_b.tenant_id)
        assert record_b.subscription_status == SubscriptionStatus.active

    def test_declines_are_counted_as_failed(self, db_session, make_tenant, fake_gateway, fake_notifier, now):
        tenant = make_tenant()
        fake_gateway.charge_results[str(tenant.tenant_id)] = ChargeDeclined(
            reason_code="CARD_DECLINED", message="Declined"
        )

        report = billing_automation.run_sweep(
            db_session, now, gateway=fake_gateway, notifier=fake_notifier, max_workers=1
        )

        assert report.failed == 1
        assert report.errors == []
        assert fake_notifier.kinds() == ["payment_failed"]

    def test_rerun_is_a_no_op(self, db_session, make_tenant, fake_gateway, fake_notifier, now):
        paid = make_tenant()
        declined = make_tenant()
        fake_gateway.charge_results[str(declined.tenant_id)] = ChargeDeclined(
            reason_code="CARD_DECLINED", message="Declined"
        )
        billing_automation.run_sweep(
            db_session, now, gateway=fake_gateway, notifier=fake_notifier, max_workers=1
        )

        report = billing_automation.run_sweep(
            db_session,
            now + timedelta(minutes=5),
            gateway=fake_gateway,
            notifier=fake_notifier,
            max_workers=1,
        )

        assert report.processed == 0
        assert fake_gateway.count("charge") == 2
        assert len(BillingLedger.list_history(db_session, paid.tenant_id, 50, 0)) == 1
        assert len(BillingLedger.list_history(db_session, declined.tenant_id, 50, 0)) == 1

    def test_missing_configuration_is_fatal(self, db_session, make_tenant, fake_gateway, fake_notifier, now):
        make_tenant()

        def fail():
            raise BillingConfigurationError("SQUARE_ACCESS_TOKEN and SQUARE_LOCATION_ID must be configured")

        fake_gateway.validate_config = fail
        with pytest.raises(BillingConfigurationError):
            billing_automation.run_sweep(db_session, now, gateway=fake_gateway, notifier=fake_notifier)
        assert fake_gateway.calls == []

    def test_nothing_due(self, db_session, make_tenant, fake_gateway, fake_notifier, now):
        make_tenant(trial_ends_at=now + timedelta(days=3))

        report = billing_automation.run_sweep(
            db_session, now, gateway=fake_gateway, notifier=fake_notifier, max_workers=1
        )

        assert report.as_dict()["processed"] == 0
        assert fake_gateway.calls == []

    def test_worker_pool_uses_a_session_per_tenant(self, tmp_path, fake_gateway, fake_notifier, now):
        engine = create_engine(f"sqlite:///{tmp_path / 'sweep.db'}")
        Base.metadata.create_all(engine)
        factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        session = factory()
        tenant_ids = []
        for index in range(4):
            tenant_id = uuid.uuid4()
            tenant_ids.append(tenant_id)
            session.add(
                TenantBilling(
                    tenant_id=tenant_id,
                    company_name=f"Tenant {index}",
                    billing_email=f"t{index}@example.com",
                    subscription_status=SubscriptionStatus.trial,
                    trial_ends_at=now - timedelta(days=1),
                    gateway_customer_id=f"CUST_{index}",
                    gateway_card_id=f"ccof:{index}",
                    is_super_admin_owned=False,
                    failed_attempts=0,
                )
            )
        session.commit()
        fake_gateway.charge_results[str(tenant_ids[0])] = GatewayTransientError("timeout")

        try:
            report = billing_automation.run_sweep(
                session,
                now,
                gateway=fake_gateway,
                notifier=fake_notifier,
                max_workers=2,
                session_factory=factory,
            )
            assert report.processed == 4
            assert report.succeeded == 3
            assert len(report.errors) == 1
            session.expire_all()
            statuses = {
                record.tenant_id: record.subscription_status
                for record in session.query(TenantBilling).all()
            }
            assert statuses[tenant_ids[0]] == SubscriptionStatus.trial
            assert all(statuses[tenant_id] == SubscriptionStatus.active for tenant_id in tenant_ids[1:])
        finally:
            session.close()
            engine.dispose()


class TestTrialReminders:
    def test_expiring_reminders_on_reminder_days(self, db_session, make_tenant, fake_notifier, now):
        three_days = make_tenant(trial_ends_at=now + timedelta(days=2, hours=20))
        one_day = make_tenant(trial_ends_at=now + timedelta(hours=10))
        make_tenant(trial_ends_at=now + timedelta(days=1, hours=12))
        make_tenant(trial_ends_at=now + timedelta(days=10))

        summary = billing_automation.send_trial_reminders(db_session, now, notifier=fake_notifier)

        assert summary["expiring_sent"] == 2
        recipients = {email: data for kind, email, data in fake_notifier.sent if kind == "trial_expiring"}
        assert recipients[three_days.billing_email]["days_remaining"] == 3
        assert recipients[one_day.billing_email]["days_remaining"] == 1

    def test_expired_notice_only_without_card(self, db_session, make_tenant, fake_notifier, now):
        no_card = make_tenant(trial_ends_at=now - timedelta(hours=3), gateway_card_id=None)
        make_tenant(trial_ends_at=now - timedelta(hours=3))
        make_tenant(trial_ends_at=now - timedelta(days=3), gateway_card_id=None)

        summary = billing_automation.send_trial_reminders(db_session, now, notifier=fake_notifier)

        assert summary["expired_sent"] == 1
        assert fake_notifier.sent == [
            ("trial_expired", no_card.billing_email, {"company_name": no_card.company_name})
        ]
