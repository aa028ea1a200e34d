from __future__ import annotations

import logging
import math
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import SWEEP_TENANTS
from app.models.billing import SubscriptionStatus
from app.services.billing.charges import ChargeOrchestrator, ChargeOutcome, ChargeTrigger
from app.services.billing.exceptions import ChargeRejectedError
from app.services.billing.ledger import BillingLedger
from app.services.billing.lifecycle import TRIAL_WARNING_DAYS
from app.services.billing.notifications import (
    BillingNotifier,
    NotificationKind,
    get_notifier,
)
from app.services.common import as_utc
from app.services.square import SquareGateway, get_gateway

logger = logging.getLogger(__name__)

_REMINDER_DAYS = {TRIAL_WARNING_DAYS, 1, 0}


@dataclass
class SweepReport:
    run_at: datetime
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["run_at"] = self.run_at.isoformat()
        return data


def _charge_tenant(
    db: Session,
    tenant_id,
    now: datetime,
    gateway: SquareGateway,
    notifier: BillingNotifier,
) -> ChargeOutcome:
    # Reload so a worker never acts on a row read by another session.
    record = BillingLedger.get_record(db, tenant_id)
    orchestrator = ChargeOrchestrator(db, gateway=gateway, notifier=notifier)
    return orchestrator.charge(record, now=now, trigger=ChargeTrigger.sweep)


def _charge_in_own_session(
    session_factory: Callable[[], Session],
    tenant_id,
    now: datetime,
    gateway: SquareGateway,
    notifier: BillingNotifier,
) -> ChargeOutcome:
    session = session_factory()
    try:
        return _charge_tenant(session, tenant_id, now, gateway, notifier)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _tally(report: SweepReport, tenant_id, outcome: ChargeOutcome | None, exc: Exception | None) -> None:
    if exc is not None:
        if isinstance(exc, ChargeRejectedError):
            logger.info("Skipping tenant %s: %s", tenant_id, exc.message)
            report.skipped += 1
            SWEEP_TENANTS.labels(result="skipped").inc()
            return
        logger.error("Billing sweep failed for tenant %s: %s", tenant_id, exc, exc_info=exc)
        report.failed += 1
        report.errors.append({"tenant_id": str(tenant_id), "reason": str(exc)})
        SWEEP_TENANTS.labels(result="error").inc()
        return
    if outcome.replayed:
        report.skipped += 1
        SWEEP_TENANTS.labels(result="skipped").inc()
    elif outcome.succeeded:
        report.succeeded += 1
        SWEEP_TENANTS.labels(result="succeeded").inc()
    else:
        report.failed += 1
        SWEEP_TENANTS.labels(result="declined").inc()


def run_sweep(
    db: Session,
    now: datetime | None = None,
    *,
    gateway: SquareGateway | None = None,
    notifier: BillingNotifier | None = None,
    max_workers: int | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> SweepReport:
    """Charge every tenant that is due at ``now``.

    Each tenant is charged and committed on its own. An error for one tenant
    is logged and reported and the sweep carries on. Missing gateway
    credentials abort before any tenant is touched.
    """
    now = as_utc(now) or datetime.now(UTC)
    gateway = gateway or get_gateway()
    notifier = notifier or get_notifier()
    gateway.validate_config()

    if max_workers is None:
        max_workers = settings.billing_sweep_workers
    tenant_ids = [record.tenant_id for record in BillingLedger.list_due_for_charge(db, now)]
    report = SweepReport(run_at=now, processed=len(tenant_ids))
    logger.info("Billing sweep started at %s: %d tenant(s) due", now.isoformat(), len(tenant_ids))

    if max_workers > 1 and session_factory is not None and len(tenant_ids) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(
                    _charge_in_own_session, session_factory, tenant_id, now, gateway, notifier
                ): tenant_id
                for tenant_id in tenant_ids
            }
            for future in as_completed(futures):
                tenant_id = futures[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    _tally(report, tenant_id, None, exc)
                else:
                    _tally(report, tenant_id, outcome, None)
    else:
        for tenant_id in tenant_ids:
            try:
                outcome = _charge_tenant(db, tenant_id, now, gateway, notifier)
            except Exception as exc:
                db.rollback()
                _tally(report, tenant_id, None, exc)
            else:
                _tally(report, tenant_id, outcome, None)

    logger.info(
        "Billing sweep finished: processed=%d succeeded=%d failed=%d skipped=%d errors=%d",
        report.processed,
        report.succeeded,
        report.failed,
        report.skipped,
        len(report.errors),
    )
    return report


def send_trial_reminders(
    db: Session,
    now: datetime | None = None,
    notifier: BillingNotifier | None = None,
) -> dict[str, int]:
    """Email trial tenants whose trial ends soon or has just ended.

    Meant to run once a day: expiring reminders go out at 3, 1 and 0 days
    remaining, and the expired notice covers trials that ended in the last day
    without a card on file.
    """
    now = as_utc(now) or datetime.now(UTC)
    notifier = notifier or get_notifier()
    summary = {"expiring_sent": 0, "expired_sent": 0, "skipped": 0}

    for record in BillingLedger.list_trials_ending(db, now, now + timedelta(days=TRIAL_WARNING_DAYS)):
        days_remaining = max(math.ceil((as_utc(record.trial_ends_at) - now) / timedelta(days=1)), 0)
        if days_remaining not in _REMINDER_DAYS:
            summary["skipped"] += 1
            continue
        sent = notifier.notify(
            NotificationKind.trial_expiring,
            record.billing_email,
            {"company_name": record.company_name, "days_remaining": days_remaining},
        )
        summary["expiring_sent" if sent else "skipped"] += 1

    for record in BillingLedger.list_trials_ending(db, now - timedelta(days=1), now):
        if record.subscription_status != SubscriptionStatus.trial or record.gateway_card_id:
            summary["skipped"] += 1
            continue
        sent = notifier.notify(
            NotificationKind.trial_expired,
            record.billing_email,
            {"company_name": record.company_name},
        )
        summary["expired_sent" if sent else "skipped"] += 1

    logger.info(
        "Trial reminders: expiring=%d expired=%d skipped=%d",
        summary["expiring_sent"],
        summary["expired_sent"],
        summary["skipped"],
    )
    return summary
