import logging
import time

from app.celery_app import celery_app
from app.config import settings
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import billing_automation as billing_automation_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.run_billing_sweep")
def run_billing_sweep():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        report = billing_automation_service.run_sweep(
            session,
            max_workers=settings.billing_sweep_workers,
            session_factory=SessionLocal,
        )
        return report.as_dict()
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Billing sweep failed.")
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("billing_sweep", status, duration)


@celery_app.task(name="app.tasks.billing.send_trial_reminders")
def send_trial_reminders():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return billing_automation_service.send_trial_reminders(session)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Trial reminders failed.")
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("trial_reminders", status, duration)
