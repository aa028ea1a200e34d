import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str) -> bool | None:
    raw = _env_value(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return None


def get_celery_config() -> dict:
    timezone = _env_value("CELERY_TIMEZONE") or "UTC"
    beat_max_loop_interval = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5
    config: dict[str, object] = {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": timezone,
        "beat_max_loop_interval": beat_max_loop_interval,
        # A sweep killed mid-run is re-delivered; charges are keyed so that is safe.
        "task_acks_late": True,
    }
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    sweep_enabled = _env_bool("BILLING_SWEEP_ENABLED")
    if sweep_enabled is None or sweep_enabled:
        interval_minutes = _env_int("BILLING_SWEEP_INTERVAL_MINUTES") or settings.billing_sweep_interval_minutes
        schedule["billing_sweep"] = {
            "task": "app.tasks.billing.run_billing_sweep",
            "schedule": timedelta(minutes=max(interval_minutes, 5)),
        }
    reminders_enabled = _env_bool("TRIAL_REMINDERS_ENABLED")
    if reminders_enabled is None or reminders_enabled:
        interval_minutes = (
            _env_int("TRIAL_REMINDER_INTERVAL_MINUTES") or settings.trial_reminder_interval_minutes
        )
        schedule["trial_reminders"] = {
            "task": "app.tasks.billing.send_trial_reminders",
            "schedule": timedelta(minutes=max(interval_minutes, 60)),
        }
    return schedule
