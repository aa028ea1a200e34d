from app.tasks.billing import run_billing_sweep, send_trial_reminders

__all__ = [
    "run_billing_sweep",
    "send_trial_reminders",
]
