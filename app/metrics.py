from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

CHARGE_ATTEMPTS = Counter(
    "billing_charge_attempts_total",
    "Subscription charge attempts by trigger and outcome",
    ["trigger", "outcome"],
)
SWEEP_TENANTS = Counter(
    "billing_sweep_tenants_total",
    "Tenants processed by billing sweeps by result",
    ["result"],
)
ACCESS_DECISIONS = Counter(
    "billing_access_decisions_total",
    "Access guard decisions",
    ["allowed", "reason"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_charge(trigger: str, outcome: str) -> None:
    CHARGE_ATTEMPTS.labels(trigger=trigger, outcome=outcome).inc()
