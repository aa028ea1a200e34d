"""Per-request billing access enforcement."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import ACCESS_DECISIONS
from app.services.billing import lifecycle
from app.services.billing.ledger import BillingLedger
from app.services.billing.lifecycle import BlockedReason
from app.services.common import as_utc

logger = logging.getLogger(__name__)

UPGRADE_PATH = "/upgrade"

# Routes a blocked tenant still needs in order to pay or manage the account.
DEFAULT_ALLOWLIST = (
    "/admin/billing",
    "/admin/settings",
    "/upgrade",
    "/billing",
)


@dataclass(frozen=True)
class AccessCheck:
    allowed: bool
    blocked_reason: BlockedReason = BlockedReason.none
    days_overdue: int = 0
    allow_listed_route: bool = False
    redirect_to: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "blocked_reason": self.blocked_reason.value,
            "days_overdue": self.days_overdue,
            "allow_listed_route": self.allow_listed_route,
            "redirect_to": self.redirect_to,
        }


def _allowlist() -> tuple[str, ...]:
    extra = tuple(
        item.strip().rstrip("/")
        for item in (settings.access_allowlist_extra or "").split(",")
        if item.strip()
    )
    return DEFAULT_ALLOWLIST + extra


def is_allow_listed_route(path: str | None) -> bool:
    if not path:
        return False
    path = "/" + path.strip().lstrip("/")
    for prefix in _allowlist():
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def evaluate_access(
    db: Session,
    tenant_id,
    path: str | None = None,
    *,
    is_super_admin: bool = False,
    now: datetime | None = None,
) -> AccessCheck:
    """Gate a request from ``tenant_id`` for ``path``.

    One ledger read, no gateway calls. A ledger failure lets the request
    through and is logged.
    """
    now = as_utc(now) or datetime.now(UTC)
    try:
        record = None if is_super_admin else BillingLedger.find_record(db, tenant_id)
    except Exception:
        logger.error("Billing record lookup failed for tenant %s; allowing", tenant_id, exc_info=True)
        record = None
    decision = lifecycle.decide(record, now, is_super_admin=is_super_admin)
    ACCESS_DECISIONS.labels(allowed=str(decision.allowed).lower(), reason=decision.blocked_reason.value).inc()
    if decision.allowed:
        return AccessCheck(allowed=True)

    allow_listed = is_allow_listed_route(path)
    if not allow_listed:
        logger.info(
            "Blocking tenant %s on %s: %s (%d days overdue)",
            tenant_id,
            path,
            decision.blocked_reason.value,
            decision.days_overdue,
        )
    return AccessCheck(
        allowed=False,
        blocked_reason=decision.blocked_reason,
        days_overdue=decision.days_overdue,
        allow_listed_route=allow_listed,
        redirect_to=None if allow_listed else UPGRADE_PATH,
    )
