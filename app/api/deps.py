import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.services.enforcement import AccessCheck, evaluate_access

API_PREFIX = "/api/v1"


def _valid_admin_key(api_key: str | None) -> bool:
    expected = settings.admin_api_key
    if not expected or not api_key:
        return False
    return secrets.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8"))


def require_admin_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Guard for operator-only endpoints (manual charge, sweeps)."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "admin_disabled", "message": "Admin API key is not configured"},
        )
    if not _valid_admin_key(x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "invalid_api_key", "message": "Invalid or missing API key"},
        )


def is_super_admin_request(x_api_key: str | None = Header(default=None)) -> bool:
    return _valid_admin_key(x_api_key)


def require_billing_access(
    request: Request,
    x_tenant_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AccessCheck | None:
    """Block tenant requests with an unpaid or cancelled subscription.

    Requests without a tenant context pass through. A blocked tenant can
    still reach the allow-listed billing routes.
    """
    if not x_tenant_id:
        return None
    path = request.url.path
    if path.startswith(API_PREFIX + "/"):
        path = path[len(API_PREFIX):]
    check = evaluate_access(
        db,
        x_tenant_id,
        path,
        is_super_admin=_valid_admin_key(x_api_key),
    )
    if not check.allowed and not check.allow_listed_route:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "payment_required",
                "message": "Subscription payment required",
                "details": check.as_dict(),
            },
        )
    return check


__all__ = [
    "get_db",
    "is_super_admin_request",
    "require_admin_api_key",
    "require_billing_access",
]
