from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.api.deps import is_super_admin_request, require_admin_api_key
from app.db import get_db
from app.schemas.billing import (
    AccessCheckRead,
    BillingBannerRead,
    BillingHistoryRead,
    ChargeResultRead,
    PlanChangeRequest,
    SaveCardRequest,
    SweepReportRead,
    SweepRunRequest,
    TenantBillingRead,
    TenantProvisionRequest,
    TrialReminderResponse,
)
from app.schemas.common import ListResponse
from app.services import billing_automation as billing_automation_service
from app.services import enforcement as enforcement_service
from app.services.billing import cards as cards_service
from app.services.billing import charges as charges_service
from app.services.billing import lifecycle
from app.services.billing import subscriptions as subscriptions_service
from app.services.billing import webhooks as webhooks_service
from app.services.billing.ledger import billing_ledger
from app.services.response import list_response

router = APIRouter(prefix="/billing")


# --- Tenants ---


@router.post(
    "/tenants",
    response_model=TenantBillingRead,
    status_code=status.HTTP_201_CREATED,
    tags=["tenants"],
    dependencies=[Depends(require_admin_api_key)],
)
def provision_tenant(payload: TenantProvisionRequest, db: Session = Depends(get_db)):
    return billing_ledger.provision(
        db,
        tenant_id=payload.tenant_id,
        company_name=payload.company_name,
        billing_email=payload.billing_email,
        plan=payload.plan,
        is_super_admin_owned=payload.is_super_admin_owned,
    )


@router.get(
    "/tenants/{tenant_id}",
    response_model=TenantBillingRead,
    tags=["tenants"],
)
def get_tenant_billing(tenant_id: str, db: Session = Depends(get_db)):
    return billing_ledger.get_record(db, tenant_id)


@router.get(
    "/tenants/{tenant_id}/history",
    response_model=ListResponse[BillingHistoryRead],
    tags=["tenants"],
)
def list_billing_history(
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    billing_ledger.get_record(db, tenant_id)
    items = billing_ledger.list_history(db, tenant_id, limit, offset)
    return list_response(items, limit, offset)


@router.get(
    "/tenants/{tenant_id}/access",
    response_model=AccessCheckRead,
    tags=["access"],
)
def check_access(
    tenant_id: str,
    path: str = Query(default="/"),
    is_super_admin: bool = Depends(is_super_admin_request),
    db: Session = Depends(get_db),
):
    return enforcement_service.evaluate_access(db, tenant_id, path, is_super_admin=is_super_admin)


@router.get(
    "/tenants/{tenant_id}/banner",
    response_model=BillingBannerRead,
    tags=["access"],
)
def get_billing_banner(
    tenant_id: str,
    is_super_admin: bool = Depends(is_super_admin_request),
    db: Session = Depends(get_db),
):
    record = billing_ledger.find_record(db, tenant_id)
    return lifecycle.billing_banner(record, datetime.now(UTC), is_super_admin=is_super_admin)


# --- Payment methods and charges ---


@router.post(
    "/tenants/{tenant_id}/card",
    response_model=TenantBillingRead,
    tags=["payments"],
)
def save_card(tenant_id: str, payload: SaveCardRequest, db: Session = Depends(get_db)):
    return cards_service.save_card(db, tenant_id, payload.card_nonce, payload.postal_code)


@router.post(
    "/tenants/{tenant_id}/charge",
    response_model=ChargeResultRead,
    tags=["payments"],
    dependencies=[Depends(require_admin_api_key)],
)
def charge_now(tenant_id: str, db: Session = Depends(get_db)):
    return charges_service.charge_now(db, tenant_id)


@router.post(
    "/tenants/{tenant_id}/cancel",
    response_model=TenantBillingRead,
    tags=["tenants"],
    dependencies=[Depends(require_admin_api_key)],
)
def cancel_subscription(tenant_id: str, db: Session = Depends(get_db)):
    return subscriptions_service.cancel_subscription(db, tenant_id)


@router.post(
    "/tenants/{tenant_id}/plan",
    response_model=TenantBillingRead,
    tags=["tenants"],
)
def change_plan(tenant_id: str, payload: PlanChangeRequest, db: Session = Depends(get_db)):
    return subscriptions_service.change_plan(db, tenant_id, payload.plan)


# --- Operations ---


@router.post(
    "/sweeps",
    response_model=SweepReportRead,
    tags=["operations"],
    dependencies=[Depends(require_admin_api_key)],
)
def run_billing_sweep(payload: SweepRunRequest | None = None, db: Session = Depends(get_db)):
    run_at = payload.run_at if payload else None
    return billing_automation_service.run_sweep(db, run_at, max_workers=1)


@router.post(
    "/trial-reminders",
    response_model=TrialReminderResponse,
    tags=["operations"],
    dependencies=[Depends(require_admin_api_key)],
)
def send_trial_reminders(db: Session = Depends(get_db)):
    return billing_automation_service.send_trial_reminders(db)


@router.post(
    "/webhooks/square",
    tags=["payment-events"],
)
async def square_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("x-square-hmacsha256-signature")
    return webhooks_service.process_square_webhook(
        db=db,
        body=body,
        signature=signature,
    )
