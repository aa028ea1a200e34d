from __future__ import annotations

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.api.deps import require_billing_access
from app.db import get_db
from app.errors import register_error_handlers
from app.observability import ObservabilityMiddleware
from app.services.billing.exceptions import ChargeRejectedError, TenantNotFoundError


def _build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    api_router = APIRouter(prefix="/api/v1")

    @api_router.get("/http-403")
    def api_http_403():
        raise HTTPException(status_code=403, detail="Forbidden api")

    @api_router.get("/needs-int")
    def api_needs_int(value: int):
        return {"value": value}

    @api_router.get("/missing-tenant")
    def missing_tenant():
        raise TenantNotFoundError("t-1")

    @api_router.get("/rejected")
    def rejected():
        raise ChargeRejectedError("Subscription is cancelled", details={"status": "cancelled"})

    @api_router.get("/crash")
    def crash():
        raise RuntimeError("boom")

    @api_router.get("/jobs", dependencies=[Depends(require_billing_access)])
    def list_jobs():
        return {"ok": True}

    @api_router.get("/billing/summary", dependencies=[Depends(require_billing_access)])
    def billing_summary():
        return {"ok": True}

    app.include_router(api_router)
    return app


def test_api_http_exception_returns_json() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/http-403", headers={"X-Request-ID": "req-1"})
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "http_403"
    assert body["message"] == "Forbidden api"
    assert body["request_id"] == "req-1"
    assert resp.headers["X-Request-ID"] == "req-1"


def test_unknown_route_returns_json_404() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/nope")
    assert resp.status_code == 404
    assert resp.json()["code"] == "http_404"


def test_api_validation_error_returns_json() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/needs-int", params={"value": "abc"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "validation_error"
    assert body["message"] == "Validation error"
    assert isinstance(body["details"], list)


def test_billing_errors_use_their_code_and_status() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)

    missing = client.get("/api/v1/missing-tenant")
    assert missing.status_code == 404
    assert missing.json()["code"] == "tenant_not_found"

    rejected = client.get("/api/v1/rejected")
    assert rejected.status_code == 409
    assert rejected.json()["details"] == {"status": "cancelled"}


def test_unhandled_error_returns_internal_error() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/crash")
    assert resp.status_code == 500
    assert resp.json()["code"] == "internal_error"


class TestRequireBillingAccess:
    def _client(self, db_session):
        app = _build_app()
        app.dependency_overrides[get_db] = lambda: db_session
        return TestClient(app, raise_server_exceptions=False)

    def test_overdue_tenant_gets_402(self, db_session, make_tenant):
        record = make_tenant(gateway_card_id=None)
        client = self._client(db_session)

        resp = client.get("/api/v1/jobs", headers={"X-Tenant-ID": str(record.tenant_id)})

        assert resp.status_code == 402
        body = resp.json()
        assert body["code"] == "payment_required"
        assert body["details"]["redirect_to"] == "/upgrade"
        assert body["details"]["blocked_reason"] == "payment_required"

    def test_overdue_tenant_reaches_billing_routes(self, db_session, make_tenant):
        record = make_tenant(gateway_card_id=None)
        client = self._client(db_session)

        resp = client.get("/api/v1/billing/summary", headers={"X-Tenant-ID": str(record.tenant_id)})

        assert resp.status_code == 200

    def test_request_without_tenant_passes(self, db_session):
        resp = self._client(db_session).get("/api/v1/jobs")
        assert resp.status_code == 200
