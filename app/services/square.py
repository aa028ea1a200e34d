"""Square payment gateway integration service."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from app.config import Settings, settings as default_settings
from app.services.billing.exceptions import (
    GatewayAuthError,
    GatewayRequestError,
    GatewayTransientError,
)

logger = logging.getLogger(__name__)

# Square rejects idempotency keys longer than 45 characters.
_KEY_DIGEST_LENGTH = 40

_FINAL_SUCCESS_STATUSES = {"COMPLETED", "APPROVED"}
_FINAL_FAILURE_STATUSES = {"FAILED", "CANCELED"}
# Error codes that say nothing about whether the card was charged.
_AMBIGUOUS_ERROR_CODES = {"IDEMPOTENCY_KEY_REUSED"}


@dataclass(frozen=True)
class CardOnFile:
    card_id: str
    last4: str | None
    brand: str | None


@dataclass(frozen=True)
class ChargeSucceeded:
    gateway_payment_id: str
    last4: str | None = None


@dataclass(frozen=True)
class ChargeDeclined:
    reason_code: str
    message: str
    gateway_payment_id: str | None = None


PaymentResult = ChargeSucceeded | ChargeDeclined


def _digest(*parts: object) -> str:
    raw = "|".join(str(part) for part in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_KEY_DIGEST_LENGTH]


def _cycle_stamp(cycle_start: datetime) -> int:
    if cycle_start.tzinfo is None:
        cycle_start = cycle_start.replace(tzinfo=UTC)
    return int(cycle_start.timestamp())


def customer_idempotency_key(tenant_id: object) -> str:
    """Deterministic key so a retried customer creation returns the same customer."""
    return f"cus-{_digest('customer', tenant_id)}"


def card_idempotency_key(tenant_id: object, card_nonce: str) -> str:
    return f"crd-{_digest('card', tenant_id, card_nonce)}"


def charge_idempotency_key(tenant_id: object, cycle_start: datetime, attempt: int = 0) -> str:
    """Key for one charge attempt of one billing cycle.

    ``cycle_start`` is the due date that opened the cycle and ``attempt`` the
    number of failed attempts already recorded for it, so every invocation for
    the same tenant state maps to the same key.
    """
    return f"chg-{_digest('charge', tenant_id, _cycle_stamp(cycle_start), attempt)}"


def _first_error(data: dict[str, Any]) -> dict[str, Any]:
    errors = data.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0]
    return {}


class SquareGateway:
    """Thin client over Square's customers, cards and payments APIs.

    The client never retries. Retrying with the same idempotency key is the
    caller's decision.
    """

    def __init__(self, config: Settings | None = None):
        self.config = config or default_settings

    @property
    def base_url(self) -> str:
        return self.config.square_base_url

    def _headers(self) -> dict[str, str]:
        return {
            "Square-Version": self.config.square_api_version,
            "Authorization": f"Bearer {self.config.square_access_token}",
            "Content-Type": "application/json",
        }

    def validate_config(self) -> None:
        self.config.validate_square_config()

    def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        self.validate_config()
        url = f"{self.base_url}{path}"
        try:
            resp = httpx.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.config.square_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Square request to %s timed out", path)
            raise GatewayTransientError(f"Square request timed out: {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Square request to %s failed: %s", path, exc)
            raise GatewayTransientError(f"Square request failed: {path}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning("Square %s returned %s", path, resp.status_code)
            raise GatewayTransientError(
                f"Square returned HTTP {resp.status_code} for {path}"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayTransientError(f"Square returned a non-JSON body for {path}") from exc
        if resp.status_code in (401, 403):
            error = _first_error(data)
            logger.error("Square rejected credentials on %s: %s", path, error.get("code"))
            raise GatewayAuthError(
                error.get("detail") or "Square rejected the configured credentials",
                details=data.get("errors"),
            )
        return resp.status_code, data

    def create_customer(self, tenant_ref: object, name: str, email: str) -> str:
        """Create a Square customer and return its id."""
        status_code, data = self._post(
            "/customers",
            {
                "idempotency_key": customer_idempotency_key(tenant_ref),
                "email_address": email,
                "company_name": name,
                "reference_id": str(tenant_ref),
            },
        )
        customer = data.get("customer") or {}
        if status_code >= 400 or data.get("errors") or not customer.get("id"):
            error = _first_error(data)
            logger.error("Square customer creation failed for %s: %s", tenant_ref, data.get("errors"))
            raise GatewayRequestError(
                error.get("detail") or "Failed to create payment customer",
                details=data.get("errors"),
            )
        return customer["id"]

    def create_card_on_file(
        self,
        customer_id: str,
        card_nonce: str,
        idempotency_key: str,
        postal_code: str | None = None,
    ) -> CardOnFile:
        card_payload: dict[str, Any] = {"customer_id": customer_id}
        if postal_code:
            card_payload["billing_address"] = {"postal_code": postal_code}
        status_code, data = self._post(
            "/cards",
            {
                "idempotency_key": idempotency_key,
                "source_id": card_nonce,
                "card": card_payload,
            },
        )
        card = data.get("card") or {}
        if status_code >= 400 or data.get("errors") or not card.get("id"):
            error = _first_error(data)
            logger.warning("Square card creation failed for customer %s: %s", customer_id, data.get("errors"))
            raise GatewayRequestError(
                error.get("detail") or "Card could not be saved. Please try a different card.",
                details=data.get("errors"),
            )
        return CardOnFile(
            card_id=card["id"],
            last4=card.get("last_4"),
            brand=card.get("card_brand"),
        )

    def charge(
        self,
        customer_id: str,
        card_id: str,
        amount_cents: int,
        idempotency_key: str,
        reference_id: str,
        note: str | None = None,
    ) -> PaymentResult:
        """Charge a card on file.

        Card declines come back as ``ChargeDeclined``. Anything that leaves the
        outcome unknown raises ``GatewayTransientError``, and other rejected
        requests raise ``GatewayRequestError``.
        """
        payload: dict[str, Any] = {
            "idempotency_key": idempotency_key,
            "source_id": card_id,
            "amount_money": {"amount": amount_cents, "currency": self.config.square_currency},
            "customer_id": customer_id,
            "location_id": self.config.square_location_id,
            "reference_id": reference_id,
            "autocomplete": True,
        }
        if note:
            payload["note"] = note
        status_code, data = self._post("/payments", payload)
        payment = data.get("payment") or {}
        payment_status = str(payment.get("status") or "").upper()

        error = _first_error(data)
        if (
            payment_status in _FINAL_FAILURE_STATUSES
            or status_code == 402
            or error.get("category") == "PAYMENT_METHOD_ERROR"
        ):
            return ChargeDeclined(
                reason_code=error.get("code") or payment_status or "PAYMENT_FAILED",
                message=error.get("detail") or "Payment failed",
                gateway_payment_id=payment.get("id"),
            )
        if error.get("code") in _AMBIGUOUS_ERROR_CODES:
            logger.warning("Square charge %s returned %s", idempotency_key, error.get("code"))
            raise GatewayTransientError(f"Square charge outcome unknown: {error.get('code')}")
        if status_code >= 400 or data.get("errors"):
            logger.error("Square charge %s rejected: %s", idempotency_key, data.get("errors"))
            raise GatewayRequestError(
                error.get("detail") or "Payment request was rejected",
                details=data.get("errors"),
            )
        if payment.get("id") and payment_status in _FINAL_SUCCESS_STATUSES:
            card = (payment.get("card_details") or {}).get("card") or {}
            return ChargeSucceeded(gateway_payment_id=payment["id"], last4=card.get("last_4"))

        logger.warning(
            "Square payment %s returned non-final status %r",
            payment.get("id"),
            payment_status,
        )
        raise GatewayTransientError(
            f"Square payment is in non-final status {payment_status or 'UNKNOWN'}"
        )


def verify_webhook_signature(
    body: bytes,
    signature: str | None,
    config: Settings | None = None,
) -> bool:
    """Verify Square's ``x-square-hmacsha256-signature`` header.

    Square signs ``notification_url + body`` with HMAC-SHA256 and base64
    encodes the digest.
    """
    config = config or default_settings
    key = config.square_webhook_signature_key
    url = config.square_webhook_notification_url
    if not key or not url or not signature:
        return False
    digest = hmac.new(
        key.encode("utf-8"),
        url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def webhook_verification_enabled(config: Settings | None = None) -> bool:
    config = config or default_settings
    return bool(config.square_webhook_signature_key and config.square_webhook_notification_url)


def webhook_verification_required(config: Settings | None = None) -> bool:
    """Production deployments must not accept unsigned webhooks."""
    config = config or default_settings
    return config.square_is_production


def get_gateway() -> SquareGateway:
    return SquareGateway()
