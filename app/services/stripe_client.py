"""Stripe REST API client used by the payment sync gateway."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any

import httpx

from app.config import settings
from app.errors import ExternalServiceError, SecurityError

logger = logging.getLogger(__name__)

STRIPE_API_VERSION = "2024-06-20"
RETRYABLE_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})


def _flatten_params(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Encode nested params the way Stripe's form API expects (``a[b][0][c]=v``)."""
    items: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            items.extend(_flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    items.extend(_flatten_params(item, f"{name}[{index}]"))
                else:
                    items.append((f"{name}[{index}]", str(item)))
        elif isinstance(value, bool):
            items.append((name, "true" if value else "false"))
        else:
            items.append((name, str(value)))
    return items


def mask_key(secret_key: str | None) -> str:
    if not secret_key:
        return "<unset>"
    return f"{secret_key[:8]}..."


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None = None,
    *,
    tolerance: int | None = None,
    now: float | None = None,
) -> None:
    """Verify a ``Stripe-Signature`` header (``t=...,v1=...``).

    Raises:
        SecurityError: if the secret or header is missing, the timestamp is
            outside the tolerance window, or no ``v1`` signature matches.
    """
    secret = secret if secret is not None else settings.stripe_webhook_secret
    if not secret:
        raise SecurityError("Webhook secret is not configured")
    if not signature_header:
        raise SecurityError("Missing webhook signature")

    timestamp = None
    signatures: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise SecurityError("Malformed webhook signature")
    try:
        signed_at = int(timestamp)
    except ValueError as exc:
        raise SecurityError("Malformed webhook signature") from exc

    tolerance = settings.stripe_webhook_tolerance_seconds if tolerance is None else tolerance
    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        raise SecurityError("Webhook timestamp outside tolerance")

    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SecurityError("Invalid webhook signature")


class StripeClient:
    """Thin wrapper over the Stripe REST endpoints the billing core needs.

    Every call carries an explicit timeout. Transport failures and 5xx/429
    responses surface as retryable :class:`ExternalServiceError`; other 4xx
    responses are non-retryable.
    """

    def __init__(
        self,
        secret_key: str | None = None,
        *,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.secret_key = (secret_key or settings.stripe_secret_key or "").strip()
        self.api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.stripe_timeout_seconds
        self._transport = transport
        self._client: httpx.Client | None = None

    @classmethod
    def from_settings(cls, transport: httpx.BaseTransport | None = None) -> "StripeClient":
        try:
            settings.validate_stripe_config()
        except ValueError as exc:
            raise ExternalServiceError(str(exc), retryable=False) from exc
        return cls(transport=transport)

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.api_base,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Stripe-Version": STRIPE_API_VERSION,
                },
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        encoded = _flatten_params(params or {})
        try:
            if method == "GET":
                resp = self.client.request(method, path, params=encoded, headers=headers)
            else:
                resp = self.client.request(method, path, data=dict(encoded), headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Stripe %s %s timed out", method, path)
            raise ExternalServiceError(
                "Payment processor timed out", retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Stripe %s %s transport error: %s", method, path, exc)
            raise ExternalServiceError(
                "Payment processor unreachable", retryable=True
            ) from exc

        if resp.status_code >= 400:
            error: dict[str, Any] = {}
            try:
                error = resp.json().get("error") or {}
            except ValueError:
                pass
            message = error.get("message") or f"Stripe returned HTTP {resp.status_code}"
            logger.error(
                "Stripe %s %s failed status=%s code=%s",
                method,
                path,
                resp.status_code,
                error.get("code"),
            )
            raise ExternalServiceError(
                message,
                details={"status_code": resp.status_code, "type": error.get("type")},
                retryable=resp.status_code in RETRYABLE_STATUS_CODES,
                provider_code=error.get("code"),
            )
        return resp.json()

    # Account

    def retrieve_account(self) -> dict[str, Any]:
        return self._request("GET", "/v1/account")

    # Customers

    def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        data = self._request("GET", "/v1/customers", params={"email": email, "limit": 1})
        customers = data.get("data") or []
        return customers[0] if customers else None

    def create_customer(self, params: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        return self._request("POST", "/v1/customers", params=params, idempotency_key=idempotency_key)

    def update_customer(self, customer_id: str, params: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/v1/customers/{customer_id}", params=params)

    # Invoices

    def create_invoice(self, params: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        return self._request("POST", "/v1/invoices", params=params, idempotency_key=idempotency_key)

    def create_invoice_item(
        self, params: dict[str, Any], *, idempotency_key: str | None = None
    ) -> dict[str, Any]:
        return self._request(
            "POST", "/v1/invoiceitems", params=params, idempotency_key=idempotency_key
        )

    def finalize_invoice(self, invoice_id: str, *, idempotency_key: str | None = None) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v1/invoices/{invoice_id}/finalize",
            params={"auto_advance": False},
            idempotency_key=idempotency_key,
        )

    def send_invoice(self, invoice_id: str, *, idempotency_key: str | None = None) -> dict[str, Any]:
        return self._request(
            "POST", f"/v1/invoices/{invoice_id}/send", idempotency_key=idempotency_key
        )

    def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/invoices/{invoice_id}")

    def delete_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/v1/invoices/{invoice_id}")
