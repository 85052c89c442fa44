"""
FedaPay adapter.

Everything that knows the provider's vocabulary lives here: endpoints, payload
shapes, status synonyms and webhook signatures. The rest of the application
only ever sees PaymentStatus values.
"""
from __future__ import annotations
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any
import httpx
import structlog

from talentvote.config import settings, Settings
from talentvote.models.payment import PaymentStatus

log = structlog.get_logger()

SANDBOX_API = "https://sandbox-api.fedapay.com/v1"
LIVE_API = "https://api.fedapay.com/v1"

# provider status -> canonical status; anything missing is "unknown"
STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "created": PaymentStatus.PENDING,
    "approved": PaymentStatus.APPROVED,
    "transferred": PaymentStatus.APPROVED,
    "completed": PaymentStatus.APPROVED,
    "paid": PaymentStatus.APPROVED,
    "success": PaymentStatus.APPROVED,
    "successful": PaymentStatus.APPROVED,
    "declined": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
}

WEBHOOK_EVENTS: dict[str, PaymentStatus] = {
    "transaction.approved": PaymentStatus.APPROVED,
    "transaction.transferred": PaymentStatus.APPROVED,
    "transaction.declined": PaymentStatus.FAILED,
    "transaction.canceled": PaymentStatus.CANCELLED,
    "transaction.cancelled": PaymentStatus.CANCELLED,
    "transaction.expired": PaymentStatus.EXPIRED,
}


class GatewayUnavailable(Exception):
    """Timeout, transport error, non-2xx or malformed response. Always safe to retry."""
    code = "gateway_unavailable"
    status_code = 503

    def __init__(self, message: str, *, http_status: int | None = None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status


@dataclass
class Customer:
    firstname: str
    lastname: str
    email: str
    phone: str  # canonical digits, country code included


@dataclass
class CheckoutSession:
    transaction_id: str
    checkout_url: str
    provider_token: str | None = None
    provider_status: str | None = None


@dataclass
class ProviderTransaction:
    id: str
    status: str | None
    mapped: PaymentStatus | None
    raw: dict[str, Any] = field(default_factory=dict)


def map_provider_status(provider_status: str | None) -> PaymentStatus | None:
    key = (provider_status or "").strip().lower()
    mapped = STATUS_MAP.get(key)
    if mapped is None:
        log.warning("gateway_status_unmapped", provider_status=provider_status)
    return mapped


def webhook_event_status(event: str, entity: dict[str, Any], *, close: bool = False) -> PaymentStatus | None:
    """
    Status announced by a webhook. A `transaction.pending` event carrying the
    close flag means the payer closed the checkout.
    """
    if event in WEBHOOK_EVENTS:
        return WEBHOOK_EVENTS[event]
    if event == "transaction.pending" and close:
        return PaymentStatus.CANCELLED
    return map_provider_status(entity.get("status"))


def _parse_signature(header: str) -> tuple[str | None, str]:
    # "t=1700000000,s=<hex>" or a bare hex digest
    parts = dict(p.split("=", 1) for p in header.split(",") if "=" in p)
    if "s" in parts:
        return parts.get("t"), parts["s"]
    return None, header


def verify_webhook_signature(
    raw_body: bytes, signature: str | None, *, secret: str | None, environment: str = "prod",
) -> bool:
    """
    HMAC-SHA256 of the raw body (or of "<t>.<body>" for timestamped headers),
    compared in constant time. Without a configured secret, only dev/test
    accept unsigned deliveries.
    """
    if not secret:
        if environment in ("dev", "test"):
            log.warning("webhook_signature_unchecked", reason="no secret configured")
            return True
        log.error("webhook_secret_missing")
        return False
    if not signature:
        return False
    timestamp, provided = _parse_signature(signature.strip())
    signed = raw_body if timestamp is None else timestamp.encode() + b"." + raw_body
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), provided.strip().lower().encode("utf-8"))


class FedaPayClient:
    def __init__(
        self,
        secret_key: str,
        environment: str = "sandbox",
        *,
        country: str = "bj",
        create_timeout: float = 30.0,
        fetch_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.environment = environment
        self.base_url = LIVE_API if environment == "live" else SANDBOX_API
        self.country = country
        self.create_timeout = create_timeout
        self.fetch_timeout = fetch_timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, cfg: Settings = settings, **kwargs) -> "FedaPayClient":
        return cls(
            cfg.fedapay_secret_key,
            cfg.fedapay_environment,
            country=cfg.fedapay_country,
            create_timeout=cfg.gateway_create_timeout_seconds,
            fetch_timeout=cfg.gateway_fetch_timeout_seconds,
            **kwargs,
        )

    async def _request(self, method: str, path: str, *, timeout: float, json: dict | None = None) -> dict[str, Any]:
        if not self.secret_key:
            raise GatewayUnavailable("Payment gateway is not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=timeout, headers=headers, transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            log.warning("gateway_request_failed", method=method, path=path, error=type(e).__name__)
            raise GatewayUnavailable(f"Payment gateway unreachable ({type(e).__name__})") from e

        if not resp.is_success:
            log.warning("gateway_http_error", method=method, path=path, status=resp.status_code,
                        body=resp.text[:500])
            raise GatewayUnavailable(f"Payment gateway returned HTTP {resp.status_code}",
                                     http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayUnavailable("Payment gateway returned malformed JSON") from e
        if not isinstance(data, dict):
            raise GatewayUnavailable("Payment gateway returned an unexpected payload")
        return data

    @staticmethod
    def _transaction_from(data: dict[str, Any]) -> dict[str, Any]:
        tx = data.get("v1/transaction") or data.get("transaction") or data.get("data")
        if isinstance(tx, dict) and isinstance(tx.get("transaction"), dict):
            tx = tx["transaction"]
        if not isinstance(tx, dict) or tx.get("id") is None:
            raise GatewayUnavailable("Payment gateway response has no transaction")
        return tx

    async def create_transaction(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        customer: Customer,
        callback_url: str,
        redirect_url: str | None = None,
        cancel_url: str | None = None,
        reference: str | None = None,
    ) -> CheckoutSession:
        body: dict[str, Any] = {
            "description": description,
            "amount": int(amount),
            "currency": {"iso": currency},
            "callback_url": callback_url,
            "customer": {
                "firstname": customer.firstname,
                "lastname": customer.lastname,
                "email": customer.email,
                "phone_number": {"number": f"+{customer.phone}", "country": self.country},
            },
        }
        if redirect_url:
            body["redirect_url"] = redirect_url
        if cancel_url:
            body["cancel_url"] = cancel_url
        if reference:
            body["merchant_reference"] = reference

        data = await self._request("POST", "/transactions", json=body, timeout=self.create_timeout)
        tx = self._transaction_from(data)
        tx_id = str(tx["id"])
        url = tx.get("payment_url")
        token = tx.get("payment_token")
        if not url:
            token_data = await self._request("POST", f"/transactions/{tx_id}/token", timeout=self.create_timeout)
            url = token_data.get("url")
            token = token_data.get("token") or token
        if not url:
            raise GatewayUnavailable("Payment gateway returned no checkout URL")
        log.info("gateway_transaction_created", transaction_id=tx_id, amount=amount, currency=currency)
        return CheckoutSession(transaction_id=tx_id, checkout_url=url, provider_token=token,
                               provider_status=tx.get("status"))

    async def fetch_transaction(self, transaction_id: str) -> ProviderTransaction:
        data = await self._request("GET", f"/transactions/{transaction_id}", timeout=self.fetch_timeout)
        tx = self._transaction_from(data)
        status = tx.get("status")
        return ProviderTransaction(id=str(tx["id"]), status=status, mapped=map_provider_status(status), raw=tx)

    async def ping(self) -> dict[str, Any]:
        """Cheap authenticated call used by the diagnostics endpoint."""
        await self._request("GET", "/currencies", timeout=self.fetch_timeout)
        return {"ok": True, "environment": self.environment}


def get_gateway() -> FedaPayClient:
    return FedaPayClient.from_settings()
