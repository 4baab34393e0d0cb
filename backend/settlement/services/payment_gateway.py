# Overview: Payment provider clients; checkout handoff, status pulls, refunds and webhook signatures.

"""
Payment Provider Gateway

WHY: The core never talks to a specific provider directly. Intents hand off to
a gateway that returns a provider reference plus a redirect URL, and later
pulls authoritative status for reconciliation and manual confirmation.

IMPLEMENTATIONS:
- SandboxGateway: offline, deterministic; statuses are set with simulate_status()
- HttpGateway: provider REST API over httpx with a bearer secret key

WEBHOOK SIGNATURES:
- HMAC-SHA256 over the raw request body, hex encoded, keyed by PAYMENT_WEBHOOK_SECRET
- Compared in constant time
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from flask import current_app

from ..models import PaymentIntent


logger = logging.getLogger(__name__)

GATEWAY_EXTENSION_KEY = "settlement.payment_gateway"


class PaymentGatewayError(Exception):
    """Provider unreachable or answered with an error."""
    pass


@dataclass(frozen=True)
class CheckoutHandoff:
    provider_reference: str
    redirect_url: str


@dataclass(frozen=True)
class ProviderPayment:
    provider_reference: str
    status: str
    transaction_id: str | None = None
    amount_minor_units: int | None = None


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


class PaymentGateway:
    """Provider-agnostic contract."""

    name = "base"

    def create_checkout(self, intent: PaymentIntent, *, return_url: str) -> CheckoutHandoff:
        raise NotImplementedError

    def fetch_payment_status(self, provider_reference: str) -> ProviderPayment:
        raise NotImplementedError

    def verify_transaction(
        self,
        provider_reference: str,
        transaction_id: str,
        amount_minor_units: int,
        verification_code: str | None = None,
    ) -> bool:
        raise NotImplementedError

    def refund(self, provider_reference: str, amount_minor_units: int, *, reason: str | None = None) -> str:
        raise NotImplementedError


class SandboxGateway(PaymentGateway):
    """
    In-process provider used in development and tests.

    Payments start 'pending'; simulate_status() plays the provider's part.
    """

    name = "sandbox"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._payments: dict[str, dict] = {}
        self.refunds: list[tuple[str, int]] = []

    def create_checkout(self, intent: PaymentIntent, *, return_url: str) -> CheckoutHandoff:
        reference = f"sbx_{intent.id}_{secrets.token_hex(6)}"
        with self._lock:
            self._payments[reference] = {
                "status": "pending",
                "amount": intent.amount_minor_units,
                "transaction_id": None,
            }
        query = urlencode({"return_url": return_url, "intent": intent.id})
        return CheckoutHandoff(
            provider_reference=reference,
            redirect_url=f"{self.base_url}/checkout/{reference}?{query}",
        )

    def simulate_status(self, provider_reference: str, status: str, *, transaction_id: str | None = None) -> None:
        with self._lock:
            payment = self._payments.setdefault(
                provider_reference, {"status": "pending", "amount": None, "transaction_id": None}
            )
            payment["status"] = status
            if transaction_id is not None:
                payment["transaction_id"] = transaction_id

    def fetch_payment_status(self, provider_reference: str) -> ProviderPayment:
        with self._lock:
            payment = self._payments.get(provider_reference)
        if payment is None:
            raise PaymentGatewayError(f"Unknown payment reference {provider_reference}")
        return ProviderPayment(
            provider_reference=provider_reference,
            status=payment["status"],
            transaction_id=payment["transaction_id"],
            amount_minor_units=payment["amount"],
        )

    def verify_transaction(self, provider_reference, transaction_id, amount_minor_units, verification_code=None):
        with self._lock:
            payment = self._payments.get(provider_reference)
        if payment is None or not transaction_id:
            return False
        if payment["status"] == "failed":
            return False
        if payment["amount"] is not None and payment["amount"] != amount_minor_units:
            return False
        recorded = payment["transaction_id"]
        return recorded is None or recorded == transaction_id

    def refund(self, provider_reference, amount_minor_units, *, reason=None):
        with self._lock:
            if provider_reference not in self._payments:
                raise PaymentGatewayError(f"Unknown payment reference {provider_reference}")
            self._payments[provider_reference]["status"] = "refunded"
            self.refunds.append((provider_reference, amount_minor_units))
        return f"rf_{provider_reference}"


class HttpGateway(PaymentGateway):
    """Provider REST API client."""

    name = "http"

    def __init__(self, base_url: str, secret_key: str, *, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self._http_client: httpx.Client | None = None

    def _client(self) -> httpx.Client:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            self._http_client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client().request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Payment provider %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError(f"Payment provider unreachable: {exc}") from exc

        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", {}).get("message")
            except ValueError:
                message = None
            logger.error("Payment provider %s %s answered %s: %s", method, path, resp.status_code, resp.text)
            raise PaymentGatewayError(message or f"Payment provider error {resp.status_code}")

        body = resp.json()
        if not body.get("success", True):
            raise PaymentGatewayError(body.get("error", {}).get("message") or "Payment provider error")
        return body.get("data") or {}

    def create_checkout(self, intent, *, return_url):
        data = self._request("POST", "/checkout/sessions", json={
            "amount": intent.amount_minor_units,
            "currency": intent.currency,
            "reference": f"intent-{intent.id}",
            "payment_method": intent.method,
            "success_url": return_url,
            "metadata": {"order_id": intent.order_id, "intent_id": intent.id},
        })
        return CheckoutHandoff(provider_reference=data["reference"], redirect_url=data["checkout_url"])

    def fetch_payment_status(self, provider_reference):
        data = self._request("GET", f"/payments/{provider_reference}")
        return ProviderPayment(
            provider_reference=provider_reference,
            status=data.get("status", "pending"),
            transaction_id=data.get("id"),
            amount_minor_units=data.get("amount"),
        )

    def verify_transaction(self, provider_reference, transaction_id, amount_minor_units, verification_code=None):
        params = {"transaction_id": transaction_id}
        if verification_code:
            params["verification_code"] = verification_code
        data = self._request("GET", f"/payments/{provider_reference}/verify", params=params)
        return (
            data.get("status") in ("success", "succeeded", "completed")
            and data.get("amount") == amount_minor_units
        )

    def refund(self, provider_reference, amount_minor_units, *, reason=None):
        data = self._request("POST", "/refunds", json={
            "reference": provider_reference,
            "amount": amount_minor_units,
            "reason": reason,
        })
        return data.get("id", "")


def get_gateway() -> PaymentGateway:
    """Gateway bound to the current app, created on first use."""
    app = current_app._get_current_object()
    gateway = app.extensions.get(GATEWAY_EXTENSION_KEY)
    if gateway is None:
        provider = app.config.get("PAYMENT_PROVIDER", "sandbox")
        if provider == "sandbox":
            gateway = SandboxGateway(app.config["PAYMENT_PROVIDER_BASE_URL"])
        elif provider == "http":
            gateway = HttpGateway(
                app.config["PAYMENT_PROVIDER_BASE_URL"],
                app.config["PAYMENT_PROVIDER_SECRET_KEY"],
                timeout=app.config.get("PAYMENT_PROVIDER_TIMEOUT_SECONDS", 30.0),
            )
        else:
            raise PaymentGatewayError(f"Unknown PAYMENT_PROVIDER '{provider}'")
        app.extensions[GATEWAY_EXTENSION_KEY] = gateway
    return gateway
