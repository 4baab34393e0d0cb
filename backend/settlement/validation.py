"""
Inbound payload validation.

Every JSON body that enters the core is converted here, once, into a frozen
dataclass. Services receive these typed drafts and never re-parse raw dicts.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from .models import PaymentMethod, PayoutMethodType


# Maximum amount: 999,999,999 minor units
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_MINOR_UNITS = 999_999_999
MAX_LINES_PER_ORDER = 100

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationError(ValueError):
    """400-level input problem."""


def require_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def require_text(value: Any, field: str, *, max_length: int = 255) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def optional_text(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return require_text(value, field, max_length=max_length)


def require_currency(value: Any, field: str = "currency") -> str:
    text = require_text(value, field, max_length=3).upper()
    if not _CURRENCY_RE.match(text):
        raise ValidationError(f"{field} must be a 3-letter ISO code")
    return text


def require_choice(value: Any, field: str, enum_cls) -> str:
    allowed = [member.value for member in enum_cls]
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}")
    return value


def require_object(payload: Any, field: str = "body") -> dict:
    if not isinstance(payload, dict):
        raise ValidationError(f"{field} must be a JSON object")
    return payload


# =============================================================================
# CHECKOUT
# =============================================================================

@dataclass(frozen=True)
class OrderDraftLine:
    stock_unit_id: int
    quantity: int
    unit_price_minor_units: int

    @property
    def line_total_minor_units(self) -> int:
        return self.quantity * self.unit_price_minor_units


@dataclass(frozen=True)
class OrderDraft:
    buyer_id: int
    currency: str
    payment_method: str
    idempotency_key: str
    lines: tuple[OrderDraftLine, ...]

    @property
    def total_minor_units(self) -> int:
        return sum(line.line_total_minor_units for line in self.lines)

    @classmethod
    def from_payload(cls, payload: Any) -> "OrderDraft":
        data = require_object(payload)
        raw_lines = data.get("lines")
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError("lines must be a non-empty list")
        if len(raw_lines) > MAX_LINES_PER_ORDER:
            raise ValidationError(f"an order may have at most {MAX_LINES_PER_ORDER} lines")

        lines = []
        seen_units = set()
        for index, raw in enumerate(raw_lines):
            raw = require_object(raw, f"lines[{index}]")
            stock_unit_id = require_int(raw.get("stock_unit_id"), f"lines[{index}].stock_unit_id", minimum=1)
            if stock_unit_id in seen_units:
                raise ValidationError(f"lines[{index}].stock_unit_id is duplicated")
            seen_units.add(stock_unit_id)
            lines.append(OrderDraftLine(
                stock_unit_id=stock_unit_id,
                quantity=require_int(raw.get("quantity"), f"lines[{index}].quantity", minimum=1),
                unit_price_minor_units=require_int(
                    raw.get("unit_price_minor_units"),
                    f"lines[{index}].unit_price_minor_units",
                    minimum=1,
                    maximum=MAX_AMOUNT_MINOR_UNITS,
                ),
            ))

        draft = cls(
            buyer_id=require_int(data.get("buyer_id"), "buyer_id", minimum=1),
            currency=require_currency(data.get("currency")),
            payment_method=require_choice(data.get("payment_method"), "payment_method", PaymentMethod),
            idempotency_key=require_text(data.get("idempotency_key"), "idempotency_key", max_length=128),
            lines=tuple(lines),
        )
        if draft.total_minor_units > MAX_AMOUNT_MINOR_UNITS:
            raise ValidationError("order total is too large")
        return draft


# =============================================================================
# PROVIDER EVENTS
# =============================================================================

# Provider status vocabulary -> intent event types
PROVIDER_STATUS_MAP = {
    "pending": "pending",
    "processing": "pending",
    "success": "succeeded",
    "succeeded": "succeeded",
    "completed": "succeeded",
    "failed": "failed",
    "refunded": "refunded",
}


@dataclass(frozen=True)
class ProviderEventPayload:
    event_id: str
    event_type: str
    provider_reference: str
    transaction_id: str | None
    amount_minor_units: int | None
    raw: str

    @classmethod
    def from_body(cls, raw_body: bytes) -> "ProviderEventPayload":
        try:
            text = raw_body.decode("utf-8")
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("event body must be UTF-8 JSON")
        data = require_object(data)
        body = require_object(data.get("data"), "data")

        event_name = require_text(data.get("event"), "event", max_length=64)
        if event_name in ("payment.updated", "payment_link.updated"):
            provider_status = body.get("status")
        else:
            provider_status = event_name.rsplit(".", 1)[-1]

        amount = body.get("amount")
        return cls(
            event_id=require_text(data.get("id"), "id", max_length=128),
            event_type=PROVIDER_STATUS_MAP.get(provider_status, f"unknown:{provider_status}"),
            provider_reference=require_text(body.get("reference"), "data.reference", max_length=128),
            transaction_id=optional_text(body.get("transaction_id"), "data.transaction_id", max_length=128),
            amount_minor_units=None if amount is None else require_int(amount, "data.amount", minimum=0),
            raw=text,
        )


# =============================================================================
# PAYOUT METHODS
# =============================================================================

# Account fields each payout method type must carry
PAYOUT_REQUIRED_FIELDS = {
    PayoutMethodType.BANK.value: ("bank_name", "account_number", "account_name"),
    PayoutMethodType.PAYPAL.value: ("email",),
    PayoutMethodType.WISE.value: ("email",),
    PayoutMethodType.MOBILE_MONEY.value: ("phone_number", "provider"),
    PayoutMethodType.CRYPTO.value: ("wallet_address", "network"),
}
PAYOUT_OPTIONAL_FIELDS = ("bank_code", "account_type", "currency", "label")


@dataclass(frozen=True)
class PayoutMethodDraft:
    seller_id: int
    method_type: str
    account_details: dict
    contact_email: str

    @classmethod
    def from_payload(cls, payload: Any) -> "PayoutMethodDraft":
        data = require_object(payload)
        method_type = require_choice(data.get("method_type"), "method_type", PayoutMethodType)
        raw_details = require_object(data.get("account_details"), "account_details")

        details = {}
        for key in PAYOUT_REQUIRED_FIELDS[method_type]:
            details[key] = require_text(raw_details.get(key), f"account_details.{key}", max_length=128)
        for key in PAYOUT_OPTIONAL_FIELDS:
            value = optional_text(raw_details.get(key), f"account_details.{key}", max_length=128)
            if value is not None:
                details[key] = value

        if "email" in details and not _EMAIL_RE.match(details["email"]):
            raise ValidationError("account_details.email must be an email address")

        contact_email = require_text(data.get("contact_email") or details.get("email"), "contact_email")
        if not _EMAIL_RE.match(contact_email):
            raise ValidationError("contact_email must be an email address")

        return cls(
            seller_id=require_int(data.get("seller_id"), "seller_id", minimum=1),
            method_type=method_type,
            account_details=details,
            contact_email=contact_email,
        )
