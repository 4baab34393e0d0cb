# Overview: Service-layer operations for payouts; payout methods, code verification and the seller balance ledger.

"""
Payout Methods & Seller Balance

VERIFICATION STATE MACHINE:
    unverified -> code_sent -> verified

- send_verification_code: random 6-digit code, only its bcrypt hash is stored,
  expiry VERIFICATION_CODE_TTL_MINUTES. A resend overwrites the hash, so only
  the latest code matches. Resends inside VERIFICATION_RESEND_COOLDOWN_SECONDS
  are refused server-side (CooldownActive).
- verify_code: Expired / Mismatch / TooManyAttempts / NoCodeIssued, or
  AlreadyVerified once the method is verified. Success is a CAS on the hash
  that was checked, so a code can be redeemed once.

DEFAULTS:
- At most one default method per seller (partial unique index).
- The first method a seller adds becomes the default.
- Deleting the default promotes another method (verified first, then oldest).

BALANCE LEDGER:
- delivered order -> credit of the order total
- returned order  -> debit of the order total
- One entry per (order, entry_type); balance is the sum of entries.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

import bcrypt
from flask import current_app
from sqlalchemy import select, update

from ..extensions import db
from ..models import Order, PayoutEntry, PayoutMethod, PayoutMethodType, VerificationState
from ..validation import PayoutMethodDraft
from settlement.time_utils import to_utc_z, utcnow
from . import event_service, notification_service
from .concurrency import compare_and_swap, run_with_retry


logger = logging.getLogger(__name__)


class PayoutError(Exception):
    """Raised for payout method and ledger errors."""
    pass


class PayoutMethodNotFound(PayoutError):
    pass


class Expired(PayoutError):
    pass


class Mismatch(PayoutError):
    def __init__(self, attempts_remaining: int):
        self.attempts_remaining = attempts_remaining
        super().__init__(f"Verification code does not match ({attempts_remaining} attempts remaining)")


class AlreadyVerified(PayoutError):
    pass


class CooldownActive(PayoutError):
    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"A code was sent recently; retry in {retry_after_seconds} seconds")


class TooManyAttempts(PayoutError):
    pass


class NoCodeIssued(PayoutError):
    pass


def _load_method(method_id: int) -> PayoutMethod | None:
    return db.session.execute(
        select(PayoutMethod)
        .where(PayoutMethod.id == method_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _require_method(method_id: int) -> PayoutMethod:
    method = _load_method(method_id)
    if method is None:
        raise PayoutMethodNotFound(f"Payout method {method_id} not found")
    return method


def _code_destination(method: PayoutMethod) -> tuple[str, str]:
    """(channel, destination) implied by the method type."""
    if method.method_type == PayoutMethodType.MOBILE_MONEY.value:
        return "sms", method.account_details["phone_number"]
    return "email", method.contact_email or method.account_details.get("email")


# =============================================================================
# METHODS
# =============================================================================

def create_payout_method(draft: PayoutMethodDraft) -> PayoutMethod:
    def _op():
        now = utcnow()
        has_default = db.session.query(PayoutMethod.id).filter_by(
            seller_id=draft.seller_id, is_default=True
        ).first() is not None

        method = PayoutMethod(
            seller_id=draft.seller_id,
            method_type=draft.method_type,
            account_details=dict(draft.account_details),
            contact_email=draft.contact_email,
            is_default=not has_default,
            is_verified=False,
            verification_state=VerificationState.UNVERIFIED.value,
            verification_attempts=0,
            created_at=now,
            updated_at=now,
        )
        db.session.add(method)
        db.session.flush()
        event_service.append_event(
            event_type="payout_method.created",
            entity_type="payout_method",
            entity_id=method.id,
            payload={"seller_id": method.seller_id, "method_type": method.method_type, "is_default": method.is_default},
            occurred_at=now,
        )
        db.session.commit()
        return method

    return run_with_retry(_op)


def get_payout_method(method_id: int) -> PayoutMethod:
    return _require_method(method_id)


def list_payout_methods(seller_id: int) -> list[PayoutMethod]:
    return (
        db.session.query(PayoutMethod)
        .filter_by(seller_id=seller_id)
        .order_by(PayoutMethod.is_default.desc(), PayoutMethod.created_at, PayoutMethod.id)
        .all()
    )


def set_default_payout_method(method_id: int) -> PayoutMethod:
    def _op():
        now = utcnow()
        method = _require_method(method_id)
        if method.is_default:
            return method
        # clear first: the partial unique index allows one default per seller
        cleared = db.session.execute(
            update(PayoutMethod)
            .where(
                PayoutMethod.seller_id == method.seller_id,
                PayoutMethod.id != method.id,
                PayoutMethod.is_default.is_(True),
            )
            .values(is_default=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.debug("Cleared %s previous default(s) for seller %s", cleared.rowcount, method.seller_id)
        swapped = compare_and_swap(
            PayoutMethod,
            where=[PayoutMethod.id == method.id],
            values={"is_default": True, "updated_at": now},
        )
        if not swapped:
            raise PayoutMethodNotFound(f"Payout method {method_id} not found")
        event_service.append_event(
            event_type="payout_method.default_changed",
            entity_type="payout_method",
            entity_id=method.id,
            payload={"seller_id": method.seller_id},
            occurred_at=now,
        )
        db.session.commit()
        return _load_method(method_id)

    return run_with_retry(_op)


def delete_payout_method(method_id: int) -> dict:
    """Delete a method; promotes a replacement if it was the default."""
    def _op():
        now = utcnow()
        method = _require_method(method_id)
        seller_id = method.seller_id
        was_default = method.is_default
        db.session.delete(method)
        db.session.flush()

        new_default_id = None
        if was_default:
            replacement = (
                db.session.query(PayoutMethod)
                .filter(PayoutMethod.seller_id == seller_id)
                .order_by(PayoutMethod.is_verified.desc(), PayoutMethod.created_at, PayoutMethod.id)
                .first()
            )
            if replacement is not None:
                compare_and_swap(
                    PayoutMethod,
                    where=[PayoutMethod.id == replacement.id],
                    values={"is_default": True, "updated_at": now},
                )
                new_default_id = replacement.id

        event_service.append_event(
            event_type="payout_method.deleted",
            entity_type="payout_method",
            entity_id=method_id,
            payload={"seller_id": seller_id, "was_default": was_default, "new_default_id": new_default_id},
            occurred_at=now,
        )
        db.session.commit()
        return {"deleted_id": method_id, "new_default_id": new_default_id}

    return run_with_retry(_op)


# =============================================================================
# VERIFICATION
# =============================================================================

def _generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _hash_code(code: str) -> str:
    rounds = current_app.config.get("VERIFICATION_BCRYPT_ROUNDS", 10)
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def _code_matches(code: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        return False


def send_verification_code(method_id: int, *, now: datetime | None = None) -> dict:
    """
    Issue a fresh code and dispatch it over the method's contact channel.

    Raises:
        AlreadyVerified: method is already verified
        CooldownActive: last code was sent inside the resend cooldown
    """
    now = now or utcnow()
    ttl = timedelta(minutes=current_app.config.get("VERIFICATION_CODE_TTL_MINUTES", 10))
    cooldown = timedelta(seconds=current_app.config.get("VERIFICATION_RESEND_COOLDOWN_SECONDS", 120))
    code = _generate_code()
    code_hash = _hash_code(code)

    def _op():
        method = _require_method(method_id)
        if method.is_verified:
            raise AlreadyVerified(f"Payout method {method_id} is already verified")

        last_sent = method.verification_sent_at
        if last_sent is not None and now - last_sent < cooldown:
            remaining = int((cooldown - (now - last_sent)).total_seconds()) + 1
            raise CooldownActive(remaining)

        # conditioned on the send timestamp read above: two concurrent sends cannot both pass the cooldown
        guard = (
            PayoutMethod.verification_sent_at.is_(None)
            if last_sent is None
            else PayoutMethod.verification_sent_at == last_sent
        )
        swapped = compare_and_swap(
            PayoutMethod,
            where=[PayoutMethod.id == method_id, PayoutMethod.is_verified.is_(False), guard],
            values={
                "verification_code_hash": code_hash,
                "verification_expires_at": now + ttl,
                "verification_sent_at": now,
                "verification_attempts": 0,
                "verification_state": VerificationState.CODE_SENT.value,
                "updated_at": now,
            },
        )
        if not swapped:
            raise CooldownActive(int(cooldown.total_seconds()))
        db.session.commit()
        return _load_method(method_id)

    method = run_with_retry(_op)
    channel, destination = _code_destination(method)

    try:
        notification_service.deliver_verification_code(notification_service.CodeMessage(
            channel=channel,
            destination=destination,
            code=code,
            payout_method_id=method.id,
            expires_in_minutes=int(ttl.total_seconds() // 60),
        ))
    except notification_service.NotificationError:
        # undelivered code must not hold the cooldown
        compare_and_swap(
            PayoutMethod,
            where=[PayoutMethod.id == method_id, PayoutMethod.verification_sent_at == now],
            values={"verification_sent_at": None, "verification_code_hash": None, "updated_at": utcnow()},
        )
        db.session.commit()
        raise

    return {
        "payout_method_id": method.id,
        "channel": channel,
        "sent_to": notification_service.mask_destination(destination),
        "expires_at": to_utc_z(method.verification_expires_at),
        "resend_available_at": to_utc_z(now + cooldown),
    }


def verify_code(method_id: int, code: str, *, now: datetime | None = None) -> PayoutMethod:
    """
    Redeem a verification code.

    Raises:
        AlreadyVerified: method already verified (treat as success)
        NoCodeIssued: no live code (never sent, or invalidated)
        Expired: code past its expiry
        TooManyAttempts: attempt limit reached; a new code is required
        Mismatch: wrong code
    """
    now = now or utcnow()
    max_attempts = current_app.config.get("VERIFICATION_MAX_ATTEMPTS", 3)
    code = (code or "").strip()

    method = _require_method(method_id)
    if method.is_verified:
        raise AlreadyVerified(f"Payout method {method_id} is already verified")
    if method.verification_attempts >= max_attempts:
        raise TooManyAttempts("Too many incorrect attempts; request a new code")
    code_hash = method.verification_code_hash
    if not code_hash:
        raise NoCodeIssued(f"No verification code is pending for payout method {method_id}")
    if method.verification_expires_at is not None and now > method.verification_expires_at:
        raise Expired("Verification code has expired; request a new one")

    if not _code_matches(code, code_hash):
        attempts = method.verification_attempts + 1

        def _count_miss():
            values = {"verification_attempts": attempts, "updated_at": now}
            if attempts >= max_attempts:
                values["verification_code_hash"] = None
            counted = compare_and_swap(
                PayoutMethod,
                where=[
                    PayoutMethod.id == method_id,
                    PayoutMethod.verification_code_hash == code_hash,
                    PayoutMethod.verification_attempts == attempts - 1,
                ],
                values=values,
            )
            db.session.commit()
            return counted

        counted = run_with_retry(_count_miss)
        if counted and attempts >= max_attempts:
            logger.info("Payout method %s verification code invalidated after %s attempts", method_id, attempts)
            raise TooManyAttempts("Too many incorrect attempts; request a new code")
        raise Mismatch(max(max_attempts - attempts, 0))

    def _op():
        swapped = compare_and_swap(
            PayoutMethod,
            where=[
                PayoutMethod.id == method_id,
                PayoutMethod.is_verified.is_(False),
                PayoutMethod.verification_code_hash == code_hash,
            ],
            values={
                "is_verified": True,
                "verification_state": VerificationState.VERIFIED.value,
                "verification_code_hash": None,
                "verification_expires_at": None,
                "verification_attempts": 0,
                "verified_at": now,
                "updated_at": now,
            },
        )
        if not swapped:
            raise AlreadyVerified(f"Payout method {method_id} is already verified")
        event_service.append_event(
            event_type="payout_method.verified",
            entity_type="payout_method",
            entity_id=method_id,
            payload={"seller_id": method.seller_id},
            occurred_at=now,
        )
        db.session.commit()
        return _load_method(method_id)

    return run_with_retry(_op)


def get_verification_status(method_id: int, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    method = _require_method(method_id)
    cooldown = timedelta(seconds=current_app.config.get("VERIFICATION_RESEND_COOLDOWN_SECONDS", 120))
    code_live = bool(method.verification_code_hash) and (
        method.verification_expires_at is None or now <= method.verification_expires_at
    )
    resend_at = method.verification_sent_at + cooldown if method.verification_sent_at else None
    return {
        "payout_method_id": method.id,
        "state": method.verification_state,
        "is_verified": method.is_verified,
        "code_pending": code_live and not method.is_verified,
        "expires_at": to_utc_z(method.verification_expires_at),
        "attempts_used": method.verification_attempts,
        "can_resend": not method.is_verified and (resend_at is None or now >= resend_at),
        "resend_available_at": to_utc_z(resend_at),
    }


# =============================================================================
# BALANCE LEDGER
# =============================================================================

def _record_entry_locked(order: Order, entry_type: str, *, now: datetime | None = None) -> PayoutEntry:
    """Credit or debit the seller for an order. Does not commit. Idempotent per (order, type)."""
    now = now or utcnow()
    if entry_type not in ("credit", "debit"):
        raise PayoutError(f"Unknown payout entry type '{entry_type}'")

    existing = db.session.query(PayoutEntry).filter_by(order_id=order.id, entry_type=entry_type).first()
    if existing is not None:
        return existing

    amount = order.total_minor_units if entry_type == "credit" else -order.total_minor_units
    entry = PayoutEntry(
        seller_id=order.seller_id,
        order_id=order.id,
        entry_type=entry_type,
        amount_minor_units=amount,
        currency=order.currency,
        created_at=now,
    )
    db.session.add(entry)
    db.session.flush()

    event_service.append_event(
        event_type="payout.balance_changed",
        entity_type="seller",
        entity_id=order.seller_id,
        payload={
            "order_id": order.id,
            "entry_type": entry_type,
            "amount_minor_units": amount,
            "currency": order.currency,
            "balance_minor_units": _balance_for(order.seller_id, order.currency),
        },
        occurred_at=now,
    )
    return entry


def _balance_for(seller_id: int, currency: str) -> int:
    total = db.session.query(db.func.coalesce(db.func.sum(PayoutEntry.amount_minor_units), 0)).filter(
        PayoutEntry.seller_id == seller_id,
        PayoutEntry.currency == currency,
    ).scalar()
    return int(total or 0)


def get_payout_balance(seller_id: int) -> dict:
    """Balance per currency, recomputed from entries."""
    rows = (
        db.session.query(
            PayoutEntry.currency,
            db.func.sum(PayoutEntry.amount_minor_units),
            db.func.count(PayoutEntry.id),
        )
        .filter(PayoutEntry.seller_id == seller_id)
        .group_by(PayoutEntry.currency)
        .all()
    )
    return {
        "seller_id": seller_id,
        "balances": {currency: int(total or 0) for currency, total, _ in rows},
        "entry_count": sum(int(count) for _, _, count in rows),
    }


def list_payout_entries(seller_id: int, *, limit: int = 100) -> list[PayoutEntry]:
    return (
        db.session.query(PayoutEntry)
        .filter_by(seller_id=seller_id)
        .order_by(PayoutEntry.id.desc())
        .limit(min(max(limit, 1), 500))
        .all()
    )
