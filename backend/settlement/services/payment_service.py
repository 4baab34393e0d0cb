# Overview: Service-layer operations for payments; encapsulates payment intents and provider event processing.

"""
Payment Intent Manager

STATE MACHINE:
    created -> pending_confirmation -> succeeded | failed
    succeeded -> refunded

- A succeeded/failed event for a 'created' intent (webhook before the buyer
  returned from the redirect) passes through pending_confirmation in the same
  conditional UPDATE.
- Terminal intents never move again, except succeeded -> refunded and a
  provider capture landing on an intent retired by order cancellation
  (failed with failure_reason order_canceled -> succeeded, then refunded).
- A retry after a failed payment is a new intent; a provider-failed intent is
  never revived.

PROVIDER EVENTS:
1. Signature is checked over the raw body before anything else.
2. The event is stored (provider_event_id is unique) and committed before it is applied.
   processed/ignored rows short-circuit redelivery.
3. Intent transition, order hook and event bookkeeping commit together.
4. A processing failure rolls that back, marks the stored event 'failed'
   (kept for replay) and re-raises so the webhook answers non-2xx.

ORPHANED PAYMENTS:
- Canceling a pending order fails its in-flight intent (failure_reason
  order_canceled), so reconciliation stops polling it.
- Success on an order that is already canceled (or whose stock could not be
  re-acquired) is refunded through the gateway after commit.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import (
    NON_TERMINAL_INTENT_STATUSES,
    OrderStatus,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentMethod,
    ProviderEvent,
)
from ..validation import ProviderEventPayload
from settlement.time_utils import utcnow
from . import event_service, order_service
from .concurrency import compare_and_swap, run_with_retry
from .inventory_service import OutOfStock
from .payment_gateway import PaymentGatewayError, get_gateway, verify_signature


logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised for payment workflow errors."""
    pass


class InvalidSignature(PaymentError):
    pass


class PaymentFailed(PaymentError):
    """Expected outcome surfaced to the buyer; re-attempt checkout."""
    pass


class PaymentIntentNotFound(PaymentError):
    pass


class ActiveIntentExists(PaymentError):
    def __init__(self, intent_id: int):
        self.intent_id = intent_id
        super().__init__(f"Payment intent {intent_id} is still in progress for this order")


INTENT_TRANSITIONS = {
    PaymentIntentStatus.CREATED.value: {
        PaymentIntentStatus.PENDING_CONFIRMATION.value,
        # webhook-first: implied pass through pending_confirmation
        PaymentIntentStatus.SUCCEEDED.value,
        PaymentIntentStatus.FAILED.value,
    },
    PaymentIntentStatus.PENDING_CONFIRMATION.value: {
        PaymentIntentStatus.SUCCEEDED.value,
        PaymentIntentStatus.FAILED.value,
    },
    PaymentIntentStatus.SUCCEEDED.value: {PaymentIntentStatus.REFUNDED.value},
    PaymentIntentStatus.FAILED.value: set(),
    PaymentIntentStatus.REFUNDED.value: set(),
}

# provider event type -> intent status
EVENT_TARGETS = {
    "pending": PaymentIntentStatus.PENDING_CONFIRMATION.value,
    "succeeded": PaymentIntentStatus.SUCCEEDED.value,
    "failed": PaymentIntentStatus.FAILED.value,
    "refunded": PaymentIntentStatus.REFUNDED.value,
}

_TIMESTAMP_FIELDS = {
    PaymentIntentStatus.SUCCEEDED.value: "succeeded_at",
    PaymentIntentStatus.FAILED.value: "failed_at",
    PaymentIntentStatus.REFUNDED.value: "refunded_at",
}

# failure_reason of an intent retired because its order was canceled first
ORDER_CANCELED_REASON = "order_canceled"

EVENT_RECEIVED = "received"
EVENT_PROCESSED = "processed"
EVENT_IGNORED = "ignored"
EVENT_FAILED = "failed"


def _load_intent(intent_id: int) -> PaymentIntent | None:
    return db.session.execute(
        select(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _require_intent(intent_id: int) -> PaymentIntent:
    intent = _load_intent(intent_id)
    if intent is None:
        raise PaymentIntentNotFound(f"Payment intent {intent_id} not found")
    return intent


def _intent_by_reference(provider_reference: str) -> PaymentIntent | None:
    return db.session.execute(
        select(PaymentIntent)
        .where(PaymentIntent.provider_reference == provider_reference)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_intent(intent_id: int) -> PaymentIntent:
    return _require_intent(intent_id)


def _allowed_targets(intent: PaymentIntent) -> set[str]:
    allowed = INTENT_TRANSITIONS.get(intent.status, set())
    if intent.status == PaymentIntentStatus.FAILED.value and intent.failure_reason == ORDER_CANCELED_REASON:
        # captured by the provider after the order was canceled; refunded right after
        allowed = allowed | {PaymentIntentStatus.SUCCEEDED.value}
    return allowed


def _transition_intent_locked(
    intent: PaymentIntent,
    to_status: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    **fields,
) -> PaymentIntent:
    """Conditional status write plus outbox event. Does not commit."""
    now = now or utcnow()
    from_status = intent.status
    if to_status not in _allowed_targets(intent):
        raise PaymentError(f"Payment intent {intent.id}: '{from_status}' -> '{to_status}' is not allowed")

    values = {"status": to_status, "updated_at": now, **fields}
    timestamp_field = _TIMESTAMP_FIELDS.get(to_status)
    if timestamp_field:
        values[timestamp_field] = now

    swapped = compare_and_swap(
        PaymentIntent,
        where=[PaymentIntent.id == intent.id, PaymentIntent.status == from_status],
        values=values,
    )
    if not swapped:
        # run_with_retry re-reads on StaleDataError
        raise StaleDataError(f"Payment intent {intent.id} changed during '{from_status}' -> '{to_status}'")

    event_service.append_event(
        event_type="payment.status_changed",
        entity_type="payment_intent",
        entity_id=intent.id,
        payload={
            "order_id": intent.order_id,
            "from": from_status,
            "to": to_status,
            "reason": reason,
            "amount_minor_units": intent.amount_minor_units,
            "currency": intent.currency,
        },
        occurred_at=now,
    )
    return _load_intent(intent.id)


# =============================================================================
# INTENT CREATION
# =============================================================================

def create_intent(
    order_id: int,
    amount_minor_units: int,
    currency: str,
    method: str,
    idempotency_key: str,
) -> PaymentIntent:
    """
    Create (or return) the payment attempt for an order and hand it to the provider.

    The same idempotency key always returns the same intent. A different key
    while another attempt is in flight raises ActiveIntentExists.

    Raises:
        PaymentFailed: provider handoff failed; the intent is failed and the order canceled
    """
    if method not in {m.value for m in PaymentMethod}:
        raise PaymentError(f"Unsupported payment method '{method}'")

    def _op():
        existing = db.session.query(PaymentIntent).filter_by(
            order_id=order_id, idempotency_key=idempotency_key
        ).first()
        if existing is not None:
            return existing

        order = order_service.get_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise PaymentError(f"Order {order_id} is '{order.status}' and cannot take a payment")
        if amount_minor_units != order.total_minor_units or currency != order.currency:
            raise PaymentError(
                f"Payment of {amount_minor_units} {currency} does not match order total "
                f"{order.total_minor_units} {order.currency}"
            )

        active = db.session.query(PaymentIntent).filter(
            PaymentIntent.order_id == order_id,
            PaymentIntent.status.in_(NON_TERMINAL_INTENT_STATUSES),
        ).first()
        if active is not None:
            raise ActiveIntentExists(active.id)

        now = utcnow()
        intent = PaymentIntent(
            order_id=order_id,
            amount_minor_units=amount_minor_units,
            currency=currency,
            method=method,
            status=PaymentIntentStatus.CREATED.value,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        db.session.add(intent)
        db.session.flush()
        order_service._attach_payment_intent_locked(order_id, intent.id)
        event_service.append_event(
            event_type="payment.intent_created",
            entity_type="payment_intent",
            entity_id=intent.id,
            payload={"order_id": order_id, "amount_minor_units": amount_minor_units, "currency": currency, "method": method},
            occurred_at=now,
        )
        db.session.commit()
        return intent

    try:
        intent = run_with_retry(_op)
    except IntegrityError:
        # lost a race on the idempotency key or the one-active-intent index
        intent = run_with_retry(_op)

    if intent.status == PaymentIntentStatus.CREATED.value and intent.provider_reference is None:
        intent = _handoff(intent)
    return intent


def _handoff(intent: PaymentIntent) -> PaymentIntent:
    intent_id = intent.id
    try:
        handoff = get_gateway().create_checkout(intent, return_url=current_app.config["CHECKOUT_RETURN_URL"])
    except PaymentGatewayError as exc:
        logger.info("Provider handoff for payment intent %s failed: %s", intent_id, exc)
        _fail_intent(intent_id, reason=f"provider_unavailable: {exc}")
        raise PaymentFailed("The payment provider is unavailable; please try checking out again") from exc

    def _op():
        compare_and_swap(
            PaymentIntent,
            where=[PaymentIntent.id == intent_id, PaymentIntent.provider_reference.is_(None)],
            values={
                "provider_reference": handoff.provider_reference,
                "redirect_url": handoff.redirect_url,
                "updated_at": utcnow(),
            },
        )
        db.session.commit()
        return _require_intent(intent_id)

    return run_with_retry(_op)


def _fail_intent(intent_id: int, *, reason: str) -> None:
    def _op():
        now = utcnow()
        intent = _require_intent(intent_id)
        if intent.is_terminal:
            return
        _transition_intent_locked(
            intent,
            PaymentIntentStatus.FAILED.value,
            reason=reason,
            now=now,
            failure_reason=reason[:255],
        )
        order_service._on_payment_failed_locked(intent.order_id, now=now)
        db.session.commit()

    run_with_retry(_op)


def _retire_open_intents_locked(order_id: int, *, reason: str, now: datetime | None = None) -> None:
    """
    Fail the in-flight intents of an order that is being canceled. Does not commit.

    A success reported for a retired intent later is still applied, and the
    canceled order then has it refunded.
    """
    now = now or utcnow()
    open_intents = db.session.execute(
        select(PaymentIntent)
        .where(
            PaymentIntent.order_id == order_id,
            PaymentIntent.status.in_(NON_TERMINAL_INTENT_STATUSES),
        )
        .execution_options(populate_existing=True)
    ).scalars().all()
    for intent in open_intents:
        _transition_intent_locked(
            intent,
            PaymentIntentStatus.FAILED.value,
            reason=f"{ORDER_CANCELED_REASON}:{reason}",
            now=now,
            failure_reason=ORDER_CANCELED_REASON,
        )


def touch_intent(intent_id: int, *, now: datetime | None = None) -> None:
    """Stamp an in-flight intent as just checked; its status is left alone."""
    now = now or utcnow()

    def _op():
        compare_and_swap(
            PaymentIntent,
            where=[PaymentIntent.id == intent_id, PaymentIntent.status.in_(NON_TERMINAL_INTENT_STATUSES)],
            values={"updated_at": now},
        )
        db.session.commit()

    run_with_retry(_op)


def mark_returned_from_provider(intent_id: int) -> PaymentIntent:
    """Buyer came back from the redirect: created -> pending_confirmation, otherwise a no-op."""
    def _op():
        intent = _require_intent(intent_id)
        if intent.status == PaymentIntentStatus.CREATED.value:
            intent = _transition_intent_locked(
                intent, PaymentIntentStatus.PENDING_CONFIRMATION.value, reason="buyer_returned"
            )
            db.session.commit()
        return intent

    return run_with_retry(_op)


def get_intent_status(intent_id: int) -> dict:
    intent = _require_intent(intent_id)
    data = intent.to_dict()
    data["order_status"] = intent.order.status if intent.order else None
    return data


# =============================================================================
# PROVIDER EVENTS
# =============================================================================

def apply_provider_event(raw_body: bytes, signature: str | None) -> ProviderEvent:
    """
    Verify, record and apply one inbound provider event.

    Raises:
        InvalidSignature: nothing is recorded or applied
        ValidationError: body is not a provider event
    """
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET", "")
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Rejected provider event with invalid signature (%s bytes)", len(raw_body))
        raise InvalidSignature("Invalid webhook signature")

    payload = ProviderEventPayload.from_body(raw_body)
    return process_event(payload, source="webhook")


def _synthetic_payload(
    *,
    event_id: str,
    event_type: str,
    provider_reference: str,
    transaction_id: str | None = None,
    amount_minor_units: int | None = None,
) -> ProviderEventPayload:
    """Build an event in the provider's wire shape for reconcile/manual paths."""
    body = {
        "id": event_id,
        "event": "payment.updated",
        "data": {
            "reference": provider_reference,
            "status": event_type,
            "transaction_id": transaction_id,
            "amount": amount_minor_units,
        },
    }
    return ProviderEventPayload.from_body(json.dumps(body).encode("utf-8"))


def process_event(payload: ProviderEventPayload, *, source: str = "webhook") -> ProviderEvent:
    """Idempotent apply path shared by webhooks, reconciliation, manual confirmation and replay."""
    record = _record_event(payload, source)
    if record.status in (EVENT_PROCESSED, EVENT_IGNORED):
        logger.info("Provider event %s already %s; skipping", payload.event_id, record.status)
        return record

    record_id = record.id
    try:
        try:
            refund_intent_id = _apply_recorded_event(record_id, payload)
        except OutOfStock as exc:
            logger.info("Payment %s succeeded but stock is gone: %s", payload.provider_reference, exc)
            refund_intent_id = _settle_unfulfillable(record_id, payload)
    except Exception as exc:
        db.session.rollback()
        logger.error(
            "Failed to apply provider event %s (%s, source=%s): %s; payload=%s",
            payload.event_id,
            payload.event_type,
            source,
            exc,
            payload.raw,
        )
        _mark_event_failed(record_id, str(exc))
        raise

    if refund_intent_id is not None:
        _auto_refund(refund_intent_id)
    return db.session.get(ProviderEvent, record_id)


def _record_event(payload: ProviderEventPayload, source: str) -> ProviderEvent:
    def _op():
        record = db.session.execute(
            select(ProviderEvent)
            .where(ProviderEvent.provider_event_id == payload.event_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            record = ProviderEvent(
                provider_event_id=payload.event_id,
                provider_reference=payload.provider_reference,
                event_type=payload.event_type,
                source=source,
                status=EVENT_RECEIVED,
                raw_payload=payload.raw,
                attempts=0,
                received_at=utcnow(),
            )
            db.session.add(record)
        if record.status in (EVENT_RECEIVED, EVENT_FAILED):
            record.attempts = (record.attempts or 0) + 1
        db.session.commit()
        return record

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # concurrent delivery inserted the same provider_event_id first
        return run_with_retry(_op)


def _finish_event_locked(record_id: int, status: str, *, intent_id: int | None, note: str | None = None) -> None:
    compare_and_swap(
        ProviderEvent,
        where=[ProviderEvent.id == record_id, ProviderEvent.status.in_((EVENT_RECEIVED, EVENT_FAILED))],
        values={
            "status": status,
            "payment_intent_id": intent_id,
            "error": note,
            "processed_at": utcnow(),
        },
    )


def _mark_event_failed(record_id: int, error: str) -> None:
    def _op():
        compare_and_swap(
            ProviderEvent,
            where=[ProviderEvent.id == record_id, ProviderEvent.status.in_((EVENT_RECEIVED, EVENT_FAILED))],
            values={"status": EVENT_FAILED, "error": error[:2000]},
        )
        db.session.commit()

    run_with_retry(_op)


def _apply_recorded_event(record_id: int, payload: ProviderEventPayload) -> int | None:
    """Apply inside one transaction. Returns an intent id needing an automatic refund."""
    def _op():
        now = utcnow()
        intent = _intent_by_reference(payload.provider_reference)
        if intent is None:
            raise PaymentIntentNotFound(f"No payment intent for provider reference {payload.provider_reference}")

        target = EVENT_TARGETS.get(payload.event_type)
        if target is None:
            _finish_event_locked(record_id, EVENT_IGNORED, intent_id=intent.id, note=f"unrecognized event {payload.event_type}")
            db.session.commit()
            return None

        if intent.status == target or target not in _allowed_targets(intent):
            _finish_event_locked(
                record_id, EVENT_IGNORED, intent_id=intent.id, note=f"intent already '{intent.status}'"
            )
            db.session.commit()
            return None

        if (
            target == PaymentIntentStatus.SUCCEEDED.value
            and payload.amount_minor_units is not None
            and payload.amount_minor_units != intent.amount_minor_units
        ):
            raise PaymentError(
                f"Provider reported {payload.amount_minor_units} for intent {intent.id} "
                f"expecting {intent.amount_minor_units}"
            )

        fields = {}
        if payload.transaction_id:
            fields["transaction_id"] = payload.transaction_id
        if target == PaymentIntentStatus.FAILED.value:
            fields["failure_reason"] = "provider_reported_failure"
        elif intent.status == PaymentIntentStatus.FAILED.value:
            fields["failure_reason"] = None

        intent = _transition_intent_locked(intent, target, reason=f"provider:{payload.event_type}", now=now, **fields)

        refund_needed = None
        if target == PaymentIntentStatus.SUCCEEDED.value:
            order = order_service._on_payment_succeeded_locked(intent.order_id, now=now)
            if order.status == OrderStatus.CANCELED.value:
                refund_needed = intent.id
        elif target == PaymentIntentStatus.FAILED.value:
            order_service._on_payment_failed_locked(intent.order_id, now=now)

        _finish_event_locked(record_id, EVENT_PROCESSED, intent_id=intent.id)
        db.session.commit()
        return refund_needed

    try:
        return run_with_retry(_op)
    except order_service.StaleStateError:
        return run_with_retry(_op)


def _settle_unfulfillable(record_id: int, payload: ProviderEventPayload) -> int:
    """Payment succeeded but an expired hold could not be re-acquired: cancel and refund."""
    def _op():
        now = utcnow()
        intent = _intent_by_reference(payload.provider_reference)
        if intent.status != PaymentIntentStatus.SUCCEEDED.value:
            intent = _transition_intent_locked(
                intent,
                PaymentIntentStatus.SUCCEEDED.value,
                reason="provider:succeeded",
                now=now,
                transaction_id=payload.transaction_id or intent.transaction_id,
            )
        if order_service.get_order(intent.order_id).status == OrderStatus.PENDING.value:
            order_service._cancel_locked(
                intent.order_id,
                reason="stock_unavailable",
                allowed_from=(OrderStatus.PENDING.value,),
                now=now,
            )
        _finish_event_locked(record_id, EVENT_PROCESSED, intent_id=intent.id, note="stock unavailable; refunding")
        db.session.commit()
        return intent.id

    try:
        return run_with_retry(_op)
    except order_service.StaleStateError:
        return run_with_retry(_op)


def replay_event(provider_event_id: str) -> ProviderEvent:
    """Re-run a stored event that failed (or was never finished)."""
    record = db.session.query(ProviderEvent).filter_by(provider_event_id=provider_event_id).first()
    if record is None:
        raise PaymentError(f"Provider event {provider_event_id} not found")
    if record.status in (EVENT_PROCESSED, EVENT_IGNORED):
        return record
    payload = ProviderEventPayload.from_body((record.raw_payload or "").encode("utf-8"))
    return process_event(payload, source=record.source)


def list_failed_events(*, limit: int = 100) -> list[ProviderEvent]:
    return (
        db.session.query(ProviderEvent)
        .filter(ProviderEvent.status.in_((EVENT_FAILED, EVENT_RECEIVED)))
        .order_by(ProviderEvent.id)
        .limit(limit)
        .all()
    )


def apply_provider_status(
    provider_reference: str,
    provider_status: str,
    *,
    event_id: str,
    source: str,
    transaction_id: str | None = None,
    amount_minor_units: int | None = None,
) -> ProviderEvent:
    """Feed a status pulled from the provider through the idempotent event path."""
    payload = _synthetic_payload(
        event_id=event_id,
        event_type=provider_status,
        provider_reference=provider_reference,
        transaction_id=transaction_id,
        amount_minor_units=amount_minor_units,
    )
    return process_event(payload, source=source)


# =============================================================================
# MANUAL CONFIRMATION
# =============================================================================

def confirm_manually(intent_id: int, transaction_id: str, verification_code: str | None = None) -> PaymentIntent:
    """
    Confirm a payment for providers without a webhook channel.

    The provider is asked out-of-band to verify the transaction before the
    intent is marked succeeded.

    Raises:
        PaymentFailed: the provider did not verify the transaction
    """
    if not transaction_id or not transaction_id.strip():
        raise PaymentError("transaction_id is required")
    transaction_id = transaction_id.strip()

    intent = _require_intent(intent_id)
    if intent.status == PaymentIntentStatus.SUCCEEDED.value:
        return intent
    if intent.is_terminal:
        raise PaymentError(f"Payment intent {intent_id} is '{intent.status}'")
    if not intent.provider_reference:
        raise PaymentError(f"Payment intent {intent_id} was never handed to the provider")

    verified = get_gateway().verify_transaction(
        intent.provider_reference,
        transaction_id,
        intent.amount_minor_units,
        verification_code,
    )
    if not verified:
        logger.info("Manual confirmation for intent %s not verified by provider", intent_id)
        raise PaymentFailed("The provider could not verify this transaction")

    apply_provider_status(
        intent.provider_reference,
        "succeeded",
        event_id=f"manual:{intent.provider_reference}:{transaction_id}",
        source="manual",
        transaction_id=transaction_id,
        amount_minor_units=intent.amount_minor_units,
    )
    return _require_intent(intent_id)


# =============================================================================
# REFUNDS
# =============================================================================

def refund_intent(intent_id: int, *, reason: str, event_type: str = "payment.refunded") -> PaymentIntent:
    """
    Refund a succeeded intent through the provider, then mark it refunded.

    Raises:
        PaymentGatewayError: provider refused or was unreachable; intent stays succeeded
    """
    intent = _require_intent(intent_id)
    if intent.status == PaymentIntentStatus.REFUNDED.value:
        return intent
    if intent.status != PaymentIntentStatus.SUCCEEDED.value:
        raise PaymentError(f"Payment intent {intent_id} is '{intent.status}' and cannot be refunded")
    if not intent.provider_reference:
        raise PaymentError(f"Payment intent {intent_id} has no provider reference")

    get_gateway().refund(intent.provider_reference, intent.amount_minor_units, reason=reason)

    def _op():
        now = utcnow()
        current = _require_intent(intent_id)
        if current.status == PaymentIntentStatus.REFUNDED.value:
            return current
        current = _transition_intent_locked(current, PaymentIntentStatus.REFUNDED.value, reason=reason, now=now)
        event_service.append_event(
            event_type=event_type,
            entity_type="payment_intent",
            entity_id=current.id,
            payload={
                "order_id": current.order_id,
                "amount_minor_units": current.amount_minor_units,
                "currency": current.currency,
                "reason": reason,
            },
            occurred_at=now,
        )
        db.session.commit()
        return current

    return run_with_retry(_op)


def _auto_refund(intent_id: int) -> None:
    try:
        refund_intent(intent_id, reason="order_canceled", event_type="payment.auto_refunded")
    except PaymentGatewayError as exc:
        # left succeeded on a canceled order; reconciliation retries it
        logger.error("Automatic refund for payment intent %s failed: %s", intent_id, exc)


def refund_order_payment(order_id: int, *, reason: str) -> PaymentIntent | None:
    """Refund the order's succeeded payment, if any. Provider failures are left for reconciliation."""
    intent = db.session.query(PaymentIntent).filter_by(
        order_id=order_id, status=PaymentIntentStatus.SUCCEEDED.value
    ).order_by(PaymentIntent.id.desc()).first()
    if intent is None:
        return None
    try:
        return refund_intent(intent.id, reason=reason)
    except PaymentGatewayError as exc:
        logger.error("Refund for order %s (intent %s) failed: %s", order_id, intent.id, exc)
        return None
