# Overview: Service-layer operations for reconciliation; pulls provider status for stalled payments.

"""
Payment Reconciliation

Webhooks can be late, lost or arrive before the intent knows its provider
reference. Reconciliation pulls the provider's view for intents stuck in
created/pending_confirmation and feeds it through the same idempotent event
path as webhooks (synthetic event id reconcile:<reference>:<status>), so a
webhook and a reconcile pass reporting the same change apply it once.

It also retries refunds that the provider refused earlier (succeeded intents
whose order is canceled or returned) and replays stored events that failed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import NON_TERMINAL_INTENT_STATUSES, Order, OrderStatus, PaymentIntent, PaymentIntentStatus
from ..validation import PROVIDER_STATUS_MAP
from settlement.time_utils import utcnow
from . import order_service, payment_service
from .inventory_service import InventoryError
from .payment_gateway import PaymentGatewayError, get_gateway


logger = logging.getLogger(__name__)


def _sync_intent(intent: PaymentIntent) -> str:
    """Pull one intent's provider status and apply it. Returns the outcome label."""
    payment = get_gateway().fetch_payment_status(intent.provider_reference)
    mapped = PROVIDER_STATUS_MAP.get(payment.status)
    if mapped is None:
        logger.info("Provider status '%s' for intent %s is not recognized", payment.status, intent.id)
        return "unrecognized"
    if mapped == "pending" and intent.status == PaymentIntentStatus.PENDING_CONFIRMATION.value:
        return "unchanged"

    record = payment_service.apply_provider_status(
        intent.provider_reference,
        payment.status,
        event_id=f"reconcile:{intent.provider_reference}:{mapped}",
        source="reconcile",
        transaction_id=payment.transaction_id,
        amount_minor_units=payment.amount_minor_units,
    )
    return record.status


def reconcile_pending_intents(*, now: datetime | None = None, limit: int = 100) -> dict:
    """
    Pull provider status for intents in flight longer than RECONCILE_STALE_AFTER_MINUTES.

    Candidates are taken least recently checked first, and every checked intent
    is stamped, so intents the provider still reports as pending rotate to the
    back instead of filling every batch.
    """
    now = now or utcnow()
    stale_after = timedelta(minutes=current_app.config.get("RECONCILE_STALE_AFTER_MINUTES", 5))
    candidates = [
        intent_id
        for (intent_id,) in db.session.query(PaymentIntent.id)
        .filter(
            PaymentIntent.status.in_(NON_TERMINAL_INTENT_STATUSES),
            PaymentIntent.provider_reference.isnot(None),
            PaymentIntent.updated_at < now - stale_after,
        )
        .order_by(PaymentIntent.updated_at, PaymentIntent.id)
        .limit(limit)
        .all()
    ]

    stats = {"checked": 0, "processed": 0, "ignored": 0, "unchanged": 0, "errors": 0}
    for intent_id in candidates:
        intent = payment_service.get_intent(intent_id)
        stats["checked"] += 1
        try:
            outcome = _sync_intent(intent)
        except PaymentGatewayError as exc:
            logger.warning("Could not reconcile intent %s: %s", intent_id, exc)
            stats["errors"] += 1
        except (payment_service.PaymentError, InventoryError) as exc:
            # recorded as a failed provider event for replay
            logger.warning("Reconciled status for intent %s could not be applied: %s", intent_id, exc)
            stats["errors"] += 1
        else:
            key = outcome if outcome in stats else "unchanged"
            stats[key] += 1
        payment_service.touch_intent(intent_id, now=now)
    return stats


def retry_pending_refunds(*, limit: int = 100) -> dict:
    rows = (
        db.session.query(PaymentIntent.id)
        .join(Order, Order.id == PaymentIntent.order_id)
        .filter(
            PaymentIntent.status == PaymentIntentStatus.SUCCEEDED.value,
            Order.status.in_((OrderStatus.CANCELED.value, OrderStatus.RETURNED.value)),
        )
        .order_by(PaymentIntent.id)
        .limit(limit)
        .all()
    )
    stats = {"refunded": 0, "errors": 0}
    for (intent_id,) in rows:
        try:
            payment_service.refund_intent(intent_id, reason="reconcile_refund")
            stats["refunded"] += 1
        except (PaymentGatewayError, payment_service.PaymentError) as exc:
            logger.warning("Refund retry for intent %s failed: %s", intent_id, exc)
            stats["errors"] += 1
    return stats


def replay_failed_events(*, limit: int = 50) -> dict:
    stats = {"replayed": 0, "errors": 0}
    for record in payment_service.list_failed_events(limit=limit):
        provider_event_id = record.provider_event_id
        try:
            payment_service.replay_event(provider_event_id)
            stats["replayed"] += 1
        except (payment_service.PaymentError, InventoryError) as exc:
            logger.info("Replay of provider event %s still failing: %s", provider_event_id, exc)
            stats["errors"] += 1
    return stats


def run_reconciliation(*, now: datetime | None = None) -> dict:
    return {
        "intents": reconcile_pending_intents(now=now),
        "refunds": retry_pending_refunds(),
        "replays": replay_failed_events(),
    }


def reconcile_order(order_id: int) -> dict:
    """
    Re-derive one order's view, pulling the provider first when its payment
    is still in flight. Safe to call from polling; changes apply once.
    """
    order = order_service.get_order(order_id)
    if order.payment_intent_id:
        intent = payment_service.get_intent(order.payment_intent_id)
        if not intent.is_terminal and intent.provider_reference:
            try:
                _sync_intent(intent)
            except (PaymentGatewayError, payment_service.PaymentError, InventoryError) as exc:
                logger.warning("Could not reconcile order %s: %s", order_id, exc)
    return order_service.get_order_status(order_id)
