# Overview: Service-layer operations for orders; encapsulates the order state machine and its side effects.

"""
Order State Machine

================================================================================
STATES
================================================================================

    pending -> confirmed -> processing -> shipped -> delivered
    pending | confirmed -> canceled
    delivered -> returned

    pending:    reservations held, waiting for payment
    confirmed:  payment succeeded, reservations converted to permanent decrements
    processing: seller is preparing the shipment
    shipped:    tracking number recorded
    delivered:  buyer or carrier confirmed receipt; seller balance credited
    canceled:   terminal; held stock released (confirmed stock restocked and refunded)
    returned:   terminal; payment refunded, seller balance debited

RULES (NON-NEGOTIABLE):
1. No skipped states except the cancel and return edges.
2. Every write is a compare-and-swap on (status, version) read in the same transaction.
   A lost race raises StaleStateError; public operations retry it exactly once.
3. Illegal pairs raise IllegalTransition and leave the order untouched.
4. Buyer cancel is only valid in pending/confirmed. After processing starts the
   return flow applies instead.
5. Side effects (inventory, payout ledger, outbox event) run in the same transaction
   as the status write. Provider refunds run after commit.

================================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import exists, select

from ..extensions import db
from ..models import Order, OrderStatus, PaymentIntent, Reservation, ReservationStatus
from settlement.time_utils import to_utc_z, utcnow
from . import event_service, inventory_service, payout_service
from .concurrency import compare_and_swap, run_with_retry


logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Raised for order workflow errors."""
    pass


class OrderNotFound(OrderError):
    pass


class IllegalTransition(OrderError):
    def __init__(self, order_id: int, from_status: str, to_status: str, message: str | None = None):
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Order {order_id}: transition '{from_status}' -> '{to_status}' is not allowed"
        )


class StaleStateError(OrderError):
    """Another transition changed the order between our read and our write."""
    pass


class CheckoutError(OrderError):
    pass


ORDER_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.RETURNED.value},
    OrderStatus.CANCELED.value: set(),
    OrderStatus.RETURNED.value: set(),
}

BUYER_CANCELABLE = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)

_TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED.value: "confirmed_at",
    OrderStatus.SHIPPED.value: "shipped_at",
    OrderStatus.DELIVERED.value: "delivered_at",
    OrderStatus.CANCELED.value: "canceled_at",
    OrderStatus.RETURNED.value: "returned_at",
}


def _load_order(order_id: int) -> Order | None:
    return db.session.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _require_order(order_id: int) -> Order:
    order = _load_order(order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def get_order(order_id: int) -> Order:
    return _require_order(order_id)


def _run_transition(op):
    try:
        return run_with_retry(op)
    except StaleStateError:
        logger.info("Order changed concurrently; re-reading and retrying once")
        return run_with_retry(op)


def _transition_locked(
    order: Order,
    to_status: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    **fields,
) -> Order:
    """
    Apply one legal transition to an order read in this transaction. Does not commit.

    Raises:
        IllegalTransition: (order.status, to_status) is not in ORDER_TRANSITIONS
        StaleStateError: the stored (status, version) no longer matches what was read
    """
    now = now or utcnow()
    from_status = order.status
    if to_status not in ORDER_TRANSITIONS.get(from_status, set()):
        raise IllegalTransition(order.id, from_status, to_status)

    values = {
        "status": to_status,
        "version": Order.version + 1,
        "updated_at": now,
        **fields,
    }
    timestamp_field = _TIMESTAMP_FIELDS.get(to_status)
    if timestamp_field:
        values[timestamp_field] = now

    swapped = compare_and_swap(
        Order,
        where=[Order.id == order.id, Order.status == from_status, Order.version == order.version],
        values=values,
    )
    if not swapped:
        raise StaleStateError(f"Order {order.id} changed while moving '{from_status}' -> '{to_status}'")

    event_service.append_event(
        event_type="order.status_changed",
        entity_type="order",
        entity_id=order.id,
        payload={
            "from": from_status,
            "to": to_status,
            "reason": reason,
            "version": order.version + 1,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
        },
        occurred_at=now,
    )
    return _load_order(order.id)


def _reservations_for(order_id: int) -> list[Reservation]:
    return inventory_service.get_reservations_for_owner(order_id, owner_type="order")


def _cancel_locked(
    order_id: int,
    *,
    reason: str,
    allowed_from: tuple[str, ...] = BUYER_CANCELABLE,
    now: datetime | None = None,
) -> tuple[Order, str]:
    """Cancel inside the caller's transaction. Returns (order, status before cancel)."""
    now = now or utcnow()
    order = _require_order(order_id)
    prior = order.status
    if prior not in allowed_from:
        message = None
        if prior in (OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value):
            message = f"Order {order_id} is '{prior}'; cancellation now requires the return flow"
        raise IllegalTransition(order_id, prior, OrderStatus.CANCELED.value, message)

    for reservation in _reservations_for(order_id):
        if reservation.status == ReservationStatus.HELD.value:
            inventory_service._release_locked(reservation.id, reason=reason, now=now)
        elif reservation.status == ReservationStatus.CONFIRMED.value and prior == OrderStatus.CONFIRMED.value:
            inventory_service._restock_locked(reservation.stock_unit_id, reservation.quantity, now)

    order = _transition_locked(
        order,
        OrderStatus.CANCELED.value,
        reason=reason,
        now=now,
        cancel_reason=reason,
    )

    from . import payment_service
    payment_service._retire_open_intents_locked(order_id, reason=reason, now=now)
    return order, prior


# =============================================================================
# PAYMENT HOOKS (called by payment_service inside its transaction)
# =============================================================================

def _on_payment_succeeded_locked(order_id: int, *, now: datetime | None = None) -> Order:
    """
    pending -> confirmed, confirming every reservation. Does not commit.

    Orders already past pending are returned untouched; the caller inspects
    the status (a canceled order means the payment is orphaned).

    Raises:
        OutOfStock: an expired reservation could not be re-acquired
    """
    now = now or utcnow()
    order = _require_order(order_id)
    if order.status != OrderStatus.PENDING.value:
        logger.info("Payment succeeded for order %s already in '%s'; no transition", order_id, order.status)
        return order

    for reservation in _reservations_for(order_id):
        inventory_service._confirm_locked(reservation.id, now=now)

    return _transition_locked(order, OrderStatus.CONFIRMED.value, reason="payment_succeeded", now=now)


def _on_payment_failed_locked(order_id: int, *, now: datetime | None = None) -> Order:
    """pending -> canceled, releasing every held reservation. Does not commit."""
    order = _require_order(order_id)
    if order.status != OrderStatus.PENDING.value:
        logger.info("Payment failed for order %s already in '%s'; no transition", order_id, order.status)
        return order
    order, _ = _cancel_locked(
        order_id,
        reason="payment_failed",
        allowed_from=(OrderStatus.PENDING.value,),
        now=now,
    )
    return order


def on_payment_succeeded(order_id: int) -> Order:
    def _op():
        order = _on_payment_succeeded_locked(order_id)
        db.session.commit()
        return order

    return _run_transition(_op)


def on_payment_failed(order_id: int) -> Order:
    def _op():
        order = _on_payment_failed_locked(order_id)
        db.session.commit()
        return order

    return _run_transition(_op)


def _attach_payment_intent_locked(order_id: int, intent_id: int) -> None:
    """Point a pending order at its current payment attempt. Does not commit."""
    attached = compare_and_swap(
        Order,
        where=[Order.id == order_id, Order.status == OrderStatus.PENDING.value],
        values={"payment_intent_id": intent_id, "updated_at": utcnow()},
    )
    if not attached:
        order = _require_order(order_id)
        raise IllegalTransition(
            order_id, order.status, order.status, f"Order {order_id} is '{order.status}' and cannot take a payment"
        )


# =============================================================================
# BUYER / SELLER ACTIONS
# =============================================================================

def cancel_order(order_id: int, *, reason: str = "buyer_canceled") -> Order:
    """
    Buyer-initiated cancel. Valid in pending (holds released) and confirmed
    (stock restocked, payment refunded after commit).
    """
    def _op():
        result = _cancel_locked(order_id, reason=reason)
        db.session.commit()
        return result

    order, prior = _run_transition(_op)
    if prior == OrderStatus.CONFIRMED.value:
        from . import payment_service
        payment_service.refund_order_payment(order_id, reason=reason)
    return _require_order(order_id)


def start_processing(order_id: int) -> Order:
    def _op():
        order = _transition_locked(_require_order(order_id), OrderStatus.PROCESSING.value, reason="seller_processing")
        db.session.commit()
        return order

    return _run_transition(_op)


def ship_order(order_id: int, *, tracking_number: str, carrier: str | None = None) -> Order:
    if not tracking_number or not tracking_number.strip():
        raise OrderError("tracking_number is required to ship")

    def _op():
        order = _transition_locked(
            _require_order(order_id),
            OrderStatus.SHIPPED.value,
            reason="seller_shipped",
            tracking_number=tracking_number.strip(),
            carrier=carrier,
        )
        db.session.commit()
        return order

    return _run_transition(_op)


def mark_delivered(order_id: int, *, source: str = "buyer") -> Order:
    """shipped -> delivered; credits the seller's payout balance."""
    def _op():
        now = utcnow()
        order = _transition_locked(
            _require_order(order_id),
            OrderStatus.DELIVERED.value,
            reason=f"{source}_confirmed_delivery",
            now=now,
        )
        payout_service._record_entry_locked(order, "credit", now=now)
        db.session.commit()
        return order

    return _run_transition(_op)


def _return_deadline(order: Order) -> datetime | None:
    if order.delivered_at is None:
        return None
    days = current_app.config.get("RETURN_WINDOW_DAYS", 30)
    return order.delivered_at + timedelta(days=days)


def approve_return(order_id: int, *, reason: str) -> Order:
    """
    delivered -> returned inside the return window. Debits the seller and
    refunds the buyer's payment after commit.
    """
    if not reason or not reason.strip():
        raise OrderError("A return reason is required")

    def _op():
        now = utcnow()
        order = _require_order(order_id)
        deadline = _return_deadline(order)
        if order.status == OrderStatus.DELIVERED.value and deadline is not None and now > deadline:
            raise OrderError(f"Return window for order {order_id} closed at {deadline.isoformat()}")
        order = _transition_locked(
            order,
            OrderStatus.RETURNED.value,
            reason="return_approved",
            now=now,
            return_reason=reason.strip(),
        )
        payout_service._record_entry_locked(order, "debit", now=now)
        db.session.commit()
        return order

    order = _run_transition(_op)

    from . import payment_service
    payment_service.refund_order_payment(order_id, reason="order_returned")
    return _require_order(order.id)


# =============================================================================
# SWEEPER
# =============================================================================

def cancel_abandoned_orders(*, now: datetime | None = None, batch_size: int = 200) -> dict:
    """
    Cancel pending orders whose holds have all lapsed.

    An order qualifies once none of its reservations is still held and the
    latest expiry is older than ORDER_ABANDON_GRACE_MINUTES. A payment that
    succeeds afterwards is refunded automatically.
    """
    now = now or utcnow()
    grace = timedelta(minutes=current_app.config.get("ORDER_ABANDON_GRACE_MINUTES", 15))
    cutoff = now - grace

    held = exists().where(
        Reservation.owner_type == "order",
        Reservation.owner_id == Order.id,
        Reservation.status == ReservationStatus.HELD.value,
    )
    last_expiry = (
        select(db.func.max(Reservation.expires_at))
        .where(Reservation.owner_type == "order", Reservation.owner_id == Order.id)
        .scalar_subquery()
    )
    candidates = [
        row.id
        for row in db.session.query(Order.id)
        .filter(Order.status == OrderStatus.PENDING.value, ~held, last_expiry < cutoff)
        .order_by(Order.id)
        .limit(batch_size)
        .all()
    ]

    stats = {"orders_canceled": 0, "skipped": 0}
    for order_id in candidates:
        def _op(order_id=order_id):
            order, _ = _cancel_locked(
                order_id,
                reason="reservation_expired",
                allowed_from=(OrderStatus.PENDING.value,),
                now=now,
            )
            db.session.commit()
            return order

        try:
            _run_transition(_op)
            stats["orders_canceled"] += 1
        except (IllegalTransition, StaleStateError) as exc:
            # paid or canceled in the meantime
            logger.info("Skipped abandoned order %s: %s", order_id, exc)
            stats["skipped"] += 1

    if stats["orders_canceled"]:
        logger.info("Canceled %s abandoned orders", stats["orders_canceled"])
    return stats


# =============================================================================
# READ VIEWS
# =============================================================================

def allowed_actions(order: Order, *, now: datetime | None = None) -> list[str]:
    now = now or utcnow()
    status = order.status
    actions = []
    if status in BUYER_CANCELABLE:
        actions.append("cancel")
    if status == OrderStatus.CONFIRMED.value:
        actions.append("start_processing")
    if status == OrderStatus.PROCESSING.value:
        actions.append("ship")
    if status == OrderStatus.SHIPPED.value:
        actions.append("confirm_delivery")
    if status == OrderStatus.DELIVERED.value:
        deadline = _return_deadline(order)
        if deadline is None or now <= deadline:
            actions.append("request_return")
    return actions


def get_order_status(order_id: int) -> dict:
    """Polling view: status, payment status, tracking, timestamps and allowed actions."""
    order = _require_order(order_id)
    intent = db.session.get(PaymentIntent, order.payment_intent_id) if order.payment_intent_id else None
    data = order.to_dict()
    return {
        "order_id": order.id,
        "status": order.status,
        "version": order.version,
        "payment_intent_id": order.payment_intent_id,
        "payment_status": intent.status if intent else None,
        "redirect_url": intent.redirect_url if intent and not intent.is_terminal else None,
        "tracking_number": order.tracking_number,
        "carrier": order.carrier,
        "cancel_reason": order.cancel_reason,
        "total_minor_units": order.total_minor_units,
        "currency": order.currency,
        "reservations": [
            {"id": r.id, "stock_unit_id": r.stock_unit_id, "status": r.status, "expires_at": to_utc_z(r.expires_at)}
            for r in _reservations_for(order.id)
        ],
        "timestamps": {
            key: data[key]
            for key in ("created_at", "updated_at", "confirmed_at", "shipped_at", "delivered_at", "canceled_at", "returned_at")
        },
        "allowed_actions": allowed_actions(order),
    }


def list_orders(
    *,
    buyer_id: int | None = None,
    seller_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    q = db.session.query(Order)
    if buyer_id is not None:
        q = q.filter(Order.buyer_id == buyer_id)
    if seller_id is not None:
        q = q.filter(Order.seller_id == seller_id)
    if status is not None:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(min(max(limit, 1), 200)).all()


def order_stats(*, buyer_id: int | None = None, seller_id: int | None = None) -> dict:
    q = db.session.query(Order.status, db.func.count(Order.id), db.func.sum(Order.total_minor_units))
    if buyer_id is not None:
        q = q.filter(Order.buyer_id == buyer_id)
    if seller_id is not None:
        q = q.filter(Order.seller_id == seller_id)
    rows = q.group_by(Order.status).all()

    counts = {status: int(count) for status, count, _ in rows}
    totals = {status: int(total or 0) for status, _, total in rows}
    paid_statuses = (
        OrderStatus.CONFIRMED.value,
        OrderStatus.PROCESSING.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.DELIVERED.value,
    )
    return {
        "total": sum(counts.values()),
        "pending": counts.get(OrderStatus.PENDING.value, 0),
        "in_progress": counts.get(OrderStatus.CONFIRMED.value, 0) + counts.get(OrderStatus.PROCESSING.value, 0),
        "shipped": counts.get(OrderStatus.SHIPPED.value, 0),
        "delivered": counts.get(OrderStatus.DELIVERED.value, 0),
        "canceled": counts.get(OrderStatus.CANCELED.value, 0),
        "returned": counts.get(OrderStatus.RETURNED.value, 0),
        "total_spent_minor_units": sum(totals.get(s, 0) for s in paid_statuses),
    }
