# Overview: Service-layer operations for checkout; combines order creation, stock holds and payment handoff.

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderLine, OrderStatus, StockUnit
from ..validation import OrderDraft
from settlement.time_utils import to_utc_z, utcnow
from . import event_service, inventory_service, order_service, payment_service
from .concurrency import run_with_retry
from .inventory_service import OutOfStock, StockUnitNotFound
from .order_service import CheckoutError


logger = logging.getLogger(__name__)


def _existing_order(buyer_id: int, idempotency_key: str) -> Order | None:
    return db.session.query(Order).filter_by(buyer_id=buyer_id, idempotency_key=idempotency_key).first()


def _create_order_with_holds(draft: OrderDraft) -> Order:
    """
    Order, lines and every reservation in ONE transaction.

    Any OutOfStock rolls the whole thing back, so a failed checkout leaves no hold.
    """
    def _op():
        now = utcnow()
        unit_ids = [line.stock_unit_id for line in draft.lines]
        units = {
            unit.id: unit
            for unit in db.session.query(StockUnit).filter(StockUnit.id.in_(unit_ids)).all()
        }
        missing = [uid for uid in unit_ids if uid not in units]
        if missing:
            raise StockUnitNotFound(f"Stock unit {missing[0]} not found")
        sellers = {unit.seller_id for unit in units.values()}
        if len(sellers) != 1:
            raise CheckoutError("An order may only contain items from one seller")

        order = Order(
            buyer_id=draft.buyer_id,
            seller_id=sellers.pop(),
            status=OrderStatus.PENDING.value,
            version=1,
            idempotency_key=draft.idempotency_key,
            total_minor_units=draft.total_minor_units,
            currency=draft.currency,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()

        for line in draft.lines:
            db.session.add(OrderLine(
                order_id=order.id,
                stock_unit_id=line.stock_unit_id,
                listing_id=units[line.stock_unit_id].listing_id,
                quantity=line.quantity,
                unit_price_minor_units=line.unit_price_minor_units,
                line_total_minor_units=line.line_total_minor_units,
            ))
            inventory_service._reserve_locked(line.stock_unit_id, line.quantity, order.id, now=now)

        event_service.append_event(
            event_type="order.created",
            entity_type="order",
            entity_id=order.id,
            payload={
                "buyer_id": order.buyer_id,
                "seller_id": order.seller_id,
                "total_minor_units": order.total_minor_units,
                "currency": order.currency,
                "status": order.status,
            },
            occurred_at=now,
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def checkout(draft: OrderDraft) -> dict:
    """
    Reserve stock for every line, create the order and hand payment to the provider.

    Replaying the same (buyer, idempotency_key) returns the first result.

    Returns:
        {order_id, payment_intent_id, redirect_url, status, reservation_expires_at}

    Raises:
        OutOfStock: nothing was reserved
        PaymentFailed: provider handoff failed; the order is canceled and its holds released
    """
    order = _existing_order(draft.buyer_id, draft.idempotency_key)
    if order is None:
        try:
            order = _create_order_with_holds(draft)
        except OutOfStock as exc:
            logger.info("Checkout for buyer %s stopped: %s", draft.buyer_id, exc)
            raise
        except IntegrityError:
            # concurrent replay of the same checkout
            order = _existing_order(draft.buyer_id, draft.idempotency_key)
            if order is None:
                raise

    order_id = order.id
    intent = None
    if order.status == OrderStatus.PENDING.value:
        intent = payment_service.create_intent(
            order_id,
            order.total_minor_units,
            order.currency,
            draft.payment_method,
            draft.idempotency_key,
        )
    elif order.payment_intent_id:
        intent = payment_service.get_intent(order.payment_intent_id)

    reservations = inventory_service.get_reservations_for_owner(order_id)
    expires_at = max((r.expires_at for r in reservations), default=None)
    order = order_service.get_order(order_id)
    return {
        "order_id": order_id,
        "status": order.status,
        "payment_intent_id": intent.id if intent else None,
        "payment_status": intent.status if intent else None,
        "redirect_url": intent.redirect_url if intent else None,
        "reservation_expires_at": to_utc_z(expires_at),
    }
