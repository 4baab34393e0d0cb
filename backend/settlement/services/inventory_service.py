# Overview: Service-layer operations for inventory; encapsulates the stock ledger and reservation holds.

# backend/settlement/services/inventory_service.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..models import StockUnit, Reservation, ListingStatus, ReservationStatus
from settlement.time_utils import utcnow
from .concurrency import compare_and_swap, run_with_retry
"""
Inventory Ledger Invariants (authoritative)

Quantities:
- quantity_reserved <= quantity_on_hand at all times (also a DB check constraint).
- available = quantity_on_hand - quantity_reserved.
- Every quantity change is ONE conditional UPDATE whose WHERE clause carries the
  guard (available >= n, status = 'held', ...). Never read-compute-write.

Reservations:
- reserve:  available >= n  ->  reserved += n, new 'held' row (same transaction)
- confirm:  held -> confirmed, on_hand -= n, reserved -= n. Idempotent on confirmed.
- release:  held -> released, reserved -= n. No-op on confirmed/released/expired.
- sweeper:  held and past expires_at -> expired, reserved -= n.
- A 'held' row past expires_at is still confirmable: confirm beats the sweeper.
- confirm on an 'expired' row (or a released order hold) re-acquires stock if still
  available, otherwise raises OutOfStock. Released cart holds cannot be confirmed.
- Order holds are released by the order state machine (cancel, payment failure,
  sweeper). release_cart_hold refuses them.

Reads:
- get_inventory is for display only. Never call it to pre-check before reserve();
  reserve's conditional UPDATE is the check.
"""

logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """Raised for inventory ledger errors."""
    pass


class OutOfStock(InventoryError):
    """Not enough available units; surfaced to the buyer, never retried blindly."""

    def __init__(self, stock_unit_id: int, requested: int, available: int):
        self.stock_unit_id = stock_unit_id
        self.requested = requested
        self.available = max(available, 0)
        super().__init__(
            f"Stock unit {stock_unit_id}: requested {requested}, only {self.available} available"
        )


class ReservationNotFound(InventoryError):
    pass


class StockUnitNotFound(InventoryError):
    pass


class HoldOwnedByOrder(InventoryError):
    pass


class ListingNotPurchasable(InventoryError):
    pass


# Listing moderation. archived is terminal and only reachable from approved.
LISTING_TRANSITIONS = {
    (ListingStatus.DRAFT.value, ListingStatus.PENDING_REVIEW.value),
    (ListingStatus.PENDING_REVIEW.value, ListingStatus.APPROVED.value),
    (ListingStatus.PENDING_REVIEW.value, ListingStatus.REJECTED.value),
    (ListingStatus.REJECTED.value, ListingStatus.PENDING_REVIEW.value),
    (ListingStatus.APPROVED.value, ListingStatus.ARCHIVED.value),
}


def _reservation_ttl() -> timedelta:
    return timedelta(minutes=current_app.config.get("RESERVATION_TTL_MINUTES", 15))


def _load_reservation(reservation_id: int) -> Reservation | None:
    return db.session.execute(
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _load_stock_unit(stock_unit_id: int) -> StockUnit | None:
    return db.session.execute(
        select(StockUnit)
        .where(StockUnit.id == stock_unit_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


# =============================================================================
# STOCK UNITS
# =============================================================================

def create_stock_unit(
    *,
    listing_id: str,
    seller_id: int,
    quantity_on_hand: int = 0,
    variant: str | None = None,
    listing_status: str = ListingStatus.APPROVED.value,
) -> StockUnit:
    if quantity_on_hand < 0:
        raise InventoryError("quantity_on_hand must be >= 0")
    if listing_status not in {s.value for s in ListingStatus}:
        raise InventoryError(f"Invalid listing status '{listing_status}'")

    def _op():
        unit = StockUnit(
            listing_id=listing_id,
            variant=variant,
            seller_id=seller_id,
            listing_status=listing_status,
            quantity_on_hand=quantity_on_hand,
            quantity_reserved=0,
            updated_at=utcnow(),
        )
        db.session.add(unit)
        db.session.commit()
        return unit

    return run_with_retry(_op)


def restock(stock_unit_id: int, quantity: int) -> StockUnit:
    """Atomically add units to on-hand stock."""
    if quantity <= 0:
        raise InventoryError("Restock quantity must be positive")

    def _op():
        _restock_locked(stock_unit_id, quantity, utcnow())
        db.session.commit()
        return _load_stock_unit(stock_unit_id)

    return run_with_retry(_op)


def _restock_locked(stock_unit_id: int, quantity: int, now: datetime) -> None:
    """Increment on-hand inside the caller's transaction. Does not commit."""
    swapped = compare_and_swap(
        StockUnit,
        where=[StockUnit.id == stock_unit_id],
        values={
            "quantity_on_hand": StockUnit.quantity_on_hand + quantity,
            "updated_at": now,
        },
    )
    if not swapped:
        raise StockUnitNotFound(f"Stock unit {stock_unit_id} not found")


def set_listing_status(stock_unit_id: int, new_status: str) -> StockUnit:
    """
    Move a listing through moderation. Conditioned on the status read, so a
    concurrent moderator change makes this call fail instead of overwriting it.
    """
    def _op():
        unit = _load_stock_unit(stock_unit_id)
        if unit is None:
            raise StockUnitNotFound(f"Stock unit {stock_unit_id} not found")
        current = unit.listing_status
        if current == new_status:
            return unit
        if (current, new_status) not in LISTING_TRANSITIONS:
            raise InventoryError(f"Cannot move listing from '{current}' to '{new_status}'")

        swapped = compare_and_swap(
            StockUnit,
            where=[StockUnit.id == stock_unit_id, StockUnit.listing_status == current],
            values={"listing_status": new_status, "updated_at": utcnow()},
        )
        if not swapped:
            raise InventoryError(f"Listing {unit.listing_id} changed concurrently; reload and retry")
        db.session.commit()
        return _load_stock_unit(stock_unit_id)

    return run_with_retry(_op)


def get_inventory(stock_unit_id: int) -> dict:
    """Display-only snapshot of a stock unit."""
    unit = _load_stock_unit(stock_unit_id)
    if unit is None:
        raise StockUnitNotFound(f"Stock unit {stock_unit_id} not found")
    return {
        "stock_unit_id": unit.id,
        "listing_id": unit.listing_id,
        "variant": unit.variant,
        "listing_status": unit.listing_status,
        "on_hand": unit.quantity_on_hand,
        "reserved": unit.quantity_reserved,
        "available": unit.available,
    }


# =============================================================================
# RESERVATIONS
# =============================================================================

def _reserve_locked(
    stock_unit_id: int,
    quantity: int,
    owner_id: int,
    *,
    owner_type: str = "order",
    now: datetime | None = None,
) -> Reservation:
    """Reserve inside the caller's transaction. Does not commit."""
    if quantity <= 0:
        raise InventoryError("Reservation quantity must be positive")
    now = now or utcnow()

    existing = db.session.query(Reservation).filter_by(
        owner_type=owner_type,
        owner_id=owner_id,
        stock_unit_id=stock_unit_id,
        status=ReservationStatus.HELD.value,
    ).first()
    if existing is not None:
        if existing.quantity != quantity:
            raise InventoryError(
                f"{owner_type} {owner_id} already holds {existing.quantity} of stock unit {stock_unit_id}"
            )
        return existing

    claimed = compare_and_swap(
        StockUnit,
        where=[
            StockUnit.id == stock_unit_id,
            StockUnit.listing_status == ListingStatus.APPROVED.value,
            StockUnit.quantity_on_hand - StockUnit.quantity_reserved >= quantity,
        ],
        values={
            "quantity_reserved": StockUnit.quantity_reserved + quantity,
            "updated_at": now,
        },
    )
    if not claimed:
        unit = _load_stock_unit(stock_unit_id)
        if unit is None:
            raise StockUnitNotFound(f"Stock unit {stock_unit_id} not found")
        if unit.listing_status != ListingStatus.APPROVED.value:
            raise ListingNotPurchasable(
                f"Listing {unit.listing_id} is '{unit.listing_status}' and cannot be purchased"
            )
        raise OutOfStock(stock_unit_id, quantity, unit.available)

    reservation = Reservation(
        stock_unit_id=stock_unit_id,
        owner_type=owner_type,
        owner_id=owner_id,
        quantity=quantity,
        status=ReservationStatus.HELD.value,
        created_at=now,
        expires_at=now + _reservation_ttl(),
    )
    db.session.add(reservation)
    db.session.flush()
    return reservation


def reserve(stock_unit_id: int, quantity: int, owner_id: int, *, owner_type: str = "order") -> Reservation:
    """
    Hold `quantity` units for an owner (order or cart).

    Raises:
        OutOfStock: if fewer than `quantity` units are available
        StockUnitNotFound / ListingNotPurchasable
    """
    def _op():
        reservation = _reserve_locked(stock_unit_id, quantity, owner_id, owner_type=owner_type)
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def _confirm_locked(reservation_id: int, *, now: datetime | None = None) -> Reservation:
    """Confirm inside the caller's transaction. Does not commit."""
    now = now or utcnow()

    # Two passes: a lost race against the sweeper or a release re-reads once.
    for _ in range(2):
        reservation = _load_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")

        status = reservation.status
        if status == ReservationStatus.CONFIRMED.value:
            return reservation

        if status == ReservationStatus.HELD.value:
            swapped = compare_and_swap(
                Reservation,
                where=[Reservation.id == reservation_id, Reservation.status == ReservationStatus.HELD.value],
                values={"status": ReservationStatus.CONFIRMED.value, "confirmed_at": now},
            )
            if not swapped:
                continue
            decremented = compare_and_swap(
                StockUnit,
                where=[
                    StockUnit.id == reservation.stock_unit_id,
                    StockUnit.quantity_reserved >= reservation.quantity,
                    StockUnit.quantity_on_hand >= reservation.quantity,
                ],
                values={
                    "quantity_on_hand": StockUnit.quantity_on_hand - reservation.quantity,
                    "quantity_reserved": StockUnit.quantity_reserved - reservation.quantity,
                    "updated_at": now,
                },
            )
            if not decremented:
                raise InventoryError(
                    f"Stock unit {reservation.stock_unit_id} does not cover reservation {reservation_id}"
                )
            return _load_reservation(reservation_id)

        if status == ReservationStatus.RELEASED.value and reservation.owner_type != "order":
            raise InventoryError(f"Reservation {reservation_id} was released and cannot be confirmed")

        if status in (ReservationStatus.EXPIRED.value, ReservationStatus.RELEASED.value):
            # Lapsed before payment landed: take the units again if nobody else has.
            swapped = compare_and_swap(
                Reservation,
                where=[Reservation.id == reservation_id, Reservation.status == status],
                values={"status": ReservationStatus.CONFIRMED.value, "confirmed_at": now},
            )
            if not swapped:
                continue
            reclaimed = compare_and_swap(
                StockUnit,
                where=[
                    StockUnit.id == reservation.stock_unit_id,
                    StockUnit.quantity_on_hand - StockUnit.quantity_reserved >= reservation.quantity,
                ],
                values={
                    "quantity_on_hand": StockUnit.quantity_on_hand - reservation.quantity,
                    "updated_at": now,
                },
            )
            if not reclaimed:
                unit = _load_stock_unit(reservation.stock_unit_id)
                raise OutOfStock(reservation.stock_unit_id, reservation.quantity, unit.available if unit else 0)
            logger.info("Reclaimed %s reservation %s on late confirmation", status, reservation_id)
            return _load_reservation(reservation_id)

    raise InventoryError(f"Reservation {reservation_id} changed concurrently during confirm")


def confirm(reservation_id: int) -> Reservation:
    """
    Convert a hold into a permanent decrement. Idempotent.
    """
    def _op():
        reservation = _confirm_locked(reservation_id)
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def _release_locked(
    reservation_id: int,
    *,
    reason: str = "released",
    now: datetime | None = None,
) -> Reservation:
    """Release inside the caller's transaction. Does not commit."""
    now = now or utcnow()
    reservation = _load_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFound(f"Reservation {reservation_id} not found")

    if reservation.status != ReservationStatus.HELD.value:
        # confirmed wins; released/expired already returned their units
        return reservation

    swapped = compare_and_swap(
        Reservation,
        where=[Reservation.id == reservation_id, Reservation.status == ReservationStatus.HELD.value],
        values={
            "status": ReservationStatus.RELEASED.value,
            "released_at": now,
            "release_reason": reason,
        },
    )
    if swapped:
        _return_reserved_units(reservation.stock_unit_id, reservation.quantity, now)
    return _load_reservation(reservation_id)


def release(reservation_id: int, *, reason: str = "released") -> Reservation:
    """Return held units to availability. Idempotent."""
    def _op():
        reservation = _release_locked(reservation_id, reason=reason)
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def release_cart_hold(reservation_id: int, *, reason: str = "manual_release") -> Reservation:
    """
    Release a cart hold on request.

    Raises:
        HoldOwnedByOrder: the hold belongs to an order; cancel the order instead
    """
    def _op():
        reservation = _load_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        if reservation.owner_type == "order":
            raise HoldOwnedByOrder(
                f"Reservation {reservation_id} belongs to order {reservation.owner_id}; cancel the order instead"
            )
        reservation = _release_locked(reservation_id, reason=reason)
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def _return_reserved_units(stock_unit_id: int, quantity: int, now: datetime) -> None:
    returned = compare_and_swap(
        StockUnit,
        where=[StockUnit.id == stock_unit_id, StockUnit.quantity_reserved >= quantity],
        values={
            "quantity_reserved": StockUnit.quantity_reserved - quantity,
            "updated_at": now,
        },
    )
    if not returned:
        raise InventoryError(f"Stock unit {stock_unit_id} reserved count is below {quantity}")


def get_reservations_for_owner(owner_id: int, *, owner_type: str = "order") -> list[Reservation]:
    return (
        db.session.query(Reservation)
        .filter_by(owner_type=owner_type, owner_id=owner_id)
        .order_by(Reservation.id)
        .all()
    )


# =============================================================================
# SWEEPER
# =============================================================================

def release_expired_reservations(*, now: datetime | None = None, batch_size: int = 200) -> dict:
    """
    Expire every held reservation whose expires_at has passed.

    Each row is expired with its own conditional UPDATE (status='held' AND
    expires_at < now), so a confirm that lands first leaves the row alone.
    """
    now = now or utcnow()
    stats = {"reservations_expired": 0, "units_returned": 0, "skipped": 0}

    while True:
        candidates = (
            db.session.query(Reservation.id, Reservation.stock_unit_id, Reservation.quantity)
            .filter(
                Reservation.status == ReservationStatus.HELD.value,
                Reservation.expires_at < now,
            )
            .order_by(Reservation.id)
            .limit(batch_size)
            .all()
        )
        if not candidates:
            break

        def _op():
            expired = 0
            units = 0
            for row in candidates:
                swapped = compare_and_swap(
                    Reservation,
                    where=[
                        Reservation.id == row.id,
                        Reservation.status == ReservationStatus.HELD.value,
                        Reservation.expires_at < now,
                    ],
                    values={
                        "status": ReservationStatus.EXPIRED.value,
                        "released_at": now,
                        "release_reason": "expired",
                    },
                )
                if swapped:
                    _return_reserved_units(row.stock_unit_id, row.quantity, now)
                    expired += 1
                    units += row.quantity
            db.session.commit()
            return expired, units

        expired, units = run_with_retry(_op)
        stats["reservations_expired"] += expired
        stats["units_returned"] += units
        stats["skipped"] += len(candidates) - expired
        if len(candidates) < batch_size:
            break

    if stats["reservations_expired"]:
        logger.info(
            "Expired %s reservations, returned %s units to availability",
            stats["reservations_expired"],
            stats["units_returned"],
        )
    return stats


def get_reservation_stats(*, now: datetime | None = None) -> dict:
    """Reservation counts for monitoring."""
    now = now or utcnow()
    counts = dict(
        db.session.query(Reservation.status, db.func.count(Reservation.id))
        .group_by(Reservation.status)
        .all()
    )
    overdue = db.session.query(db.func.count(Reservation.id)).filter(
        Reservation.status == ReservationStatus.HELD.value,
        Reservation.expires_at < now,
    ).scalar() or 0
    return {
        "held": counts.get(ReservationStatus.HELD.value, 0),
        "confirmed": counts.get(ReservationStatus.CONFIRMED.value, 0),
        "released": counts.get(ReservationStatus.RELEASED.value, 0),
        "expired": counts.get(ReservationStatus.EXPIRED.value, 0),
        "held_past_expiry": int(overdue),
    }
