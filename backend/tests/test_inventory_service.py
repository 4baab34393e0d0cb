from datetime import timedelta

import pytest

from settlement.extensions import db
from settlement.models import Reservation, ReservationStatus
from settlement.services import inventory_service
from settlement.services.inventory_service import (
    HoldOwnedByOrder,
    InventoryError,
    ListingNotPurchasable,
    OutOfStock,
    ReservationNotFound,
    StockUnitNotFound,
)
from settlement.time_utils import utcnow


def _snapshot(unit_id):
    return inventory_service.get_inventory(unit_id)


def test_reserve_moves_units_from_available_to_reserved(make_stock):
    unit = make_stock(5)

    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)

    assert reservation.status == ReservationStatus.HELD.value
    assert reservation.expires_at > reservation.created_at
    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"], snap["available"]) == (5, 2, 3)


def test_reserve_more_than_available_raises_out_of_stock(make_stock):
    unit = make_stock(3)
    inventory_service.reserve(unit.id, 2, owner_id=101)

    with pytest.raises(OutOfStock) as exc_info:
        inventory_service.reserve(unit.id, 2, owner_id=102)

    assert exc_info.value.available == 1
    assert exc_info.value.requested == 2
    assert _snapshot(unit.id)["reserved"] == 2


def test_reserve_is_idempotent_per_owner(make_stock):
    unit = make_stock(5)
    first = inventory_service.reserve(unit.id, 2, owner_id=101)
    second = inventory_service.reserve(unit.id, 2, owner_id=101)

    assert first.id == second.id
    assert _snapshot(unit.id)["reserved"] == 2


def test_reserve_rejects_unapproved_listing(make_stock):
    unit = make_stock(5)
    inventory_service.set_listing_status(unit.id, "archived")

    with pytest.raises(ListingNotPurchasable):
        inventory_service.reserve(unit.id, 1, owner_id=101)


def test_reserve_unknown_stock_unit(db_session):
    with pytest.raises(StockUnitNotFound):
        inventory_service.reserve(9999, 1, owner_id=101)


def test_confirm_decrements_on_hand_and_is_idempotent(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)

    inventory_service.confirm(reservation.id)
    inventory_service.confirm(reservation.id)

    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"], snap["available"]) == (3, 0, 3)


def test_release_returns_units_and_is_idempotent(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)

    released = inventory_service.release(reservation.id, reason="buyer_canceled")
    inventory_service.release(reservation.id)

    assert released.status == ReservationStatus.RELEASED.value
    assert released.release_reason == "buyer_canceled"
    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"]) == (5, 0)


def test_release_after_confirm_is_a_no_op(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)
    inventory_service.confirm(reservation.id)

    result = inventory_service.release(reservation.id)

    assert result.status == ReservationStatus.CONFIRMED.value
    assert _snapshot(unit.id)["on_hand"] == 3


def test_confirm_released_cart_hold_fails(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 1, owner_id=101, owner_type="cart")
    inventory_service.release(reservation.id)

    with pytest.raises(InventoryError):
        inventory_service.confirm(reservation.id)


def test_confirm_released_order_hold_reclaims_stock(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)
    inventory_service.release(reservation.id, reason="order_canceled")

    confirmed = inventory_service.confirm(reservation.id)

    assert confirmed.status == ReservationStatus.CONFIRMED.value
    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"]) == (3, 0)


def test_confirm_released_order_hold_fails_when_stock_was_resold(make_stock):
    unit = make_stock(1)
    reservation = inventory_service.reserve(unit.id, 1, owner_id=101)
    inventory_service.release(reservation.id)
    inventory_service.reserve(unit.id, 1, owner_id=102)

    with pytest.raises(OutOfStock):
        inventory_service.confirm(reservation.id)

    assert inventory_service._load_reservation(reservation.id).status == ReservationStatus.RELEASED.value


def test_release_cart_hold_refuses_order_holds(make_stock):
    unit = make_stock(5)
    order_hold = inventory_service.reserve(unit.id, 1, owner_id=101)
    cart_hold = inventory_service.reserve(unit.id, 1, owner_id=202, owner_type="cart")

    with pytest.raises(HoldOwnedByOrder):
        inventory_service.release_cart_hold(order_hold.id)
    released = inventory_service.release_cart_hold(cart_hold.id)

    assert inventory_service._load_reservation(order_hold.id).status == ReservationStatus.HELD.value
    assert released.status == ReservationStatus.RELEASED.value
    assert released.release_reason == "manual_release"
    assert _snapshot(unit.id)["reserved"] == 1


def test_release_unknown_reservation(db_session):
    with pytest.raises(ReservationNotFound):
        inventory_service.release(424242)


def test_sweeper_expires_only_lapsed_holds(make_stock):
    unit = make_stock(10)
    old = inventory_service.reserve(unit.id, 3, owner_id=101)
    fresh = inventory_service.reserve(unit.id, 2, owner_id=102)
    # push the second hold's expiry further out
    db.session.get(Reservation, fresh.id).expires_at = utcnow() + timedelta(hours=2)
    db.session.commit()

    stats = inventory_service.release_expired_reservations(now=utcnow() + timedelta(minutes=16))

    assert stats["reservations_expired"] == 1
    assert stats["units_returned"] == 3
    assert inventory_service._load_reservation(old.id).status == ReservationStatus.EXPIRED.value
    assert inventory_service._load_reservation(fresh.id).status == ReservationStatus.HELD.value
    assert _snapshot(unit.id)["reserved"] == 2


def test_sweeper_leaves_confirmed_holds_alone(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)
    inventory_service.confirm(reservation.id)

    stats = inventory_service.release_expired_reservations(now=utcnow() + timedelta(hours=1))

    assert stats["reservations_expired"] == 0
    assert _snapshot(unit.id)["on_hand"] == 3


def test_confirm_after_expiry_reclaims_stock_when_available(make_stock):
    unit = make_stock(5)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)
    inventory_service.release_expired_reservations(now=utcnow() + timedelta(minutes=16))

    confirmed = inventory_service.confirm(reservation.id)

    assert confirmed.status == ReservationStatus.CONFIRMED.value
    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"]) == (3, 0)


def test_confirm_after_expiry_fails_when_stock_was_resold(make_stock):
    unit = make_stock(2)
    reservation = inventory_service.reserve(unit.id, 2, owner_id=101)
    inventory_service.release_expired_reservations(now=utcnow() + timedelta(minutes=16))
    inventory_service.reserve(unit.id, 2, owner_id=102)

    with pytest.raises(OutOfStock):
        inventory_service.confirm(reservation.id)

    assert inventory_service._load_reservation(reservation.id).status == ReservationStatus.EXPIRED.value
    snap = _snapshot(unit.id)
    assert (snap["on_hand"], snap["reserved"]) == (2, 2)


def test_restock_adds_to_on_hand(make_stock):
    unit = make_stock(1)
    inventory_service.restock(unit.id, 4)
    assert _snapshot(unit.id)["on_hand"] == 5

    with pytest.raises(InventoryError):
        inventory_service.restock(unit.id, 0)
    with pytest.raises(StockUnitNotFound):
        inventory_service.restock(9999, 1)


def test_listing_moderation_transitions(make_stock):
    unit = make_stock(1)
    draft = inventory_service.create_stock_unit(
        listing_id="lst_draft", seller_id=4, quantity_on_hand=1, listing_status="draft"
    )

    inventory_service.set_listing_status(draft.id, "pending_review")
    approved = inventory_service.set_listing_status(draft.id, "approved")
    assert approved.listing_status == "approved"

    with pytest.raises(InventoryError):
        inventory_service.set_listing_status(unit.id, "draft")


def test_reservation_stats(make_stock):
    unit = make_stock(10)
    inventory_service.reserve(unit.id, 1, owner_id=101)
    confirmed = inventory_service.reserve(unit.id, 1, owner_id=102)
    inventory_service.confirm(confirmed.id)
    released = inventory_service.reserve(unit.id, 1, owner_id=103)
    inventory_service.release(released.id)

    stats = inventory_service.get_reservation_stats(now=utcnow() + timedelta(minutes=16))

    assert stats["held"] == 1
    assert stats["confirmed"] == 1
    assert stats["released"] == 1
    assert stats["held_past_expiry"] == 1
