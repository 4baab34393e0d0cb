from datetime import timedelta

import pytest

from settlement.models import DomainEvent, OrderStatus, PaymentIntent, ProviderEvent, Reservation, ReservationStatus
from settlement.services import inventory_service, order_service, payment_service
from settlement.services.payment_gateway import PaymentGatewayError, compute_signature, verify_signature
from settlement.services.payment_service import (
    ActiveIntentExists,
    InvalidSignature,
    PaymentError,
    PaymentFailed,
    PaymentIntentNotFound,
)
from settlement.time_utils import utcnow
from settlement.validation import ValidationError

from conftest import event_body


def _pending_checkout(make_stock, place_order, quantity=2, stock=5, **kwargs):
    unit = make_stock(stock)
    result = place_order([(unit.id, quantity, 1500)], **kwargs)
    intent = payment_service.get_intent(result["payment_intent_id"])
    return result, intent, unit.id


def test_signature_roundtrip():
    body = b'{"id": "evt_1"}'
    signature = compute_signature(body, "s3cret")

    assert verify_signature(body, signature, "s3cret")
    assert verify_signature(body, signature.upper(), "s3cret")
    assert not verify_signature(body + b" ", signature, "s3cret")
    assert not verify_signature(body, None, "s3cret")
    assert not verify_signature(body, signature, "")


def test_invalid_signature_records_nothing(app, make_stock, place_order):
    _, intent, _ = _pending_checkout(make_stock, place_order)
    body = event_body(intent.provider_reference, "success", amount=3000)

    with pytest.raises(InvalidSignature):
        payment_service.apply_provider_event(body, "deadbeef")

    assert ProviderEvent.query.count() == 0
    assert payment_service.get_intent(intent.id).status == "created"


def test_malformed_body_is_rejected(app, db_session):
    body = b"not json"
    with pytest.raises(ValidationError):
        payment_service.apply_provider_event(body, compute_signature(body, app.config["PAYMENT_WEBHOOK_SECRET"]))


def test_duplicate_event_is_applied_once(make_stock, place_order, deliver):
    result, intent, _ = _pending_checkout(make_stock, place_order)

    first = deliver(intent.provider_reference, "success", event_id="evt_dup", amount=3000)
    second = deliver(intent.provider_reference, "success", event_id="evt_dup", amount=3000)

    assert first.status == "processed"
    assert second.status == "processed"
    assert ProviderEvent.query.count() == 1
    assert DomainEvent.query.filter_by(event_type="order.status_changed").count() == 1
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value


def test_second_success_event_with_new_id_is_ignored(make_stock, place_order, deliver):
    _, intent, _ = _pending_checkout(make_stock, place_order)
    deliver(intent.provider_reference, "success", amount=3000)

    again = deliver(intent.provider_reference, "success", amount=3000)

    assert again.status == "ignored"


def test_webhook_before_buyer_return(make_stock, place_order, deliver):
    result, intent, _ = _pending_checkout(make_stock, place_order)
    assert intent.status == "created"

    deliver(intent.provider_reference, "success", amount=3000, transaction_id="txn_9")
    payment_service.mark_returned_from_provider(intent.id)

    intent = payment_service.get_intent(intent.id)
    assert intent.status == "succeeded"
    assert intent.transaction_id == "txn_9"
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value


def test_buyer_return_moves_created_to_pending_confirmation(make_stock, place_order):
    _, intent, _ = _pending_checkout(make_stock, place_order)

    returned = payment_service.mark_returned_from_provider(intent.id)

    assert returned.status == "pending_confirmation"


def test_payment_failure_cancels_order_and_releases_stock(make_stock, place_order, deliver):
    result, intent, unit_id = _pending_checkout(make_stock, place_order)
    payment_service.mark_returned_from_provider(intent.id)

    deliver(intent.provider_reference, "failed")

    assert payment_service.get_intent(intent.id).status == "failed"
    order = order_service.get_order(result["order_id"])
    assert order.status == OrderStatus.CANCELED.value
    assert order.cancel_reason == "payment_failed"
    assert inventory_service.get_inventory(unit_id)["available"] == 5


def test_failed_intent_is_never_revived(make_stock, place_order, deliver):
    _, intent, _ = _pending_checkout(make_stock, place_order)
    deliver(intent.provider_reference, "failed")

    late = deliver(intent.provider_reference, "success", amount=3000)

    assert late.status == "ignored"
    assert payment_service.get_intent(intent.id).status == "failed"


def test_unknown_reference_is_stored_failed(deliver, db_session):
    with pytest.raises(PaymentIntentNotFound):
        deliver("sbx_missing", "success", event_id="evt_orphan", amount=100)

    record = ProviderEvent.query.filter_by(provider_event_id="evt_orphan").one()
    assert record.status == "failed"
    assert record.attempts == 1
    assert [e.provider_event_id for e in payment_service.list_failed_events()] == ["evt_orphan"]


def test_amount_mismatch_is_not_applied(make_stock, place_order, deliver):
    result, intent, _ = _pending_checkout(make_stock, place_order)

    with pytest.raises(PaymentError):
        deliver(intent.provider_reference, "success", event_id="evt_short", amount=1)

    assert payment_service.get_intent(intent.id).status == "created"
    assert order_service.get_order(result["order_id"]).status == OrderStatus.PENDING.value
    assert ProviderEvent.query.filter_by(provider_event_id="evt_short").one().status == "failed"


def test_failed_event_can_be_replayed(make_stock, place_order, deliver, monkeypatch):
    result, intent, _ = _pending_checkout(make_stock, place_order)

    def _boom(*args, **kwargs):
        raise RuntimeError("database hiccup")

    with monkeypatch.context() as m:
        m.setattr(order_service, "_on_payment_succeeded_locked", _boom)
        with pytest.raises(RuntimeError):
            deliver(intent.provider_reference, "success", event_id="evt_retry", amount=3000)

    # the failed apply rolled back completely
    assert payment_service.get_intent(intent.id).status == "created"

    record = payment_service.replay_event("evt_retry")

    assert record.status == "processed"
    assert record.attempts == 2
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value


def test_success_on_canceled_order_is_refunded(make_stock, place_order, deliver, gateway):
    result, intent, unit_id = _pending_checkout(make_stock, place_order)
    order_service.cancel_order(result["order_id"])
    retired = payment_service.get_intent(intent.id)
    assert (retired.status, retired.failure_reason) == ("failed", "order_canceled")

    deliver(intent.provider_reference, "success", amount=3000)

    assert payment_service.get_intent(intent.id).status == "refunded"
    assert gateway.refunds == [(intent.provider_reference, 3000)]
    assert DomainEvent.query.filter_by(event_type="payment.auto_refunded").count() == 1
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CANCELED.value
    assert inventory_service.get_inventory(unit_id)["available"] == 5


def test_late_payment_reclaims_expired_hold(make_stock, place_order, deliver):
    result, intent, unit_id = _pending_checkout(make_stock, place_order)
    inventory_service.release_expired_reservations(now=utcnow() + timedelta(minutes=16))

    deliver(intent.provider_reference, "success", amount=3000)

    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value
    snap = inventory_service.get_inventory(unit_id)
    assert (snap["on_hand"], snap["reserved"]) == (3, 0)


def test_late_payment_without_stock_cancels_and_refunds(make_stock, place_order, deliver, gateway):
    result, intent, unit_id = _pending_checkout(make_stock, place_order, quantity=2, stock=2)
    inventory_service.release_expired_reservations(now=utcnow() + timedelta(minutes=16))
    other = place_order([(unit_id, 2, 1500)], buyer_id=8)

    record = deliver(intent.provider_reference, "success", amount=3000)

    assert record.status == "processed"
    order = order_service.get_order(result["order_id"])
    assert order.status == OrderStatus.CANCELED.value
    assert order.cancel_reason == "stock_unavailable"
    assert payment_service.get_intent(intent.id).status == "refunded"
    assert len(gateway.refunds) == 1
    # the other buyer's hold is untouched
    snap = inventory_service.get_inventory(unit_id)
    assert (snap["on_hand"], snap["reserved"]) == (2, 2)
    assert order_service.get_order(other["order_id"]).status == OrderStatus.PENDING.value


def test_payment_after_order_hold_release_reclaims_stock(make_stock, place_order, deliver):
    result, intent, unit_id = _pending_checkout(make_stock, place_order)
    hold = Reservation.query.filter_by(owner_type="order", owner_id=result["order_id"]).one()
    inventory_service.release(hold.id)

    record = deliver(intent.provider_reference, "success", amount=3000)

    assert record.status == "processed"
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value
    assert inventory_service._load_reservation(hold.id).status == ReservationStatus.CONFIRMED.value
    snap = inventory_service.get_inventory(unit_id)
    assert (snap["on_hand"], snap["reserved"]) == (3, 0)


def test_payment_after_order_hold_release_without_stock_refunds(make_stock, place_order, deliver, gateway):
    result, intent, unit_id = _pending_checkout(make_stock, place_order, quantity=2, stock=2)
    hold = Reservation.query.filter_by(owner_type="order", owner_id=result["order_id"]).one()
    inventory_service.release(hold.id)
    place_order([(unit_id, 2, 1500)], buyer_id=8)

    record = deliver(intent.provider_reference, "success", amount=3000)

    assert record.status == "processed"
    order = order_service.get_order(result["order_id"])
    assert order.status == OrderStatus.CANCELED.value
    assert order.cancel_reason == "stock_unavailable"
    assert payment_service.get_intent(intent.id).status == "refunded"
    assert gateway.refunds == [(intent.provider_reference, 3000)]


def test_handoff_failure_cancels_order(make_stock, place_order, gateway, monkeypatch):
    unit = make_stock(5)

    def _down(*args, **kwargs):
        raise PaymentGatewayError("provider timeout")

    monkeypatch.setattr(gateway, "create_checkout", _down)

    with pytest.raises(PaymentFailed):
        place_order([(unit.id, 2, 1500)], key="k-down")

    intent = PaymentIntent.query.one()
    assert intent.status == "failed"
    assert intent.failure_reason.startswith("provider_unavailable")
    order = order_service.get_order(intent.order_id)
    assert order.status == OrderStatus.CANCELED.value
    assert [r.status for r in inventory_service.get_reservations_for_owner(order.id)] == [
        ReservationStatus.RELEASED.value
    ]
    assert inventory_service.get_inventory(unit.id)["available"] == 5


def test_create_intent_is_idempotent_and_single_active(make_stock, place_order):
    result, intent, _ = _pending_checkout(make_stock, place_order, key="k-1")

    same = payment_service.create_intent(result["order_id"], 3000, "NGN", "card", "k-1")
    assert same.id == intent.id

    with pytest.raises(ActiveIntentExists):
        payment_service.create_intent(result["order_id"], 3000, "NGN", "card", "k-2")
    with pytest.raises(PaymentError):
        payment_service.create_intent(result["order_id"], 2999, "NGN", "card", "k-3")


def test_manual_confirmation_verifies_with_provider(make_stock, place_order, gateway):
    result, intent, _ = _pending_checkout(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "success", transaction_id="txn_manual")

    with pytest.raises(PaymentFailed):
        payment_service.confirm_manually(intent.id, "txn_wrong")

    confirmed = payment_service.confirm_manually(intent.id, "txn_manual")

    assert confirmed.status == "succeeded"
    assert confirmed.transaction_id == "txn_manual"
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value
    record = ProviderEvent.query.one()
    assert record.source == "manual"


def test_refund_failure_leaves_intent_succeeded(paid_order, gateway, monkeypatch):
    def _refused(*args, **kwargs):
        raise PaymentGatewayError("refund refused")

    monkeypatch.setattr(gateway, "refund", _refused)

    order_service.cancel_order(paid_order["order_id"])

    assert order_service.get_order(paid_order["order_id"]).status == OrderStatus.CANCELED.value
    assert payment_service.get_intent(paid_order["intent_id"]).status == "succeeded"
