from datetime import timedelta

from settlement.models import OrderStatus, ProviderEvent
from settlement.services import order_service, payment_service, reconciliation_service
from settlement.services.inventory_service import OutOfStock
from settlement.services.payment_gateway import PaymentGatewayError
from settlement.time_utils import utcnow


def _later():
    return utcnow() + timedelta(minutes=10)


def _pending(make_stock, place_order):
    unit = make_stock(5)
    result = place_order([(unit.id, 2, 1500)])
    return result, payment_service.get_intent(result["payment_intent_id"])


def test_stalled_intent_is_settled_from_provider_status(make_stock, place_order, gateway):
    result, intent = _pending(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "success", transaction_id="txn_rec")

    stats = reconciliation_service.reconcile_pending_intents(now=_later())

    assert stats["checked"] == 1
    assert stats["processed"] == 1
    assert payment_service.get_intent(intent.id).status == "succeeded"
    assert order_service.get_order(result["order_id"]).status == OrderStatus.CONFIRMED.value
    record = ProviderEvent.query.one()
    assert record.provider_event_id == f"reconcile:{intent.provider_reference}:succeeded"
    assert record.source == "reconcile"


def test_recent_intents_are_left_to_webhooks(make_stock, place_order, gateway):
    _, intent = _pending(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "success")

    stats = reconciliation_service.reconcile_pending_intents(now=utcnow())

    assert stats["checked"] == 0
    assert payment_service.get_intent(intent.id).status == "created"


def test_reconcile_then_webhook_applies_once(make_stock, place_order, gateway, deliver):
    result, intent = _pending(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "success")
    reconciliation_service.reconcile_pending_intents(now=_later())

    record = deliver(intent.provider_reference, "success", amount=3000)

    assert record.status == "ignored"
    assert order_service.get_order(result["order_id"]).version == 2


def test_still_pending_at_provider(make_stock, place_order, gateway):
    _, intent = _pending(make_stock, place_order)
    payment_service.mark_returned_from_provider(intent.id)

    stats = reconciliation_service.reconcile_pending_intents(now=_later())

    assert stats["unchanged"] == 1
    assert payment_service.get_intent(intent.id).status == "pending_confirmation"


def test_provider_outage_is_counted_not_raised(make_stock, place_order, gateway, monkeypatch):
    _, intent = _pending(make_stock, place_order)

    def _down(reference):
        raise PaymentGatewayError("provider timeout")

    monkeypatch.setattr(gateway, "fetch_payment_status", _down)

    stats = reconciliation_service.reconcile_pending_intents(now=_later())

    assert stats["errors"] == 1
    assert payment_service.get_intent(intent.id).status == "created"


def test_canceled_orders_stop_being_polled(make_stock, place_order, gateway):
    canceled = [_pending(make_stock, place_order) for _ in range(2)]
    for result, _ in canceled:
        order_service.cancel_order(result["order_id"])
    paid, intent = _pending(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "success")

    stats = reconciliation_service.reconcile_pending_intents(now=_later(), limit=1)

    assert stats["checked"] == 1
    assert stats["processed"] == 1
    assert payment_service.get_intent(intent.id).status == "succeeded"
    assert order_service.get_order(paid["order_id"]).status == OrderStatus.CONFIRMED.value
    for _, retired in canceled:
        assert payment_service.get_intent(retired.id).failure_reason == "order_canceled"


def test_intents_still_pending_rotate_out_of_the_batch(make_stock, place_order, gateway):
    intents = [_pending(make_stock, place_order)[1] for _ in range(3)]
    for intent in intents:
        payment_service.mark_returned_from_provider(intent.id)
    now = _later()

    first = reconciliation_service.reconcile_pending_intents(now=now, limit=2)
    gateway.simulate_status(intents[2].provider_reference, "success")
    second = reconciliation_service.reconcile_pending_intents(now=now, limit=2)

    assert (first["checked"], first["unchanged"]) == (2, 2)
    assert (second["checked"], second["processed"]) == (1, 1)
    assert payment_service.get_intent(intents[2].id).status == "succeeded"
    assert [payment_service.get_intent(i.id).status for i in intents[:2]] == ["pending_confirmation"] * 2


def test_inventory_errors_are_counted_and_the_pass_continues(make_stock, place_order, gateway, monkeypatch):
    stuck = [_pending(make_stock, place_order)[1] for _ in range(2)]

    def _unfulfillable(intent):
        raise OutOfStock(f"stock for intent {intent.id} is gone")

    monkeypatch.setattr(reconciliation_service, "_sync_intent", _unfulfillable)

    stats = reconciliation_service.reconcile_pending_intents(now=_later())

    assert stats["checked"] == 2
    assert stats["errors"] == 2
    assert [payment_service.get_intent(i.id).status for i in stuck] == ["created", "created"]


def test_refused_refunds_are_retried(paid_order, gateway, monkeypatch):
    def _refused(*args, **kwargs):
        raise PaymentGatewayError("refused")

    with monkeypatch.context() as m:
        m.setattr(gateway, "refund", _refused)
        order_service.cancel_order(paid_order["order_id"])
    assert payment_service.get_intent(paid_order["intent_id"]).status == "succeeded"

    stats = reconciliation_service.retry_pending_refunds()

    assert stats == {"refunded": 1, "errors": 0}
    assert payment_service.get_intent(paid_order["intent_id"]).status == "refunded"


def test_reconcile_order_refreshes_polling_view(make_stock, place_order, gateway):
    result, intent = _pending(make_stock, place_order)
    gateway.simulate_status(intent.provider_reference, "failed")

    view = reconciliation_service.reconcile_order(result["order_id"])

    assert view["status"] == "canceled"
    assert view["payment_status"] == "failed"
    assert view["allowed_actions"] == []


def test_run_reconciliation_reports_each_pass(db_session, gateway):
    report = reconciliation_service.run_reconciliation()

    assert set(report) == {"intents", "refunds", "replays"}
    assert report["intents"]["checked"] == 0
