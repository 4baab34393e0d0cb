"""
HTTP contract tests: status codes and response shapes for each blueprint.
"""

import uuid
from datetime import timedelta

from settlement.models import Reservation
from settlement.services import inventory_service, payment_service, payout_service
from settlement.time_utils import utcnow

from conftest import event_body, sign


def _checkout_body(unit_id, quantity=2, *, key=None, buyer_id=7):
    return {
        "buyer_id": buyer_id,
        "currency": "NGN",
        "payment_method": "card",
        "idempotency_key": key or uuid.uuid4().hex,
        "lines": [{"stock_unit_id": unit_id, "quantity": quantity, "unit_price_minor_units": 1500}],
    }


def _post_event(app, client, body):
    return client.post(
        "/api/webhooks/payments",
        data=body,
        headers={"X-Payment-Signature": sign(app, body), "Content-Type": "application/json"},
    )


def test_health(client, db_session):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    data = resp.get_json()
    assert data["checks"]["database"]["status"] == "healthy"
    assert data["status"] in ("healthy", "degraded")


def test_checkout_and_idempotent_replay(client, make_stock, gateway):
    unit = make_stock(5)
    body = _checkout_body(unit.id, key="same-key")

    first = client.post("/api/checkout", json=body)
    replay = client.post("/api/checkout", json=body)

    assert first.status_code == 201
    assert replay.status_code == 201
    assert first.get_json()["order_id"] == replay.get_json()["order_id"]
    assert first.get_json()["payment_intent_id"] == replay.get_json()["payment_intent_id"]
    assert client.get(f"/api/inventory/{unit.id}").get_json()["reserved"] == 2


def test_checkout_out_of_stock(client, make_stock, gateway):
    unit = make_stock(1)

    resp = client.post("/api/checkout", json=_checkout_body(unit.id, quantity=2))

    assert resp.status_code == 409
    data = resp.get_json()
    assert data["code"] == "out_of_stock"
    assert data["stock_unit_id"] == unit.id
    assert data["available"] == 1
    assert data["retryable"] is True


def test_checkout_validation(client, make_stock, gateway):
    unit = make_stock(5)
    body = _checkout_body(unit.id)
    body["lines"][0]["quantity"] = 1.5

    assert client.post("/api/checkout", json=body).status_code == 400
    assert client.post("/api/checkout", json={"buyer_id": 7}).status_code == 400
    assert client.post("/api/checkout", json=_checkout_body(9999)).status_code == 404


def test_checkout_rejects_mixed_sellers(client, make_stock, gateway):
    a = make_stock(5, seller_id=4)
    b = make_stock(5, seller_id=5)
    body = _checkout_body(a.id)
    body["lines"].append({"stock_unit_id": b.id, "quantity": 1, "unit_price_minor_units": 100})

    resp = client.post("/api/checkout", json=body)

    assert resp.status_code == 400
    assert client.get(f"/api/inventory/{a.id}").get_json()["reserved"] == 0


def test_webhook_flow(app, client, make_stock, gateway):
    unit = make_stock(5)
    checkout = client.post("/api/checkout", json=_checkout_body(unit.id)).get_json()
    reference = payment_service.get_intent(checkout["payment_intent_id"]).provider_reference
    body = event_body(reference, "success", event_id="evt_http", amount=3000)

    resp = _post_event(app, client, body)
    again = _post_event(app, client, body)

    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "event_id": "evt_http", "status": "processed"}
    assert again.status_code == 200

    status = client.get(f"/api/orders/{checkout['order_id']}/status").get_json()
    assert status["status"] == "confirmed"
    assert status["payment_status"] == "succeeded"
    assert status["allowed_actions"] == ["cancel", "start_processing"]


def test_webhook_rejections(app, client, db_session, gateway):
    body = event_body("sbx_nope", "success", amount=100)

    bad_sig = client.post("/api/webhooks/payments", data=body, headers={"X-Payment-Signature": "00"})
    assert bad_sig.status_code == 401

    garbage = b"{}"
    assert _post_event(app, client, garbage).status_code == 400

    assert _post_event(app, client, body).status_code == 404


def test_order_transitions_over_http(app, client, make_stock, gateway):
    unit = make_stock(5)
    checkout = client.post("/api/checkout", json=_checkout_body(unit.id)).get_json()
    order_id = checkout["order_id"]
    reference = payment_service.get_intent(checkout["payment_intent_id"]).provider_reference
    _post_event(app, client, event_body(reference, "success", amount=3000))

    assert client.post(f"/api/orders/{order_id}/ship", json={"tracking_number": "1Z"}).status_code == 409
    assert client.post(f"/api/orders/{order_id}/processing").status_code == 200
    assert client.post(f"/api/orders/{order_id}/ship", json={}).status_code == 400

    shipped = client.post(f"/api/orders/{order_id}/ship", json={"tracking_number": "1Z", "carrier": "DHL"})
    assert shipped.status_code == 200
    assert shipped.get_json()["order"]["tracking_number"] == "1Z"

    cancel = client.post(f"/api/orders/{order_id}/cancel")
    assert cancel.status_code == 409
    assert cancel.get_json()["from_status"] == "shipped"

    assert client.post(f"/api/orders/{order_id}/deliver", json={"source": "carrier"}).status_code == 200
    returned = client.post(f"/api/orders/{order_id}/return", json={"reason": "damaged"})
    assert returned.status_code == 200
    assert returned.get_json()["order"]["status"] == "returned"

    balance = client.get("/api/payouts/sellers/4/balance").get_json()
    assert balance["balances"] == {"NGN": 0}
    assert len(balance["entries"]) == 2

    assert client.get("/api/orders/4242").status_code == 404
    assert client.post("/api/orders/4242/cancel").status_code == 404


def test_order_listing_requires_a_party(client, db_session):
    assert client.get("/api/orders").status_code == 400
    assert client.get("/api/orders?buyer_id=7&status=bogus").status_code == 400
    assert client.get("/api/orders?buyer_id=7").get_json() == {"orders": []}


def test_payout_verification_over_http(client, db_session, sent_codes):
    created = client.post("/api/payouts/methods", json={
        "seller_id": 4,
        "method_type": "paypal",
        "account_details": {"email": "seller@example.com"},
    })
    assert created.status_code == 201
    method_id = created.get_json()["payout_method"]["id"]

    sent = client.post(f"/api/payouts/methods/{method_id}/send-code")
    assert sent.status_code == 200

    again = client.post(f"/api/payouts/methods/{method_id}/send-code")
    assert again.status_code == 429
    assert int(again.headers["Retry-After"]) > 0
    assert again.get_json()["retry_after_seconds"] > 0

    code = sent_codes[0].code
    wrong = "000000" if code != "000000" else "111111"
    mismatch = client.post(f"/api/payouts/methods/{method_id}/verify", json={"code": wrong})
    assert mismatch.status_code == 400
    assert mismatch.get_json()["attempts_remaining"] == 2

    ok = client.post(f"/api/payouts/methods/{method_id}/verify", json={"code": code})
    assert ok.status_code == 200
    assert ok.get_json()["payout_method"]["is_verified"] is True

    repeat = client.post(f"/api/payouts/methods/{method_id}/verify", json={"code": code})
    assert repeat.status_code == 200
    assert repeat.get_json()["already_verified"] is True


def test_expired_code_answers_410(client, db_session, sent_codes):
    created = client.post("/api/payouts/methods", json={
        "seller_id": 4,
        "method_type": "paypal",
        "account_details": {"email": "seller@example.com"},
    }).get_json()
    method_id = created["payout_method"]["id"]
    payout_service.send_verification_code(method_id, now=utcnow() - timedelta(minutes=30))

    resp = client.post(f"/api/payouts/methods/{method_id}/verify", json={"code": sent_codes[0].code})

    assert resp.status_code == 410
    assert resp.get_json()["code"] == "expired"


def test_event_feed_cursor(client, make_stock, gateway):
    unit = make_stock(5)
    client.post("/api/checkout", json=_checkout_body(unit.id))

    page = client.get("/api/events?limit=1").get_json()
    assert len(page["events"]) == 1
    cursor = page["next_after_id"]

    rest = client.get(f"/api/events?after_id={cursor}").get_json()
    assert all(ev["id"] > cursor for ev in rest["events"])
    assert rest["events"]

    only_orders = client.get("/api/events?types=order.created").get_json()
    assert [ev["event_type"] for ev in only_orders["events"]] == ["order.created"]

    assert client.get("/api/events?after_id=abc").status_code == 400


def test_inventory_endpoints(client, db_session):
    created = client.post("/api/inventory/stock-units", json={
        "listing_id": "lst_http", "seller_id": 4, "quantity_on_hand": 2,
    })
    assert created.status_code == 201
    unit_id = created.get_json()["stock_unit"]["id"]

    assert client.post(f"/api/inventory/{unit_id}/restock", json={"quantity": 3}).get_json()["on_hand"] == 5
    assert client.post(f"/api/inventory/{unit_id}/restock", json={"quantity": 0}).status_code == 400
    assert client.post(f"/api/inventory/{unit_id}/listing-status", json={"status": "draft"}).status_code == 409
    assert client.get("/api/inventory/9999").status_code == 404
    assert client.get("/api/inventory/reservations/stats").status_code == 200


def test_release_route_only_releases_cart_holds(client, make_stock, gateway):
    unit = make_stock(5)
    order_id = client.post("/api/checkout", json=_checkout_body(unit.id)).get_json()["order_id"]
    order_hold = Reservation.query.filter_by(owner_type="order", owner_id=order_id).one()
    cart_hold = inventory_service.reserve(unit.id, 1, owner_id=55, owner_type="cart")

    refused = client.post(f"/api/inventory/reservations/{order_hold.id}/release")
    released = client.post(f"/api/inventory/reservations/{cart_hold.id}/release")

    assert refused.status_code == 409
    assert "cancel the order" in refused.get_json()["error"]
    assert released.status_code == 200
    assert released.get_json()["reservation"]["status"] == "released"
    assert client.post("/api/inventory/reservations/9999/release").status_code == 404
    assert client.get(f"/api/inventory/{unit.id}").get_json()["reserved"] == 2


def test_cors_headers_for_allowed_origin(client, db_session):
    resp = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"

    other = client.get("/api/health", headers={"Origin": "http://evil.example"})
    assert "Access-Control-Allow-Origin" not in other.headers
