"""
Pytest fixtures for settlement backend tests.

Provides the test app (in-memory SQLite, sandbox payment provider), a clean
database per test, and small builders for stock, checkouts and signed
provider events.
"""

import json
import uuid

import pytest

from settlement import create_app
from settlement.extensions import db
from settlement.services import checkout_service, inventory_service, payment_service
from settlement.services.notification_service import SENDER_EXTENSION_KEY, register_code_sender
from settlement.services.payment_gateway import GATEWAY_EXTENSION_KEY, compute_signature, get_gateway
from settlement.validation import OrderDraft


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PAYMENT_PROVIDER': 'sandbox',
    'PAYMENT_WEBHOOK_SECRET': 'test-webhook-secret',
    'VERIFICATION_BCRYPT_ROUNDS': 4,
    'RESERVATION_TTL_MINUTES': 15,
    'ORDER_ABANDON_GRACE_MINUTES': 15,
    'VERIFICATION_CODE_TTL_MINUTES': 10,
    'VERIFICATION_RESEND_COOLDOWN_SECONDS': 120,
    'VERIFICATION_MAX_ATTEMPTS': 3,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app, db_session):
    """Fresh sandbox gateway for each test."""
    app.extensions.pop(GATEWAY_EXTENSION_KEY, None)
    yield get_gateway()
    app.extensions.pop(GATEWAY_EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def sent_codes(app):
    """Capture verification codes instead of delivering them."""
    outbox = []
    register_code_sender(app, outbox.append)
    yield outbox
    app.extensions.pop(SENDER_EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def make_stock(db_session):
    def _make(quantity=5, *, seller_id=4, listing_id=None, variant=None):
        return inventory_service.create_stock_unit(
            listing_id=listing_id or f"lst_{uuid.uuid4().hex[:8]}",
            seller_id=seller_id,
            quantity_on_hand=quantity,
            variant=variant,
        )
    return _make


@pytest.fixture(scope='function')
def place_order(db_session, gateway):
    """Run a checkout; lines are (stock_unit_id, quantity, unit_price) tuples."""
    def _place(lines, *, buyer_id=7, key=None, currency="NGN", method="card"):
        draft = OrderDraft.from_payload({
            "buyer_id": buyer_id,
            "currency": currency,
            "payment_method": method,
            "idempotency_key": key or uuid.uuid4().hex,
            "lines": [
                {"stock_unit_id": unit_id, "quantity": qty, "unit_price_minor_units": price}
                for unit_id, qty, price in lines
            ],
        })
        return checkout_service.checkout(draft)
    return _place


def event_body(reference, status, *, event_id=None, amount=None, transaction_id=None) -> bytes:
    """Provider webhook body in wire shape."""
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "event": "payment.updated",
        "data": {
            "reference": reference,
            "status": status,
            "amount": amount,
            "transaction_id": transaction_id,
        },
    }).encode("utf-8")


def sign(app, body: bytes) -> str:
    return compute_signature(body, app.config["PAYMENT_WEBHOOK_SECRET"])


@pytest.fixture(scope='function')
def deliver(app, gateway):
    """Sign and apply a provider event through the webhook service path."""
    def _deliver(reference, status, **kwargs):
        body = event_body(reference, status, **kwargs)
        return payment_service.apply_provider_event(body, sign(app, body))
    return _deliver


@pytest.fixture(scope='function')
def paid_order(make_stock, place_order, deliver):
    """A confirmed order for 2 units at 1500 each, with its stock unit."""
    unit = make_stock(5)
    unit_id = unit.id
    result = place_order([(unit_id, 2, 1500)])
    intent = payment_service.get_intent(result["payment_intent_id"])
    deliver(intent.provider_reference, "success", amount=3000, transaction_id="txn_paid")
    return {"order_id": result["order_id"], "stock_unit_id": unit_id, "intent_id": intent.id}
