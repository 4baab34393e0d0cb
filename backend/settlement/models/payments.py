from __future__ import annotations

import enum

from ..extensions import db
from settlement.time_utils import to_utc_z


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"
    WALLET = "wallet"


class PaymentIntentStatus(str, enum.Enum):
    CREATED = "created"
    PENDING_CONFIRMATION = "pending_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


NON_TERMINAL_INTENT_STATUSES = (
    PaymentIntentStatus.CREATED.value,
    PaymentIntentStatus.PENDING_CONFIRMATION.value,
)


class PaymentIntent(db.Model):
    """
    One attempt to collect funds for an order.

    A failed intent is never revived; a retry creates a new row. The partial
    unique index keeps at most one non-terminal intent per order.
    """
    __tablename__ = "payment_intents"
    __table_args__ = (
        db.UniqueConstraint("order_id", "idempotency_key", name="uq_payment_intents_order_idempotency"),
        db.Index(
            "uq_payment_intents_one_active_per_order",
            "order_id",
            unique=True,
            sqlite_where=db.text("status IN ('created', 'pending_confirmation')"),
            postgresql_where=db.text("status IN ('created', 'pending_confirmation')"),
        ),
        db.CheckConstraint("amount_minor_units > 0", name="ck_payment_intents_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount_minor_units = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(24), nullable=False, default=PaymentIntentStatus.CREATED.value, index=True)

    idempotency_key = db.Column(db.String(128), nullable=False)
    provider_reference = db.Column(db.String(128), nullable=True, unique=True)
    redirect_url = db.Column(db.String(512), nullable=True)
    transaction_id = db.Column(db.String(128), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    succeeded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    order = db.relationship("Order", foreign_keys=[order_id])

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_INTENT_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "idempotency_key": self.idempotency_key,
            "provider_reference": self.provider_reference,
            "redirect_url": self.redirect_url,
            "transaction_id": self.transaction_id,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "succeeded_at": to_utc_z(self.succeeded_at),
            "failed_at": to_utc_z(self.failed_at),
            "refunded_at": to_utc_z(self.refunded_at),
        }


class ProviderEvent(db.Model):
    """
    Inbound payment provider event, stored before it is applied.

    provider_event_id is the dedupe key: a row in status 'processed' or
    'ignored' short-circuits redelivery; 'failed' rows may be replayed.
    """
    __tablename__ = "provider_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    provider_event_id = db.Column(db.String(128), nullable=False, unique=True)
    provider_reference = db.Column(db.String(128), nullable=True, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    source = db.Column(db.String(16), nullable=False, default="webhook")

    status = db.Column(db.String(16), nullable=False, default="received", index=True)
    payment_intent_id = db.Column(db.Integer, db.ForeignKey("payment_intents.id"), nullable=True, index=True)
    raw_payload = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider_event_id": self.provider_event_id,
            "provider_reference": self.provider_reference,
            "event_type": self.event_type,
            "source": self.source,
            "status": self.status,
            "payment_intent_id": self.payment_intent_id,
            "error": self.error,
            "attempts": self.attempts,
            "received_at": to_utc_z(self.received_at),
            "processed_at": to_utc_z(self.processed_at),
        }
