from __future__ import annotations

import enum

from ..extensions import db
from settlement.time_utils import to_utc_z


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    RETURNED = "returned"


class Order(db.Model):
    """
    Order aggregate root.

    status and version are written only by order_service._transition_locked,
    which conditions every write on the status it read (compare-and-swap).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_buyer_status", "buyer_id", "status"),
        db.Index("ix_orders_seller_status", "seller_id", "status"),
        db.UniqueConstraint("buyer_id", "idempotency_key", name="uq_orders_buyer_idempotency"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, nullable=False)
    seller_id = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    idempotency_key = db.Column(db.String(128), nullable=True)

    total_minor_units = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    # Current payment attempt (plain column; payment_intents references orders)
    payment_intent_id = db.Column(db.Integer, nullable=True)

    tracking_number = db.Column(db.String(128), nullable=True)
    carrier = db.Column(db.String(64), nullable=True)
    cancel_reason = db.Column(db.String(64), nullable=True)
    return_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship("OrderLine", backref="order", lazy=True, order_by="OrderLine.id")

    @property
    def reservation_ids(self) -> list[int]:
        from .inventory import Reservation

        rows = (
            db.session.query(Reservation.id)
            .filter_by(owner_type="order", owner_id=self.id)
            .order_by(Reservation.id)
            .all()
        )
        return [row.id for row in rows]

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "status": self.status,
            "version": self.version,
            "total_minor_units": self.total_minor_units,
            "currency": self.currency,
            "payment_intent_id": self.payment_intent_id,
            "reservation_ids": self.reservation_ids,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "cancel_reason": self.cancel_reason,
            "return_reason": self.return_reason,
            "lines": [line.to_dict() for line in self.lines],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "returned_at": to_utc_z(self.returned_at),
        }


class OrderLine(db.Model):
    """Individual line items on an order."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    stock_unit_id = db.Column(db.Integer, db.ForeignKey("stock_units.id"), nullable=False)
    listing_id = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_minor_units = db.Column(db.Integer, nullable=False)
    line_total_minor_units = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "stock_unit_id": self.stock_unit_id,
            "listing_id": self.listing_id,
            "quantity": self.quantity,
            "unit_price_minor_units": self.unit_price_minor_units,
            "line_total_minor_units": self.line_total_minor_units,
        }
