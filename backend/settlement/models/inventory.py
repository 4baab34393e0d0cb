from __future__ import annotations

import enum

from ..extensions import db
from settlement.time_utils import to_utc_z


class ListingStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class ReservationStatus(str, enum.Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class StockUnit(db.Model):
    """
    A purchasable listing/variant with trackable quantity.

    quantity_on_hand and quantity_reserved are only ever changed through
    conditional UPDATE statements in inventory_service; order and payment
    code never assign them.
    """
    __tablename__ = "stock_units"
    __table_args__ = (
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_stock_units_on_hand_nonneg"),
        db.CheckConstraint("quantity_reserved >= 0", name="ck_stock_units_reserved_nonneg"),
        db.CheckConstraint("quantity_reserved <= quantity_on_hand", name="ck_stock_units_reserved_le_on_hand"),
        db.UniqueConstraint("listing_id", "variant", name="uq_stock_units_listing_variant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.String(64), nullable=False, index=True)
    variant = db.Column(db.String(64), nullable=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)

    listing_status = db.Column(db.String(16), nullable=False, default=ListingStatus.APPROVED.value, index=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    quantity_reserved = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def available(self) -> int:
        return self.quantity_on_hand - self.quantity_reserved

    def __repr__(self) -> str:
        return f"<StockUnit id={self.id} listing={self.listing_id!r} variant={self.variant!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "variant": self.variant,
            "seller_id": self.seller_id,
            "listing_status": self.listing_status,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_reserved": self.quantity_reserved,
            "available": self.available,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Reservation(db.Model):
    """
    A buyer's temporary hold on N units of a stock unit.

    Lifecycle:
        held -> confirmed   (payment cleared, stock permanently decremented)
        held -> released    (order canceled / payment failed)
        held -> expired     (sweeper, expires_at passed)
        expired -> confirmed (late payment reclaims stock if still available)
    """
    __tablename__ = "reservations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        # Only one live hold per owner and stock unit
        db.Index(
            "uq_reservations_one_held_per_owner",
            "owner_type",
            "owner_id",
            "stock_unit_id",
            unique=True,
            sqlite_where=db.text("status = 'held'"),
            postgresql_where=db.text("status = 'held'"),
        ),
        db.Index("ix_reservations_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_unit_id = db.Column(db.Integer, db.ForeignKey("stock_units.id"), nullable=False, index=True)
    owner_type = db.Column(db.String(16), nullable=False, default="order")
    owner_id = db.Column(db.Integer, nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ReservationStatus.HELD.value)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    release_reason = db.Column(db.String(64), nullable=True)

    stock_unit = db.relationship("StockUnit")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_unit_id": self.stock_unit_id,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "quantity": self.quantity,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "released_at": to_utc_z(self.released_at),
            "release_reason": self.release_reason,
        }
