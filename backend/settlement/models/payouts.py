from __future__ import annotations

import enum

from ..extensions import db
from settlement.time_utils import to_utc_z


class PayoutMethodType(str, enum.Enum):
    BANK = "bank"
    PAYPAL = "paypal"
    WISE = "wise"
    MOBILE_MONEY = "mobile_money"
    CRYPTO = "crypto"


class VerificationState(str, enum.Enum):
    UNVERIFIED = "unverified"
    CODE_SENT = "code_sent"
    VERIFIED = "verified"


class PayoutMethod(db.Model):
    """
    A seller's payout destination.

    Only the bcrypt hash of the live verification code is stored. Issuing a
    new code overwrites the hash, so earlier codes stop matching.
    """
    __tablename__ = "payout_methods"
    __table_args__ = (
        db.Index(
            "uq_payout_methods_one_default_per_seller",
            "seller_id",
            unique=True,
            sqlite_where=db.text("is_default = 1"),
            postgresql_where=db.text("is_default"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)
    method_type = db.Column(db.String(16), nullable=False)
    account_details = db.Column(db.JSON, nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)

    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verification_state = db.Column(db.String(16), nullable=False, default=VerificationState.UNVERIFIED.value)

    verification_code_hash = db.Column(db.String(128), nullable=True)
    verification_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_attempts = db.Column(db.Integer, nullable=False, default=0)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def masked_details(self) -> dict:
        masked = {}
        for key, value in (self.account_details or {}).items():
            if key in ("account_number", "wallet_address", "phone_number") and isinstance(value, str):
                masked[key] = f"****{value[-4:]}"
            else:
                masked[key] = value
        return masked

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "method_type": self.method_type,
            "account_details": self.masked_details(),
            "contact_email": self.contact_email,
            "is_default": self.is_default,
            "is_verified": self.is_verified,
            "verification_state": self.verification_state,
            "verification_expires_at": to_utc_z(self.verification_expires_at),
            "verified_at": to_utc_z(self.verified_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PayoutEntry(db.Model):
    """
    Seller balance movement. Delivery credits the order total, an approved
    return debits it. One entry per (order, entry_type).
    """
    __tablename__ = "payout_entries"
    __table_args__ = (
        db.UniqueConstraint("order_id", "entry_type", name="uq_payout_entries_order_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    entry_type = db.Column(db.String(16), nullable=False)
    amount_minor_units = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "order_id": self.order_id,
            "entry_type": self.entry_type,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
            "created_at": to_utc_z(self.created_at),
        }
