"""Order settlement schema: stock, reservations, orders, payments, payouts, events

Revision ID: 20261017_settlement
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_settlement"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "stock_units",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("variant", sa.String(64), nullable=True),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("listing_status", sa.String(16), nullable=False, server_default="approved"),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("quantity_on_hand >= 0", name="ck_stock_units_on_hand_nonneg"),
        sa.CheckConstraint("quantity_reserved >= 0", name="ck_stock_units_reserved_nonneg"),
        sa.CheckConstraint("quantity_reserved <= quantity_on_hand", name="ck_stock_units_reserved_le_on_hand"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("listing_id", "variant", name="uq_stock_units_listing_variant"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("stock_units", schema=None) as batch_op:
        batch_op.create_index("ix_stock_units_listing_id", ["listing_id"], unique=False)
        batch_op.create_index("ix_stock_units_seller_id", ["seller_id"], unique=False)
        batch_op.create_index("ix_stock_units_listing_status", ["listing_status"], unique=False)

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("stock_unit_id", sa.Integer(), nullable=False),
        sa.Column("owner_type", sa.String(16), nullable=False, server_default="order"),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="held"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_reason", sa.String(64), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        sa.ForeignKeyConstraint(["stock_unit_id"], ["stock_units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("reservations", schema=None) as batch_op:
        batch_op.create_index("ix_reservations_stock_unit_id", ["stock_unit_id"], unique=False)
        batch_op.create_index("ix_reservations_owner_id", ["owner_id"], unique=False)
        batch_op.create_index("ix_reservations_status_expires", ["status", "expires_at"], unique=False)

    op.create_index(
        "uq_reservations_one_held_per_owner",
        "reservations",
        ["owner_type", "owner_id", "stock_unit_id"],
        unique=True,
        sqlite_where=sa.text("status = 'held'"),
        postgresql_where=sa.text("status = 'held'"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("total_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_intent_id", sa.Integer(), nullable=True),
        sa.Column("tracking_number", sa.String(128), nullable=True),
        sa.Column("carrier", sa.String(64), nullable=True),
        sa.Column("cancel_reason", sa.String(64), nullable=True),
        sa.Column("return_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("buyer_id", "idempotency_key", name="uq_orders_buyer_idempotency"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_buyer_status", ["buyer_id", "status"], unique=False)
        batch_op.create_index("ix_orders_seller_status", ["seller_id", "status"], unique=False)

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("stock_unit_id", sa.Integer(), nullable=False),
        sa.Column("listing_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_minor_units", sa.Integer(), nullable=False),
        sa.Column("line_total_minor_units", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["stock_unit_id"], ["stock_units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_lines_order_id", ["order_id"], unique=False)

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("amount_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("method", sa.String(16), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="created"),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("provider_reference", sa.String(128), nullable=True),
        sa.Column("redirect_url", sa.String(512), nullable=True),
        sa.Column("transaction_id", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("succeeded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_minor_units > 0", name="ck_payment_intents_amount_positive"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_payment_intents_order_idempotency"),
        sa.UniqueConstraint("provider_reference", name="uq_payment_intents_provider_reference"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("payment_intents", schema=None) as batch_op:
        batch_op.create_index("ix_payment_intents_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_payment_intents_status", ["status"], unique=False)

    op.create_index(
        "uq_payment_intents_one_active_per_order",
        "payment_intents",
        ["order_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('created', 'pending_confirmation')"),
        postgresql_where=sa.text("status IN ('created', 'pending_confirmation')"),
    )

    op.create_table(
        "provider_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider_event_id", sa.String(128), nullable=False),
        sa.Column("provider_reference", sa.String(128), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("source", sa.String(16), nullable=False, server_default="webhook"),
        sa.Column("status", sa.String(16), nullable=False, server_default="received"),
        sa.Column("payment_intent_id", sa.Integer(), nullable=True),
        sa.Column("raw_payload", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["payment_intent_id"], ["payment_intents.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_event_id", name="uq_provider_events_provider_event_id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("provider_events", schema=None) as batch_op:
        batch_op.create_index("ix_provider_events_provider_reference", ["provider_reference"], unique=False)
        batch_op.create_index("ix_provider_events_status", ["status"], unique=False)
        batch_op.create_index("ix_provider_events_payment_intent_id", ["payment_intent_id"], unique=False)

    op.create_table(
        "payout_methods",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("method_type", sa.String(16), nullable=False),
        sa.Column("account_details", sa.JSON(), nullable=False),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("verification_state", sa.String(16), nullable=False, server_default="unverified"),
        sa.Column("verification_code_hash", sa.String(128), nullable=True),
        sa.Column("verification_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("payout_methods", schema=None) as batch_op:
        batch_op.create_index("ix_payout_methods_seller_id", ["seller_id"], unique=False)

    op.create_index(
        "uq_payout_methods_one_default_per_seller",
        "payout_methods",
        ["seller_id"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "payout_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(16), nullable=False),
        sa.Column("amount_minor_units", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "entry_type", name="uq_payout_entries_order_type"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("payout_entries", schema=None) as batch_op:
        batch_op.create_index("ix_payout_entries_seller_id", ["seller_id"], unique=False)

    op.create_table(
        "domain_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("domain_events", schema=None) as batch_op:
        batch_op.create_index("ix_domain_events_event_type", ["event_type"], unique=False)
        batch_op.create_index("ix_domain_events_entity", ["entity_type", "entity_id"], unique=False)


def downgrade():
    op.drop_table("domain_events")
    op.drop_table("payout_entries")
    op.drop_index("uq_payout_methods_one_default_per_seller", table_name="payout_methods")
    op.drop_table("payout_methods")
    op.drop_table("provider_events")
    op.drop_index("uq_payment_intents_one_active_per_order", table_name="payment_intents")
    op.drop_table("payment_intents")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_index("uq_reservations_one_held_per_owner", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("stock_units")
