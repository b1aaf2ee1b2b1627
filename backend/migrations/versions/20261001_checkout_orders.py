"""checkout orders, items, notification outbox and staff users

Revision ID: 20261001_checkout_orders
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_checkout_orders"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=150), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="sales"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)

    op.create_table(
        "checkout_order",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(length=40), nullable=False),
        sa.Column("primary_name", sa.String(length=100), nullable=False),
        sa.Column("primary_email", sa.String(length=255), nullable=False),
        sa.Column("primary_phone", sa.String(length=12), nullable=False),
        sa.Column("primary_job_title", sa.String(length=50), nullable=False),
        sa.Column("facility_name", sa.String(length=150), nullable=False),
        sa.Column("facility_type", sa.String(length=40), nullable=False),
        sa.Column("facility_address", sa.String(length=200), nullable=False),
        sa.Column("facility_city", sa.String(length=50), nullable=False),
        sa.Column("facility_county", sa.String(length=50), nullable=False),
        sa.Column("facility_postal_code", sa.String(length=20), nullable=True),
        sa.Column("facility_latitude", sa.Float(), nullable=True),
        sa.Column("facility_longitude", sa.Float(), nullable=True),
        sa.Column("alt_name", sa.String(length=100), nullable=False),
        sa.Column("alt_email", sa.String(length=255), nullable=False),
        sa.Column("alt_phone", sa.String(length=12), nullable=False),
        sa.Column("alt_relationship", sa.String(length=50), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="KES"),
        sa.Column("payment_method", sa.String(length=20), nullable=False, server_default="mpesa"),
        sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("order_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("mpesa_checkout_request_id", sa.String(length=64), nullable=True),
        sa.Column("mpesa_merchant_request_id", sa.String(length=64), nullable=True),
        sa.Column("mpesa_phone_number", sa.String(length=12), nullable=True),
        sa.Column("mpesa_initiated_at", sa.DateTime(), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(length=32), nullable=True),
        sa.Column("mpesa_transaction_date", sa.DateTime(), nullable=True),
        sa.Column("mpesa_paid_phone_number", sa.String(length=15), nullable=True),
        sa.Column("mpesa_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("mpesa_result_desc", sa.String(length=255), nullable=True),
        sa.Column("receipt_number", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number"),
    )
    op.create_index("ix_checkout_order_order_number", "checkout_order", ["order_number"], unique=True)
    op.create_index(
        "ix_checkout_order_mpesa_checkout_request_id",
        "checkout_order",
        ["mpesa_checkout_request_id"],
        unique=True,
    )
    op.create_index("ix_checkout_order_primary_email", "checkout_order", ["primary_email"])
    op.create_index("ix_checkout_order_alt_email", "checkout_order", ["alt_email"])
    op.create_index("ix_checkout_order_payment_status", "checkout_order", ["payment_status"])
    op.create_index("ix_checkout_order_order_status", "checkout_order", ["order_status"])

    op.create_table(
        "checkout_order_item",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consumable_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("specifications", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["checkout_order.id"],
            name="fk_checkout_order_item_order",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_checkout_order_item_order_id", "checkout_order_item", ["order_id"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["checkout_order.id"],
            name="fk_notification_outbox_order",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_outbox_order_id", "notification_outbox", ["order_id"])
    op.create_index("ix_notification_outbox_status", "notification_outbox", ["status"])


def downgrade():
    op.drop_index("ix_notification_outbox_status", table_name="notification_outbox")
    op.drop_index("ix_notification_outbox_order_id", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("ix_checkout_order_item_order_id", table_name="checkout_order_item")
    op.drop_table("checkout_order_item")
    for name in (
        "ix_checkout_order_order_status",
        "ix_checkout_order_payment_status",
        "ix_checkout_order_alt_email",
        "ix_checkout_order_primary_email",
        "ix_checkout_order_mpesa_checkout_request_id",
        "ix_checkout_order_order_number",
    ):
        op.drop_index(name, table_name="checkout_order")
    op.drop_table("checkout_order")
    op.drop_index("ix_user_email", table_name="user")
    op.drop_table("user")
