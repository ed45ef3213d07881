"""orderflow baseline: orders, ledger, wallets and runtime primitives

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

from datetime import datetime

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3c1f0a9d2b7e"
down_revision = None
branch_labels = None
depends_on = None


def _money(precision: int = 12):
    return sa.Numeric(precision, 2)


def upgrade():
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="offline"),
        sa.Column("last_activity_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_drivers_phone", "drivers", ["phone"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("customer_phone", sa.String(length=32), nullable=True),
        sa.Column("delivery_address", sa.String(length=255), nullable=True),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_type", sa.String(length=24), nullable=False, server_default="pay_now"),
        sa.Column("payment_method", sa.String(length=24), nullable=True),
        sa.Column("payment_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("total_amount", _money(), nullable=False, server_default="0"),
        sa.Column("tip_amount", _money(), nullable=False, server_default="0"),
        sa.Column("is_pos", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("driver_accepted", sa.Boolean(), nullable=True),
        sa.Column("driver_pay_credited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("driver_pay_credited_at", sa.DateTime(), nullable=True),
        sa.Column("driver_pay_amount", _money(), nullable=False, server_default="0"),
        sa.Column("financial_snapshot_json", sa.Text(), nullable=True),
        sa.Column("inventory_decremented_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_orders_branch_id", "orders", ["branch_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_driver_id", "orders", ["driver_id"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price", _money(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_sku", "order_items", ["sku"])

    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )
    op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])

    op.create_table(
        "driver_wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("drivers.id"), nullable=False),
        sa.Column("balance", _money(), nullable=False, server_default="0"),
        sa.Column("total_tips_received", _money(), nullable=False, server_default="0"),
        sa.Column("total_tips_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_delivery_pay", _money(), nullable=False, server_default="0"),
        sa.Column("total_delivery_pay_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_driver_wallets_driver_id", "driver_wallets", ["driver_id"], unique=True)

    op.create_table(
        "admin_wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("singleton_key", sa.String(length=16), nullable=False, server_default="merchant"),
        sa.Column("balance", _money(14), nullable=False, server_default="0"),
        sa.Column("total_revenue", _money(14), nullable=False, server_default="0"),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admin_wallets_singleton_key", "admin_wallets", ["singleton_key"], unique=True)
    admin_wallets = sa.table(
        "admin_wallets",
        sa.column("singleton_key", sa.String),
        sa.column("created_at", sa.DateTime),
        sa.column("updated_at", sa.DateTime),
    )
    seeded_at = datetime.utcnow()
    op.bulk_insert(admin_wallets, [{"singleton_key": "merchant", "created_at": seeded_at, "updated_at": seeded_at}])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("driver_wallet_id", sa.Integer(), sa.ForeignKey("driver_wallets.id"), nullable=True),
        sa.Column("transaction_type", sa.String(length=32), nullable=False, server_default="payment"),
        sa.Column("payment_method", sa.String(length=24), nullable=False, server_default="system"),
        sa.Column("payment_provider", sa.String(length=64), nullable=True),
        sa.Column("amount", _money(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("receipt_number", sa.String(length=64), nullable=True),
        sa.Column("checkout_request_id", sa.String(length=128), nullable=True),
        sa.Column("merchant_request_id", sa.String(length=128), nullable=True),
        sa.Column("conversation_id", sa.String(length=128), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("transaction_date", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transactions_order_id", "transactions", ["order_id"])
    op.create_index("ix_transactions_driver_id", "transactions", ["driver_id"])
    op.create_index("ix_transactions_driver_wallet_id", "transactions", ["driver_wallet_id"])
    op.create_index("ix_transactions_transaction_type", "transactions", ["transaction_type"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_checkout_request_id", "transactions", ["checkout_request_id"])
    op.create_index("ix_transactions_conversation_id", "transactions", ["conversation_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    op.create_index("ix_transactions_order_type_driver", "transactions", ["order_id", "transaction_type", "driver_id"])

    op.create_table(
        "settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=96), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_settings_key", "settings", ["key"], unique=True)

    op.create_table(
        "stock_levels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_stock_levels_sku", "stock_levels", ["sku"], unique=True)

    op.create_table(
        "platform_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("subject_type", sa.String(length=80), nullable=True),
        sa.Column("subject_id", sa.String(length=120), nullable=True),
        sa.Column("request_id", sa.String(length=80), nullable=True),
        sa.Column("idempotency_key", sa.String(length=180), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )
    op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
    op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
    op.create_index("ix_platform_events_actor_id", "platform_events", ["actor_id"])
    op.create_index("ix_platform_events_order_id", "platform_events", ["order_id"])
    op.create_index("ix_platform_events_request_id", "platform_events", ["request_id"])
    op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)
    op.create_index("ix_platform_events_severity", "platform_events", ["severity"])

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
    op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])
    op.create_index("ix_job_runs_ok", "job_runs", ["ok"])

    op.create_table(
        "idempotency_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("response_json", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )
    op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="mpesa"),
        sa.Column("kind", sa.String(length=32), nullable=False, server_default="stk"),
        sa.Column("event_id", sa.String(length=160), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("request_id", sa.String(length=80), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )
    op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"])

    op.create_table(
        "reconciliation_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("scope", sa.String(length=64), nullable=False, server_default="wallet_ledger"),
        sa.Column("wallet_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary_json", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def downgrade():
    for table in (
        "reconciliation_reports",
        "webhook_events",
        "idempotency_keys",
        "job_runs",
        "platform_events",
        "stock_levels",
        "settings",
        "transactions",
        "admin_wallets",
        "driver_wallets",
        "order_transitions",
        "order_items",
        "orders",
        "drivers",
    ):
        op.drop_table(table)
