"""Orders mirror v1: orders table keyed by payment_id

Revision ID: orders_mirror_v1
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = "orders_mirror_v1"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=True),
        sa.Column("patient_id", sa.String(100), nullable=True),
        sa.Column("order_id", sa.String(255), nullable=True),
        sa.Column("product_code", sa.String(100), nullable=True),
        sa.Column("product_name", sa.String(1000), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("payment_status", sa.String(50), nullable=False, server_default="COMPLETED"),
        sa.Column("refund_status", sa.String(50), nullable=True),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("shipping_name", sa.String(255), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("address", sa.String(1000), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("shipping_status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("shipping_date", sa.DateTime(), nullable=True),
        sa.Column("tracking_number", sa.String(100), nullable=True),
        sa.Column("carrier", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_orders_patient_id", "orders", ["patient_id"])
    op.create_index("idx_orders_payment_status", "orders", ["payment_status"])
    op.create_index("idx_orders_tenant_patient", "orders", ["tenant_id", "patient_id"])


def downgrade() -> None:
    op.drop_index("idx_orders_tenant_patient", table_name="orders")
    op.drop_index("idx_orders_payment_status", table_name="orders")
    op.drop_index("ix_orders_patient_id", table_name="orders")
    op.drop_table("orders")
