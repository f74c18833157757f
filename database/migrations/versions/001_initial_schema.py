"""Initial checkout schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the tables owned by the checkout engine. ``organizations``,
``campaigns`` and ``photos`` belong to the catalog service and are only
read here.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create purchases table
    op.create_table(
        "purchases",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("photo_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("photographer_id", sa.String(length=64), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=20), nullable=True),
        sa.Column("reference_kind", sa.String(length=10), nullable=True),
        sa.Column("reference_token", sa.String(length=64), nullable=True),
        sa.Column("gateway_payment_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_purchase_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_purchase_status",
        ),
        sa.CheckConstraint(
            "reference_kind IS NULL OR reference_kind IN ('single', 'batch')",
            name="valid_reference_kind",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_purchases_status_created", "purchases", ["status", "created_at"], unique=False)
    op.create_index(op.f("ix_purchases_buyer_id"), "purchases", ["buyer_id"], unique=False)
    op.create_index(op.f("ix_purchases_created_at"), "purchases", ["created_at"], unique=False)
    op.create_index(
        op.f("ix_purchases_gateway_payment_id"), "purchases", ["gateway_payment_id"], unique=False
    )
    op.create_index(op.f("ix_purchases_photo_id"), "purchases", ["photo_id"], unique=False)
    op.create_index(
        op.f("ix_purchases_reference_token"), "purchases", ["reference_token"], unique=False
    )
    # Pending rows are what the sweeper scans
    op.create_index(
        "idx_purchases_pending_created",
        "purchases",
        ["created_at"],
        unique=False,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Create revenue_shares table
    op.create_table(
        "revenue_shares",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("purchase_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("photographer_id", sa.String(length=64), nullable=True),
        sa.Column("total_amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("platform_amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("organization_amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("photographer_amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("platform_percentage", sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column("organization_percentage", sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column("photographer_percentage", sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("photographer_amount >= 0", name="non_negative_photographer_amount"),
        sa.ForeignKeyConstraint(["purchase_id"], ["purchases.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("purchase_id"),
    )

    # Create webhook_logs table
    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=True),
        sa.Column("request_body", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_webhook_logs_created_at"), "webhook_logs", ["created_at"], unique=False)
    op.create_index(op.f("ix_webhook_logs_payment_id"), "webhook_logs", ["payment_id"], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_webhook_logs_payment_id"), table_name="webhook_logs")
    op.drop_index(op.f("ix_webhook_logs_created_at"), table_name="webhook_logs")
    op.drop_table("webhook_logs")
    op.drop_table("revenue_shares")
    op.drop_index(
        "idx_purchases_pending_created",
        table_name="purchases",
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.drop_index(op.f("ix_purchases_reference_token"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_photo_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_gateway_payment_id"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_created_at"), table_name="purchases")
    op.drop_index(op.f("ix_purchases_buyer_id"), table_name="purchases")
    op.drop_index("idx_purchases_status_created", table_name="purchases")
    op.drop_table("purchases")
