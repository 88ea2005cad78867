"""ledger_sync_tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ARRAY, UUID

revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── financial_accounts ─────────────────────────────────────────────────────
    op.create_table(
        "financial_accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("institution_name", sa.String(255), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("current_balance", sa.Numeric(15, 2), server_default="0", nullable=False),
        sa.Column("currency_code", sa.String(3), server_default="GBP", nullable=False),
        sa.Column("provider_connection_id", sa.String(255), nullable=True),
        sa.Column("provider_account_id", sa.String(255), nullable=True, unique=True),
        sa.Column("encrypted_access_token", sa.Text, nullable=True),
        sa.Column("connection_status", sa.String(20), server_default="active", nullable=False),
        sa.Column("is_manual", sa.Boolean, server_default=sa.text("false"), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_financial_accounts_owner_user_id", "financial_accounts", ["owner_user_id"]
    )

    # ── transactions ───────────────────────────────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("financial_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency_code", sa.String(3), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("category", sa.String(100), server_default="Uncategorized", nullable=False),
        sa.Column("manual_override", sa.Boolean, server_default=sa.text("false"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "account_id", "external_transaction_id", name="uq_transactions_account_external"
        ),
    )
    op.create_index("ix_transactions_account_id", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_external_transaction_id", "transactions", ["external_transaction_id"]
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])

    # ── account_balance_history ────────────────────────────────────────────────
    op.create_table(
        "account_balance_history",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("financial_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("balance", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency_code", sa.String(3), nullable=False),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_account_balance_history_account_id", "account_balance_history", ["account_id"]
    )

    # ── data_sync_logs ─────────────────────────────────────────────────────────
    op.create_table(
        "data_sync_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("financial_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="in_progress", nullable=False),
        sa.Column("transactions_processed", sa.Integer, server_default="0", nullable=False),
        sa.Column("duplicates_found", sa.Integer, server_default="0", nullable=False),
        sa.Column("errors_encountered", ARRAY(sa.String), server_default="{}", nullable=False),
        sa.Column("error_kind", sa.String(40), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_data_sync_logs_account_id", "data_sync_logs", ["account_id"])

    # ── transaction_processing_metadata ────────────────────────────────────────
    op.create_table(
        "transaction_processing_metadata",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "transaction_id",
            UUID(as_uuid=True),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("duplicate_cluster_id", sa.String(64), nullable=True),
        sa.Column("processing_status", sa.String(20), nullable=False),
        sa.Column(
            "sync_log_id",
            UUID(as_uuid=True),
            sa.ForeignKey("data_sync_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_transaction_processing_metadata_transaction_id",
        "transaction_processing_metadata",
        ["transaction_id"],
    )
    op.create_index(
        "ix_transaction_processing_metadata_fingerprint",
        "transaction_processing_metadata",
        ["fingerprint"],
    )
    op.create_index(
        "ix_transaction_processing_metadata_duplicate_cluster_id",
        "transaction_processing_metadata",
        ["duplicate_cluster_id"],
    )


def downgrade() -> None:
    op.drop_table("transaction_processing_metadata")
    op.drop_table("data_sync_logs")
    op.drop_table("account_balance_history")
    op.drop_table("transactions")
    op.drop_table("financial_accounts")
