"""create renewal ledger tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "renewal_ledger",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=False),
        sa.Column("term_end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="planned"),
        sa.Column("created_source", sa.String(length=16), nullable=False, server_default="auto"),
        sa.Column("source_deal_id", sa.String(length=64), nullable=True),
        sa.Column("created_deal_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "term_end_date", name="uq_renewal_ledger_key"),
        sa.CheckConstraint(
            "status IN ('planned', 'processing', 'created', 'error')",
            name="ck_renewal_ledger_status",
        ),
    )
    op.create_index(
        "ix_renewal_ledger_status_term",
        "renewal_ledger",
        ["status", "term_end_date", "subscription_id"],
    )
    op.create_index("ix_renewal_ledger_source_deal", "renewal_ledger", ["source_deal_id"])

    op.create_table(
        "renewal_snapshot",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=False),
        sa.Column("term_end_date", sa.Date(), nullable=False),
        sa.Column("charges_json", sa.JSON(), nullable=False),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "term_end_date", name="uq_renewal_snapshot_key"),
    )

    op.create_table(
        "billing_subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=False),
        sa.Column("account_number", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("effective_start_date", sa.Date(), nullable=True),
        sa.Column("effective_end_date", sa.Date(), nullable=True),
        sa.Column("cancellation_date", sa.Date(), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id"),
    )
    op.create_index("ix_billing_subscription_account", "billing_subscription", ["account_number"])
    op.create_index("ix_billing_subscription_end", "billing_subscription", ["status", "effective_end_date"])

    op.create_table(
        "automation_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("function_name", sa.String(length=64), nullable=False),
        sa.Column("trigger_source", sa.String(length=16), nullable=False),
        sa.Column("run_mode", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("source_deal_id", sa.String(length=64), nullable=True),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_run_function_started", "automation_run", ["function_name", "started_at"])

    op.create_table(
        "automation_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("run_id", sa.Uuid(), nullable=True),
        sa.Column("function_name", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("term_end_date", sa.Date(), nullable=True),
        sa.Column("source_deal_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["automation_run.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_event_run", "automation_event", ["run_id"])


def downgrade() -> None:
    op.drop_index("ix_automation_event_run", table_name="automation_event")
    op.drop_table("automation_event")
    op.drop_index("ix_automation_run_function_started", table_name="automation_run")
    op.drop_table("automation_run")
    op.drop_index("ix_billing_subscription_end", table_name="billing_subscription")
    op.drop_index("ix_billing_subscription_account", table_name="billing_subscription")
    op.drop_table("billing_subscription")
    op.drop_table("renewal_snapshot")
    op.drop_index("ix_renewal_ledger_source_deal", table_name="renewal_ledger")
    op.drop_index("ix_renewal_ledger_status_term", table_name="renewal_ledger")
    op.drop_table("renewal_ledger")
