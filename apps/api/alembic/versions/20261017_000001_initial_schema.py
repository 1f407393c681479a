"""create credit ledger, payment and job schema

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("pages_remaining", sa.Integer(), nullable=False),
        sa.Column("total_pages_used", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("is_early_adopter", sa.Boolean(), nullable=False),
        sa.Column("registration_bonus_granted", sa.Boolean(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("pages_remaining >= 0", name="ck_credit_accounts_pages_non_negative"),
        sa.CheckConstraint("total_pages_used >= 0", name="ck_credit_accounts_used_non_negative"),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index(op.f("ix_credit_accounts_status"), "credit_accounts", ["status"], unique=False)
    op.create_index(op.f("ix_credit_accounts_user_id"), "credit_accounts", ["user_id"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference_id"),
    )
    op.create_index(op.f("ix_credit_transactions_owner_id"), "credit_transactions", ["owner_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)

    op.create_table(
        "credit_transfers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("device_owner_id", sa.String(), nullable=False),
        sa.Column("user_owner_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_owner_id", "user_owner_id", name="uq_credit_transfers_pair"),
    )
    op.create_index(op.f("ix_credit_transfers_device_owner_id"), "credit_transfers", ["device_owner_id"], unique=False)
    op.create_index(op.f("ix_credit_transfers_user_owner_id"), "credit_transfers", ["user_owner_id"], unique=False)

    op.create_table(
        "pending_payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("transaction_no", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("package_id", sa.String(), nullable=True),
        sa.Column("pages", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_pending_payments_order_number"), "pending_payments", ["order_number"], unique=True)
    op.create_index(op.f("ix_pending_payments_transaction_no"), "pending_payments", ["transaction_no"], unique=True)
    op.create_index(op.f("ix_pending_payments_owner_id"), "pending_payments", ["owner_id"], unique=False)
    op.create_index(op.f("ix_pending_payments_status"), "pending_payments", ["status"], unique=False)
    op.create_index(op.f("ix_pending_payments_created_at"), "pending_payments", ["created_at"], unique=False)

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_webhook_events_status_claimed", "webhook_events", ["status", "claimed_at"], unique=False)

    op.create_table(
        "quota_counters",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("key", "day"),
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("result_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("billable_amount", sa.Integer(), nullable=False),
        sa.Column("dispatch_mode", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(), nullable=True),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("charge_status", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generation_jobs_result_id"), "generation_jobs", ["result_id"], unique=True)
    op.create_index(op.f("ix_generation_jobs_owner_id"), "generation_jobs", ["owner_id"], unique=False)
    op.create_index(op.f("ix_generation_jobs_status"), "generation_jobs", ["status"], unique=False)
    op.create_index(op.f("ix_generation_jobs_queue_job_id"), "generation_jobs", ["queue_job_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_generation_jobs_queue_job_id"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_status"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_owner_id"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_result_id"), table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_table("quota_counters")

    op.drop_index("ix_webhook_events_status_claimed", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index(op.f("ix_pending_payments_created_at"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_status"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_owner_id"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_transaction_no"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_order_number"), table_name="pending_payments")
    op.drop_table("pending_payments")

    op.drop_index(op.f("ix_credit_transfers_user_owner_id"), table_name="credit_transfers")
    op.drop_index(op.f("ix_credit_transfers_device_owner_id"), table_name="credit_transfers")
    op.drop_table("credit_transfers")

    op.drop_index(op.f("ix_credit_transactions_created_at"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_owner_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index(op.f("ix_credit_accounts_user_id"), table_name="credit_accounts")
    op.drop_index(op.f("ix_credit_accounts_status"), table_name="credit_accounts")
    op.drop_table("credit_accounts")
