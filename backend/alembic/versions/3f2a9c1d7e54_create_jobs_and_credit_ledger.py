"""create_jobs_and_credit_ledger

Revision ID: 3f2a9c1d7e54
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e54"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, matching SQLModel's default mapping
JOB_STATUS = sa.Enum("PROCESSING", "COMPLETED", "FAILED", name="jobstatus")
FALLBACK_STATE = sa.Enum("FRESH", "FALLBACK_ATTEMPTED", "TERMINAL", name="fallbackstate")
PROVIDER = sa.Enum("KIE", "REPLICATE", "FASHN", "GEMINI", name="provider")
JOB_TYPE = sa.Enum(
    "VIRTUAL_TRYON",
    "MODEL_SWAP",
    "PHOTO_EDIT",
    "PRODUCT_MARKETING",
    "GEMINI_ANALYSIS",
    "GEMINI_GENERATION",
    name="jobtype",
)
TRANSACTION_KIND = sa.Enum(
    "PURCHASE",
    "BONUS",
    "FREE",
    "USAGE",
    "ADMIN_GRANT",
    "PENDING_PURCHASE",
    "FAILED_PURCHASE",
    "EXPIRED",
    name="transactionkind",
)


def upgrade() -> None:
    """Create jobs, user_credits and credit_transactions."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_type", JOB_TYPE, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("status", JOB_STATUS, nullable=False),
        sa.Column("provider", PROVIDER, nullable=True),
        sa.Column("external_task_id", sa.String(length=255), nullable=True),
        sa.Column("previous_task_id", sa.String(length=255), nullable=True),
        sa.Column("fallback_state", FALLBACK_STATE, nullable=False),
        sa.Column("source_image_urls", sa.JSON(), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("analysis", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("job_metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_external_task_id", "jobs", ["external_task_id"])
    op.create_index("ix_jobs_previous_task_id", "jobs", ["previous_task_id"])

    op.create_table(
        "user_credits",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("credits_balance", sa.Integer(), nullable=False),
        sa.Column("free_credits", sa.Integer(), nullable=False),
        sa.Column("total_purchased", sa.Integer(), nullable=False),
        sa.Column("total_used", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("credits_balance >= 0", name="ck_user_credits_balance_non_negative"),
    )
    op.create_index("ix_user_credits_user_id", "user_credits", ["user_id"], unique=True)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_type", TRANSACTION_KIND, nullable=False),
        sa.Column("credits_amount", sa.Integer(), nullable=False),
        sa.Column("credits_before", sa.Integer(), nullable=False),
        sa.Column("credits_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("offsets_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("offsets_transaction_id"),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index(
        "ix_credit_transactions_transaction_type", "credit_transactions", ["transaction_type"]
    )
    op.create_index(
        "ix_credit_transactions_reference_id", "credit_transactions", ["reference_id"]
    )


def downgrade() -> None:
    """Drop the ledger and job tables."""
    op.drop_table("credit_transactions")
    op.drop_table("user_credits")
    op.drop_table("jobs")
    for enum in (TRANSACTION_KIND, JOB_TYPE, PROVIDER, FALLBACK_STATE, JOB_STATUS):
        enum.drop(op.get_bind(), checkfirst=True)
