"""initial_schema

Revision ID: 3f9a1c2d7b10
Revises:
Create Date: 2026-10-19 10:12:31.402118

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLModel persists enum member names
job_kind = sa.Enum("TRAINING", "GENERATION", name="jobkind")
job_status = sa.Enum("PENDING", "RUNNING", "SUCCEEDED", "FAILED", name="jobstatus")
failure_reason = sa.Enum(
    "PROVIDER_FAILURE",
    "TIMEOUT",
    "TRANSPORT_ERROR",
    "INTERRUPTED",
    "INVALID_OUTPUT",
    name="failurereason",
)


def upgrade() -> None:
    """Create accounts, jobs, trained_models, generated_images, payment_events, uploads."""
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)

    op.create_table(
        "trained_models",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("weights_url", sa.String(), nullable=False),
        sa.Column("config_url", sa.String(), nullable=False),
        sa.Column("training_data_url", sa.String(), nullable=True),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "sequence_number", name="uq_trained_models_account_seq"),
    )
    op.create_index("ix_trained_models_account_id", "trained_models", ["account_id"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("kind", job_kind, nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("input_ref", sa.String(), nullable=False),
        sa.Column("model_id", sa.Uuid(), nullable=True),
        sa.Column("prompt", sa.String(), nullable=True),
        sa.Column("image_count", sa.Integer(), nullable=False),
        sa.Column("external_job_id", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", failure_reason, nullable=True),
        sa.Column("error_data", sa.JSON(), nullable=True),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False),
        sa.Column("result_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["model_id"], ["trained_models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_account_id", "jobs", ["account_id"])
    op.create_index("ix_jobs_kind", "jobs", ["kind"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_needs_reconciliation", "jobs", ["needs_reconciliation"])

    op.create_table(
        "generated_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("model_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["model_id"], ["trained_models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generated_images_account_id", "generated_images", ["account_id"])
    op.create_index("ix_generated_images_model_id", "generated_images", ["model_id"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_events_event_id", "payment_events", ["event_id"], unique=True)
    op.create_index("ix_payment_events_account_id", "payment_events", ["account_id"])

    op.create_table(
        "uploads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("file_count", sa.Integer(), nullable=False),
        sa.Column("archive_url", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_uploads_account_id", "uploads", ["account_id"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_index("ix_uploads_account_id", table_name="uploads")
    op.drop_table("uploads")
    op.drop_index("ix_payment_events_account_id", table_name="payment_events")
    op.drop_index("ix_payment_events_event_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("ix_generated_images_model_id", table_name="generated_images")
    op.drop_index("ix_generated_images_account_id", table_name="generated_images")
    op.drop_table("generated_images")
    op.drop_index("ix_jobs_needs_reconciliation", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_kind", table_name="jobs")
    op.drop_index("ix_jobs_account_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_trained_models_account_id", table_name="trained_models")
    op.drop_table("trained_models")
    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    failure_reason.drop(bind, checkfirst=True)
    job_status.drop(bind, checkfirst=True)
    job_kind.drop(bind, checkfirst=True)
