"""Initial schema: jobs, audit entries, dead letters and results

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("pending", "leased", "completed", "failed_retryable", "dead")


def _job_status() -> postgresql.ENUM:
    return postgresql.ENUM(*JOB_STATUSES, name="job_status", create_type=False)


def upgrade() -> None:
    # Create enum using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_status AS ENUM ('pending', 'leased', 'completed', 'failed_retryable', 'dead');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("queue", sa.String(64), nullable=False),
        sa.Column("job_type", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("fingerprint", sa.String(128), nullable=True),
        sa.Column("dedupe", sa.Boolean, nullable=False),
        sa.Column("status", _job_status(), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("available_at", sa.DateTime, nullable=False),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("last_error", postgresql.JSONB, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create indexes
    op.create_index("ix_jobs_fingerprint", "jobs", ["fingerprint"])
    op.create_index("ix_jobs_queue_poll", "jobs", ["queue", "status", "available_at", "created_at"])
    op.create_index("ix_jobs_lease_expiry", "jobs", ["status", "lease_expires_at"])

    # Fingerprint is unique among active deduplicating jobs
    op.execute("""
        CREATE UNIQUE INDEX uq_jobs_active_fingerprint
        ON jobs (fingerprint)
        WHERE dedupe AND status IN ('pending', 'leased', 'failed_retryable')
    """)

    op.create_table(
        "job_audit_entries",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_status", _job_status(), nullable=True),
        sa.Column("to_status", _job_status(), nullable=False),
        sa.Column("actor", sa.String(255), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("error", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_job_audit_entries_job_id", "job_audit_entries", ["job_id"])

    op.create_table(
        "dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("queue", sa.String(64), nullable=False),
        sa.Column("job_type", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("fingerprint", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("last_error", postgresql.JSONB, nullable=True),
        sa.Column("audit_trail", postgresql.JSONB, nullable=False),
        sa.Column("dead_at", sa.DateTime, nullable=False),
        sa.Column("requeued_at", sa.DateTime, nullable=True),
        sa.Column("requeued_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dead_letters_job_id", "dead_letters", ["job_id"])
    op.create_index("ix_dead_letters_queue", "dead_letters", ["queue"])

    op.create_table(
        "job_results",
        sa.Column("table_name", sa.String(128), nullable=False),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("fields", postgresql.JSONB, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("table_name", "key"),
    )


def downgrade() -> None:
    op.drop_table("job_results")

    op.drop_index("ix_dead_letters_queue")
    op.drop_index("ix_dead_letters_job_id")
    op.drop_table("dead_letters")

    op.drop_index("ix_job_audit_entries_job_id")
    op.drop_table("job_audit_entries")

    # Drop indexes
    op.execute("DROP INDEX IF EXISTS uq_jobs_active_fingerprint")
    op.drop_index("ix_jobs_lease_expiry")
    op.drop_index("ix_jobs_queue_poll")
    op.drop_index("ix_jobs_fingerprint")

    # Drop table
    op.drop_table("jobs")

    # Drop enum
    op.execute("DROP TYPE IF EXISTS job_status")
