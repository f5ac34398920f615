"""Initial migration - create the job queue tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

id_type = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # Jobs table
    op.create_table(
        "jobs",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column("state", sa.String(15), nullable=False),
        sa.Column("queue", sa.String(50), nullable=False),
        sa.Column("priority", sa.SmallInteger(), nullable=False),
        sa.Column("worker_name", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("execute_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("command", sa.String(255), nullable=False),
        sa.Column("args", sa.JSON(), nullable=False),
        sa.Column("max_runtime", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error_output", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.SmallInteger(), nullable=True),
        sa.Column("stack_trace", sa.JSON(), nullable=True),
        sa.Column("runtime", sa.Integer(), nullable=True),
        sa.Column("memory_usage", sa.BigInteger(), nullable=True),
        sa.Column("memory_usage_real", sa.BigInteger(), nullable=True),
        sa.Column("original_job_id", id_type, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["original_job_id"], ["jobs.id"]),
    )
    op.create_index("ix_jobs_selection", "jobs", ["state", "priority", "id"])
    op.create_index("ix_jobs_command", "jobs", ["command"])

    # Dependency edges: source waits for dest
    op.create_table(
        "job_dependencies",
        sa.Column("source_job_id", id_type, nullable=False),
        sa.Column("dest_job_id", id_type, nullable=False),
        sa.PrimaryKeyConstraint("source_job_id", "dest_job_id"),
        sa.ForeignKeyConstraint(["source_job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["dest_job_id"], ["jobs.id"], ondelete="CASCADE"),
    )

    # Related entities table
    op.create_table(
        "job_related_entities",
        sa.Column("job_id", id_type, nullable=False),
        sa.Column("related_class", sa.String(150), nullable=False),
        sa.Column("related_id", sa.String(100), nullable=False),
        sa.PrimaryKeyConstraint("job_id", "related_class", "related_id"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )

    # Cron jobs table
    op.create_table(
        "cron_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("command", sa.String(200), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("command", name="uq_cron_jobs_command"),
    )


def downgrade() -> None:
    op.drop_table("cron_jobs")
    op.drop_table("job_related_entities")
    op.drop_table("job_dependencies")
    op.drop_index("ix_jobs_command", table_name="jobs")
    op.drop_index("ix_jobs_selection", table_name="jobs")
    op.drop_table("jobs")
