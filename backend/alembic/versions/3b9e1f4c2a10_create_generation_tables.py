"""create_generation_tables

Revision ID: 3b9e1f4c2a10
Revises:
Create Date: 2026-10-18 09:12:41.208311

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9e1f4c2a10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

generation_job_status = sa.Enum(
    "QUEUED", "RUNNING", "SUCCEEDED", "FAILED", name="generationjobstatus"
)


def upgrade() -> None:
    """Create users, svg_generations and generation_jobs tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "svg_generations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("svg", sa.Text(), nullable=False),
        sa.Column("style", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=64), nullable=False),
        sa.Column("privacy", sa.Boolean(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_svg_generations_owner_id"), "svg_generations", ["owner_id"])
    op.create_index(op.f("ix_svg_generations_privacy"), "svg_generations", ["privacy"])
    op.create_index(op.f("ix_svg_generations_created_at"), "svg_generations", ["created_at"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("style", sa.String(length=32), nullable=False),
        sa.Column("model", sa.String(length=64), nullable=False),
        sa.Column("privacy", sa.Boolean(), nullable=False),
        sa.Column("status", generation_job_status, nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("credits_charged", sa.Boolean(), nullable=False),
        sa.Column("credits_refunded", sa.Boolean(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("last_started_at", sa.DateTime(), nullable=True),
        sa.Column("last_failed_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("result_id", sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["result_id"], ["svg_generations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id", "idempotency_key", name="uq_generation_jobs_owner_idempotency_key"
        ),
    )
    op.create_index(op.f("ix_generation_jobs_owner_id"), "generation_jobs", ["owner_id"])
    op.create_index(op.f("ix_generation_jobs_status"), "generation_jobs", ["status"])
    op.create_index(op.f("ix_generation_jobs_created_at"), "generation_jobs", ["created_at"])


def downgrade() -> None:
    """Drop generation tables."""
    op.drop_index(op.f("ix_generation_jobs_created_at"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_status"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_owner_id"), table_name="generation_jobs")
    op.drop_table("generation_jobs")
    generation_job_status.drop(op.get_bind(), checkfirst=True)

    op.drop_index(op.f("ix_svg_generations_created_at"), table_name="svg_generations")
    op.drop_index(op.f("ix_svg_generations_privacy"), table_name="svg_generations")
    op.drop_index(op.f("ix_svg_generations_owner_id"), table_name="svg_generations")
    op.drop_table("svg_generations")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
