"""Create portrait_revisions table

Revision ID: 003
Revises: 002
Create Date: 2026-10-14

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "portrait_revisions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("original_portrait_id", sa.Integer(), nullable=False),
        sa.Column("parent_revision_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("customization_params", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("image_versions", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("generation_time_seconds", sa.Integer(), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["original_portrait_id"], ["portraits.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["parent_revision_id"], ["portrait_revisions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_portrait_revisions_original_portrait_id",
        "portrait_revisions",
        ["original_portrait_id"],
    )
    op.create_index("ix_portrait_revisions_user_id", "portrait_revisions", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_portrait_revisions_user_id", table_name="portrait_revisions")
    op.drop_index(
        "ix_portrait_revisions_original_portrait_id", table_name="portrait_revisions"
    )
    op.drop_table("portrait_revisions")
