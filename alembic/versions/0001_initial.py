"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "assessments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("item_code", sa.String(length=128), nullable=False),
        sa.Column("grouping_key", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("catalog_version", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("finalized_at", sa.DateTime(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_code", "status", name="uq_assessment_item_status"),
        sa.CheckConstraint("status IN ('in_progress', 'finalized')", name="ck_assessment_status"),
        sa.CheckConstraint(
            "score IS NULL OR (score >= 1 AND score <= 5)", name="ck_assessment_score"
        ),
    )
    op.create_index("ix_assessments_item_code", "assessments", ["item_code"], unique=False)
    op.create_index("ix_assessments_status", "assessments", ["status"], unique=False)
    op.create_index("ix_assessments_updated_at", "assessments", ["updated_at"], unique=False)

    op.create_table(
        "ratings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("assessment_id", sa.String(length=36), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("level", sa.Integer(), nullable=True),
        sa.Column("previous_level", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("carried_forward", sa.Boolean(), nullable=False),
        sa.Column("attachment_ids", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["assessment_id"], ["assessments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "assessment_id", "question_index", name="uq_rating_assessment_question"
        ),
        sa.CheckConstraint(
            "(level IS NULL OR (level BETWEEN 1 AND 5)) "
            "AND (previous_level IS NULL OR (previous_level BETWEEN 1 AND 5)) "
            "AND question_index >= 0",
            name="ck_rating_levels",
        ),
    )
    op.create_index("ix_ratings_assessment_id", "ratings", ["assessment_id"], unique=False)

    op.create_table(
        "history_snapshots",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("item_code", sa.String(length=128), nullable=False),
        sa.Column("snapshot_date", sa.DateTime(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("ratings", sa.JSON(), nullable=False),
        sa.Column("catalog_version", sa.String(length=32), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_history_snapshots_item_code", "history_snapshots", ["item_code"], unique=False
    )
    op.create_index(
        "ix_history_snapshots_snapshot_date", "history_snapshots", ["snapshot_date"], unique=False
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("last_used", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tags_name", "tags", ["name"], unique=True)
    op.create_index("ix_tags_usage_count", "tags", ["usage_count"], unique=False)
    op.create_index("ix_tags_last_used", "tags", ["last_used"], unique=False)

    op.create_table(
        "attachments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("assessment_id", sa.String(length=36), nullable=False),
        sa.Column("rating_id", sa.String(length=36), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_type", sa.String(length=128), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("blob_ref", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["assessment_id"], ["assessments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rating_id"], ["ratings.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_attachments_assessment_id", "attachments", ["assessment_id"], unique=False)
    op.create_index("ix_attachments_rating_id", "attachments", ["rating_id"], unique=False)
    op.create_index("ix_attachments_uploaded_at", "attachments", ["uploaded_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_attachments_uploaded_at", table_name="attachments")
    op.drop_index("ix_attachments_rating_id", table_name="attachments")
    op.drop_index("ix_attachments_assessment_id", table_name="attachments")
    op.drop_table("attachments")
    op.drop_index("ix_tags_last_used", table_name="tags")
    op.drop_index("ix_tags_usage_count", table_name="tags")
    op.drop_index("ix_tags_name", table_name="tags")
    op.drop_table("tags")
    op.drop_index("ix_history_snapshots_snapshot_date", table_name="history_snapshots")
    op.drop_index("ix_history_snapshots_item_code", table_name="history_snapshots")
    op.drop_table("history_snapshots")
    op.drop_index("ix_ratings_assessment_id", table_name="ratings")
    op.drop_table("ratings")
    op.drop_index("ix_assessments_updated_at", table_name="assessments")
    op.drop_index("ix_assessments_status", table_name="assessments")
    op.drop_index("ix_assessments_item_code", table_name="assessments")
    op.drop_table("assessments")
