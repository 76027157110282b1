from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

STATUS_IN_PROGRESS = "in_progress"
STATUS_FINALIZED = "finalized"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp is naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class AssessmentORM(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    item_code: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    grouping_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=STATUS_IN_PROGRESS, index=True
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    catalog_version: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False, index=True
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)

    # at most one in_progress and one finalized assessment per item
    __table_args__ = (
        UniqueConstraint("item_code", "status", name="uq_assessment_item_status"),
        CheckConstraint(
            "status IN ('in_progress', 'finalized')", name="ck_assessment_status"
        ),
        CheckConstraint(
            "score IS NULL OR (score >= 1 AND score <= 5)", name="ck_assessment_score"
        ),
    )


class RatingORM(Base):
    __tablename__ = "ratings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    assessment_id: Mapped[str] = mapped_column(
        ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    carried_forward: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachment_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("assessment_id", "question_index", name="uq_rating_assessment_question"),
        CheckConstraint(
            "(level IS NULL OR (level BETWEEN 1 AND 5)) "
            "AND (previous_level IS NULL OR (previous_level BETWEEN 1 AND 5)) "
            "AND question_index >= 0",
            name="ck_rating_levels",
        ),
    )


class HistorySnapshotORM(Base):
    __tablename__ = "history_snapshots"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    item_code: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    snapshot_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, index=True
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    # [{"question_index", "level", "notes", "attachment_ids"}] for answered questions
    ratings: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    catalog_version: Mapped[str] = mapped_column(String(32), nullable=False, default="")


class TagORM(Base):
    __tablename__ = "tags"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    last_used: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False, index=True
    )


class AttachmentORM(Base):
    __tablename__ = "attachments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    assessment_id: Mapped[str] = mapped_column(
        ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # detached (NULL) when the owning rating row is replaced
    rating_id: Mapped[str | None] = mapped_column(
        ForeignKey("ratings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blob_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False, index=True
    )
