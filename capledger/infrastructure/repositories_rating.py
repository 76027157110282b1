# capledger/infrastructure/repositories_rating.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import RatingNotFoundError, ValidationError
from .logging import log_database_operation as log_op
from .models import RatingORM, utcnow
from .repositories_base import BaseRepository as GenericBaseRepository


class RatingRepo(GenericBaseRepository[RatingORM]):
    """
    Repository for per-question ratings.

    (assessment_id, question_index) is unique; ``upsert`` is the only write
    path the lifecycle uses so the pair never gets a second row.
    """

    model = RatingORM
    not_found = RatingNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("rating.create")
    def create(self, **fields: Any) -> RatingORM:
        return super().create(**fields)

    @log_op("rating.list_for_assessment")
    def list_for_assessment(self, assessment_id: str) -> builtins.list[RatingORM]:
        return self.list(
            RatingORM.assessment_id == assessment_id, order_by=[RatingORM.question_index]
        )

    @log_op("rating.list_for_assessments")
    def list_for_assessments(self, assessment_ids: Iterable[str]) -> builtins.list[RatingORM]:
        ids = list(assessment_ids)
        if not ids:
            return []
        return self.list(
            RatingORM.assessment_id.in_(ids),
            order_by=[RatingORM.assessment_id, RatingORM.question_index],
        )

    @log_op("rating.get_for_question")
    def get_for_question(self, assessment_id: str, question_index: int) -> RatingORM | None:
        if question_index < 0:
            raise ValidationError("question_index", "Question index must not be negative")
        try:
            return (
                self.s.query(RatingORM)
                .filter_by(assessment_id=assessment_id, question_index=question_index)
                .one_or_none()
            )
        except SQLAlchemyError as e:
            self._handle_error(e, "rating.get_for_question")

    @log_op("rating.upsert")
    def upsert(
        self,
        assessment_id: str,
        question_index: int,
        level: int | None,
        notes: str,
        now: datetime | None = None,
    ) -> RatingORM:
        """Insert or update the rating for one question and clear its carry-forward flag."""
        now = now or utcnow()
        obj = self.get_for_question(assessment_id, question_index)
        try:
            if obj is None:
                obj = RatingORM(
                    assessment_id=assessment_id,
                    question_index=question_index,
                    attachment_ids=[],
                )
                self.s.add(obj)

            obj.level = level
            obj.notes = notes
            obj.carried_forward = False
            obj.updated_at = now

            self.s.flush()
            return obj
        except SQLAlchemyError as e:
            self._handle_error(e, "rating.upsert")

    @log_op("rating.ensure")
    def ensure(self, assessment_id: str, question_index: int) -> RatingORM:
        """Existing rating for the question, or a new unanswered one."""
        obj = self.get_for_question(assessment_id, question_index)
        if obj is not None:
            return obj
        return super().create(
            assessment_id=assessment_id,
            question_index=question_index,
            level=None,
            notes="",
            attachment_ids=[],
            updated_at=utcnow(),
        )

    @log_op("rating.delete_for_assessment")
    def delete_for_assessment(self, assessment_id: str) -> int:
        try:
            removed = (
                self.s.query(RatingORM)
                .filter_by(assessment_id=assessment_id)
                .delete(synchronize_session="fetch")
            )
            self.s.flush()
            return int(removed)
        except SQLAlchemyError as e:
            self._handle_error(e, "rating.delete_for_assessment")
