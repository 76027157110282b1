# capledger/infrastructure/repositories_assessment.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import AssessmentNotFoundError
from .logging import log_database_operation as log_op
from .models import STATUS_FINALIZED, AssessmentORM, AttachmentORM, RatingORM
from .repositories_base import BaseRepository as GenericBaseRepository


class AssessmentRepo(GenericBaseRepository[AssessmentORM]):
    """
    Repository for assessment rows.

    Deleting an assessment always removes its ratings and attachment rows in
    the same transaction; blob cleanup is the caller's job after commit.
    """

    model = AssessmentORM
    not_found = AssessmentNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("assessment.get")
    def get(self, id_: Any) -> AssessmentORM | None:
        return super().get(id_)

    @log_op("assessment.create")
    def create(self, **fields: Any) -> AssessmentORM:
        return super().create(**fields)

    @log_op("assessment.update")
    def update(self, obj: AssessmentORM, **fields: Any) -> AssessmentORM:
        return super().update(obj, **fields)

    @log_op("assessment.list_for_item")
    def list_for_item(self, item_code: str) -> builtins.list[AssessmentORM]:
        """All assessments of one item, most recently updated first."""
        return self.list(
            AssessmentORM.item_code == item_code,
            order_by=[AssessmentORM.updated_at.desc()],
        )

    @log_op("assessment.find")
    def find(self, item_code: str, status: str) -> AssessmentORM | None:
        try:
            return (
                self.s.query(AssessmentORM)
                .filter_by(item_code=item_code, status=status)
                .one_or_none()
            )
        except SQLAlchemyError as e:
            self._handle_error(e, "assessment.find")

    @log_op("assessment.search")
    def search(
        self,
        item_codes: Iterable[str] | None = None,
        status: str | None = None,
        grouping_key: str | None = None,
    ) -> builtins.list[AssessmentORM]:
        filters = []
        if item_codes is not None:
            filters.append(AssessmentORM.item_code.in_(list(item_codes)))
        if status is not None:
            filters.append(AssessmentORM.status == status)
        if grouping_key is not None:
            filters.append(AssessmentORM.grouping_key == grouping_key)
        return self.list(
            *filters, order_by=[AssessmentORM.updated_at.desc(), AssessmentORM.id]
        )

    @log_op("assessment.finalized_tags")
    def finalized_tags(self) -> set[str]:
        rows = self.s.query(AssessmentORM.tags).filter(AssessmentORM.status == STATUS_FINALIZED)
        return {tag for (tags,) in rows for tag in (tags or [])}

    @log_op("assessment.delete_cascade")
    def delete_cascade(self, obj: AssessmentORM) -> builtins.list[str]:
        """Delete the assessment, its ratings and attachment rows; return the freed blob refs."""
        try:
            attachments = self.s.query(AttachmentORM).filter_by(assessment_id=obj.id).all()
            blob_refs = [a.blob_ref for a in attachments]
            for attachment in attachments:
                self.s.delete(attachment)
            self.s.query(RatingORM).filter_by(assessment_id=obj.id).delete(
                synchronize_session="fetch"
            )
            self.s.delete(obj)
            self.s.flush()
            return blob_refs
        except SQLAlchemyError as e:
            self._handle_error(e, "assessment.delete_cascade")
