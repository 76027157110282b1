# capledger/infrastructure/repositories_attachment.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from .exceptions import AttachmentNotFoundError
from .logging import log_database_operation as log_op
from .models import AttachmentORM
from .repositories_base import BaseRepository as GenericBaseRepository


class AttachmentRepo(GenericBaseRepository[AttachmentORM]):
    model = AttachmentORM
    not_found = AttachmentNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("attachment.get")
    def get(self, id_: Any) -> AttachmentORM | None:
        return super().get(id_)

    @log_op("attachment.create")
    def create(self, **fields: Any) -> AttachmentORM:
        return super().create(**fields)

    @log_op("attachment.delete")
    def delete(self, obj: AttachmentORM) -> None:
        super().delete(obj)

    @log_op("attachment.list_for_assessment")
    def list_for_assessment(self, assessment_id: str) -> builtins.list[AttachmentORM]:
        return self.list(
            AttachmentORM.assessment_id == assessment_id,
            order_by=[AttachmentORM.uploaded_at, AttachmentORM.id],
        )

    @log_op("attachment.list_for_assessments")
    def list_for_assessments(self, assessment_ids: Iterable[str]) -> builtins.list[AttachmentORM]:
        ids = list(assessment_ids)
        if not ids:
            return []
        return self.list(
            AttachmentORM.assessment_id.in_(ids),
            order_by=[AttachmentORM.uploaded_at, AttachmentORM.id],
        )

    @log_op("attachment.total_size")
    def total_size(self, assessment_id: str) -> int:
        total = (
            self.s.query(func.coalesce(func.sum(AttachmentORM.file_size), 0))
            .filter(AttachmentORM.assessment_id == assessment_id)
            .scalar()
        )
        return int(total or 0)
