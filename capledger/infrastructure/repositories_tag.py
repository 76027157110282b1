# capledger/infrastructure/repositories_tag.py
from __future__ import annotations

import builtins
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import TagNotFoundError
from .logging import log_database_operation as log_op
from .models import TagORM, new_id, utcnow
from .repositories_base import BaseRepository as GenericBaseRepository


class TagRepo(GenericBaseRepository[TagORM]):
    model = TagORM
    not_found = TagNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("tag.get_by_name")
    def get_by_name(self, name: str) -> TagORM | None:
        try:
            return self.s.query(TagORM).filter_by(name=name).one_or_none()
        except SQLAlchemyError as e:
            self._handle_error(e, "tag.get_by_name")

    @log_op("tag.list_by_usage")
    def list_by_usage(self) -> builtins.list[TagORM]:
        return self.list(order_by=[TagORM.usage_count.desc(), TagORM.last_used.desc(), TagORM.name])

    @log_op("tag.increment")
    def increment(self, name: str, now: datetime | None = None) -> TagORM:
        """Bump usage for ``name``, creating the entry with a count of 1 when absent."""
        now = now or utcnow()
        tag = self.get_by_name(name)
        if tag is None:
            return self.create(id=new_id(), name=name, usage_count=1, last_used=now)
        return self.update(tag, usage_count=tag.usage_count + 1, last_used=now)

    @log_op("tag.insert_if_absent")
    def insert_if_absent(
        self,
        name: str,
        usage_count: int = 0,
        last_used: datetime | None = None,
        id_: str | None = None,
    ) -> TagORM | None:
        """Create the entry only when no tag has that name; never touches an existing count."""
        if self.get_by_name(name) is not None:
            return None
        if id_ is None or self.get(id_) is not None:
            id_ = new_id()
        return self.create(
            id=id_, name=name, usage_count=usage_count, last_used=last_used or utcnow()
        )
