# capledger/infrastructure/repositories_history.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import HistoryNotFoundError
from .logging import log_database_operation as log_op
from .models import HistorySnapshotORM
from .repositories_base import BaseRepository as GenericBaseRepository


class HistoryRepo(GenericBaseRepository[HistorySnapshotORM]):
    model = HistorySnapshotORM
    not_found = HistoryNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("history.create")
    def create(self, **fields: Any) -> HistorySnapshotORM:
        return super().create(**fields)

    @log_op("history.delete")
    def delete(self, obj: HistorySnapshotORM) -> None:
        super().delete(obj)

    @log_op("history.list_for_item")
    def list_for_item(self, item_code: str) -> builtins.list[HistorySnapshotORM]:
        """Snapshots of one item, newest first."""
        return self.list(
            HistorySnapshotORM.item_code == item_code,
            order_by=[HistorySnapshotORM.snapshot_date.desc(), HistorySnapshotORM.id],
        )

    @log_op("history.list_for_items")
    def list_for_items(self, item_codes: Iterable[str]) -> builtins.list[HistorySnapshotORM]:
        codes = list(item_codes)
        if not codes:
            return []
        return self.list(
            HistorySnapshotORM.item_code.in_(codes),
            order_by=[HistorySnapshotORM.item_code, HistorySnapshotORM.snapshot_date.desc()],
        )

    @log_op("history.list_all")
    def list_all(self) -> builtins.list[HistorySnapshotORM]:
        return self.list(order_by=[HistorySnapshotORM.snapshot_date.desc()])

    @log_op("history.latest_for_item")
    def latest_for_item(self, item_code: str) -> HistorySnapshotORM | None:
        try:
            return (
                self.s.query(HistorySnapshotORM)
                .filter_by(item_code=item_code)
                .order_by(HistorySnapshotORM.snapshot_date.desc())
                .limit(1)
                .one_or_none()
            )
        except SQLAlchemyError as e:
            self._handle_error(e, "history.latest_for_item")

    @log_op("history.delete_for_item")
    def delete_for_item(self, item_code: str) -> int:
        try:
            removed = (
                self.s.query(HistorySnapshotORM)
                .filter_by(item_code=item_code)
                .delete(synchronize_session="fetch")
            )
            self.s.flush()
            return int(removed)
        except SQLAlchemyError as e:
            self._handle_error(e, "history.delete_for_item")
