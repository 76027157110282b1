"""History manager: storage-level CRUD over immutable history snapshots."""

from __future__ import annotations

from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import HistorySnapshotORM
from ..infrastructure.repositories import HistoryRepo
from ..infrastructure.uow import UnitOfWork

logger = get_logger(__name__)


class HistoryManager:
    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    def list_by_item(self, item_code: str) -> list[HistorySnapshotORM]:
        """Snapshots for ``item_code``, newest snapshot date first."""
        with self.uow.read() as s:
            return HistoryRepo(s).list_for_item(item_code)

    def list_all(self) -> list[HistorySnapshotORM]:
        with self.uow.read() as s:
            return HistoryRepo(s).list_all()

    def get(self, history_id: str) -> HistorySnapshotORM:
        with self.uow.read() as s:
            return HistoryRepo(s).get_required(history_id)

    @log_operation("delete_history_entry")
    def delete(self, history_id: str) -> None:
        with self.uow.begin("history_snapshots") as s:
            repo = HistoryRepo(s)
            repo.delete(repo.get_required(history_id))

    @log_operation("clear_item_history")
    def clear_by_item(self, item_code: str) -> int:
        with self.uow.begin("history_snapshots") as s:
            removed = HistoryRepo(s).delete_for_item(item_code)
        logger.info(f"Cleared {removed} history entries for {item_code}")
        return removed
