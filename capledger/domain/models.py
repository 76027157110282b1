from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

AssessmentStatus = Literal["in_progress", "finalized"]
ItemState = Literal["absent", "in_progress", "finalized"]
ExportScope = Literal["full", "grouping_key", "item"]
ImportAction = Literal["imported_current", "imported_history", "skipped", "error"]

# (percent 0-100, human readable status)
ProgressCallback = Callable[[int, str], None]


@dataclass(slots=True)
class HistoricalRating:
    question_index: int
    level: int  # 1..5, answered questions only
    notes: str = ""
    attachment_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "question_index": self.question_index,
            "level": self.level,
            "notes": self.notes,
            "attachment_ids": list(self.attachment_ids),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> HistoricalRating:
        return cls(
            question_index=int(raw["question_index"]),
            level=int(raw["level"]),
            notes=raw.get("notes") or "",
            attachment_ids=list(raw.get("attachment_ids") or []),
        )


@dataclass(slots=True)
class ItemScore:
    item_code: str
    display_name: str
    grouping_key: str
    state: ItemState
    score: float | None
    progress: int  # percent of catalog questions answered
    updated_at: datetime | None
    tags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AverageResult:
    grouping_key: str
    average: float  # float('nan') when no finalized item in the group
    coverage: float  # finalized items / catalog items, 0..1


@dataclass(slots=True)
class ImportItemResult:
    item_code: str
    display_name: str
    action: ImportAction
    reason: str | None = None


@dataclass(slots=True)
class ImportResult:
    """
    Structured summary of one import run.

    ``success`` is true when no item failed; skipped items and attachment
    warnings do not count against it.
    """

    imported_as_current: int = 0
    imported_as_history: int = 0
    skipped: int = 0
    attachments_restored: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[ImportItemResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def record(self, item: ImportItemResult) -> None:
        self.details.append(item)
        if item.action == "imported_current":
            self.imported_as_current += 1
        elif item.action == "imported_history":
            self.imported_as_history += 1
        elif item.action == "skipped":
            self.skipped += 1

    @classmethod
    def rejected(cls, message: str) -> ImportResult:
        return cls(errors=[message])

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "imported_as_current": self.imported_as_current,
            "imported_as_history": self.imported_as_history,
            "skipped": self.skipped,
            "attachments_restored": self.attachments_restored,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "details": [
                {
                    "item_code": d.item_code,
                    "display_name": d.display_name,
                    "action": d.action,
                    "reason": d.reason,
                }
                for d in self.details
            ],
        }


class CancellationToken:
    """Thread-safe flag a caller sets to stop an export or import between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
