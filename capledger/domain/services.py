from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..infrastructure.catalog import ReferenceCatalog
from ..infrastructure.exceptions import InvalidRatingError
from ..infrastructure.models import (
    STATUS_FINALIZED,
    STATUS_IN_PROGRESS,
    AssessmentORM,
    RatingORM,
)
from .models import AverageResult, HistoricalRating, ItemScore, ItemState


def clamp_rating(level: Any) -> int | None:
    """Validate a rating level; ``None`` clears the answer."""
    if level is None:
        return None
    if isinstance(level, bool) or not isinstance(level, int) or not (1 <= level <= 5):
        raise InvalidRatingError(level)
    return int(level)


def round_score(value: float) -> float:
    """One decimal place, halves rounded up (3.25 -> 3.3)."""
    return math.floor(value * 10 + 0.5) / 10


def compute_score(levels: Iterable[int | None]) -> float | None:
    """Mean of the answered levels rounded to one decimal, or None when nothing is answered."""
    answered = [lvl for lvl in levels if lvl is not None]
    if not answered:
        return None
    return round_score(sum(answered) / len(answered))


def answered_ratings(ratings: Iterable[RatingORM]) -> list[HistoricalRating]:
    return [
        HistoricalRating(
            question_index=r.question_index,
            level=r.level,
            notes=r.notes or "",
            attachment_ids=list(r.attachment_ids or []),
        )
        for r in sorted(ratings, key=lambda r: r.question_index)
        if r.level is not None
    ]


def snapshot_fields(assessment: AssessmentORM, ratings: Iterable[RatingORM]) -> dict[str, Any]:
    """
    Column values for a history row preserving ``assessment``'s finalized state.

    The snapshot date is the finalized timestamp, falling back to the last update.
    """
    return {
        "item_code": assessment.item_code,
        "snapshot_date": assessment.finalized_at or assessment.updated_at,
        "tags": list(assessment.tags or []),
        "score": assessment.score,
        "ratings": [r.to_dict() for r in answered_ratings(ratings)],
        "catalog_version": assessment.catalog_version,
    }


def timestamps_match(a: datetime, b: datetime, tolerance_ms: int) -> bool:
    return abs((a - b).total_seconds()) * 1000 < tolerance_ms


def scores_match(a: float | None, b: float | None, tolerance: float) -> bool:
    """Both scores present and closer than ``tolerance``."""
    if a is None or b is None:
        return False
    return abs(a - b) < tolerance


def is_same_state(
    incoming_updated: datetime,
    local_updated: datetime,
    incoming_score: float | None,
    local_score: float | None,
    tolerance_ms: int,
    score_tolerance: float,
) -> bool:
    return timestamps_match(incoming_updated, local_updated, tolerance_ms) and scores_match(
        incoming_score, local_score, score_tolerance
    )


def progress_percent(answered: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(answered / total * 100)


@dataclass
class _ItemRows:
    finalized: AssessmentORM | None = None
    in_progress: AssessmentORM | None = None


class ScoringService:
    """
    Per-item and per-grouping-key summaries over the current store.

    Example:
        >>> svc = ScoringService(session, catalog)
        >>> [row.score for row in svc.item_scores()]
    """

    def __init__(self, s: Session, catalog: ReferenceCatalog, logger: logging.Logger | None = None):
        self.s = s
        self.catalog = catalog
        self.logger = logger or logging.getLogger(__name__)

    def _rows_by_item(self) -> dict[str, _ItemRows]:
        rows: dict[str, _ItemRows] = {}
        for a in self.s.query(AssessmentORM).all():
            entry = rows.setdefault(a.item_code, _ItemRows())
            if a.status == STATUS_FINALIZED:
                entry.finalized = a
            else:
                entry.in_progress = a
        return rows

    def _answered_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        q = self.s.query(RatingORM.assessment_id).filter(RatingORM.level.isnot(None))
        for (assessment_id,) in q:
            counts[assessment_id] = counts.get(assessment_id, 0) + 1
        return counts

    def item_scores(self, grouping_key: str | None = None) -> list[ItemScore]:
        """
        One row per catalog item (plus any stored item the catalog does not know).
        - An in-progress assessment decides the state and progress.
        - The score is always the finalized one.
        """
        try:
            rows = self._rows_by_item()
            answered = self._answered_counts()
        except SQLAlchemyError:
            self.logger.exception("Database error computing item scores")
            raise

        codes = [item.code for item in self.catalog]
        codes += sorted(code for code in rows if code not in self.catalog)

        results: list[ItemScore] = []
        for code in codes:
            item = self.catalog.by_code(code)
            entry = rows.get(code, _ItemRows())
            current = entry.in_progress or entry.finalized
            group = item.grouping_key if item else (current.grouping_key if current else "")
            if grouping_key is not None and group != grouping_key:
                continue

            state: ItemState = "absent"
            if entry.in_progress is not None:
                state = STATUS_IN_PROGRESS
            elif entry.finalized is not None:
                state = STATUS_FINALIZED

            total = item.question_count if item else 0
            results.append(
                ItemScore(
                    item_code=code,
                    display_name=item.display_name if item else (current.display_name if current else code),
                    grouping_key=group,
                    state=state,
                    score=entry.finalized.score if entry.finalized else None,
                    progress=progress_percent(answered.get(current.id, 0), total) if current else 0,
                    updated_at=current.updated_at if current else None,
                    tags=list(current.tags or []) if current else [],
                )
            )

        self.logger.debug("Computed %d item score rows", len(results))
        return results

    def grouping_averages(self) -> list[AverageResult]:
        """
        Per-grouping-key average of finalized scores.
        - coverage = finalized items / catalog items in the group.
        - Groups without a finalized score average to NaN.
        """
        by_group: dict[str, list[ItemScore]] = {}
        for row in self.item_scores():
            by_group.setdefault(row.grouping_key, []).append(row)

        results: list[AverageResult] = []
        for key in sorted(by_group):
            rows = by_group[key]
            scores = [r.score for r in rows if r.score is not None]
            avg = sum(scores) / len(scores) if scores else float("nan")
            catalog_total = len(self.catalog.items_in_group(key)) or len(rows)
            results.append(AverageResult(key, avg, len(scores) / catalog_total if catalog_total else 0.0))

        self.logger.info("Computed grouping averages for %d groups", len(results))
        return results
