"""
Assessment lifecycle engine.

Per item code the derived state is ``absent``, ``in_progress`` or
``finalized``; the store holds at most one assessment of each status per item.
Every public operation is one unit of work: it applies completely or not at
all, and raises a NotFoundError subclass for unknown ids.
"""

from __future__ import annotations

from collections.abc import Iterable

from ..domain.models import ItemState
from ..domain.schemas import RatingInput, validate_input
from ..domain.services import clamp_rating, compute_score, progress_percent, snapshot_fields
from ..infrastructure.blobstore import BlobStore
from ..infrastructure.catalog import ReferenceCatalog
from ..infrastructure.exceptions import (
    AssessmentStateError,
    IntegrityError,
    StorageError,
    ValidationError,
)
from ..infrastructure.locks import KeyedLocks
from ..infrastructure.logging import LogContext, get_logger, log_operation
from ..infrastructure.models import (
    STATUS_FINALIZED,
    STATUS_IN_PROGRESS,
    AssessmentORM,
    RatingORM,
    new_id,
    utcnow,
)
from ..infrastructure.repositories import (
    AssessmentRepo,
    AttachmentRepo,
    HistoryRepo,
    RatingRepo,
)
from ..infrastructure.uow import UnitOfWork
from .tags import normalize_tags, record_usage

logger = get_logger(__name__)

ALL_TABLES = ("assessments", "ratings", "history_snapshots", "tags", "attachments")


class LifecycleEngine:
    """
    State machine for individual assessments.

    Example:
        >>> engine = LifecycleEngine(uow, catalog)
        >>> a = engine.start("CM_Establish_Case", ["#baseline"])
        >>> engine.save_rating(a.id, 0, 4)
        >>> engine.finalize(a.id).score
        4.0
    """

    def __init__(
        self,
        uow: UnitOfWork,
        catalog: ReferenceCatalog,
        blob_store: BlobStore | None = None,
        rating_locks: KeyedLocks | None = None,
    ):
        self.uow = uow
        self.catalog = catalog
        self.blob_store = blob_store
        # shared with AttachmentService: one lock per (assessment_id, question_index)
        self.rating_locks = rating_locks or KeyedLocks()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @log_operation("start_assessment")
    def start(self, item_code: str, initial_tags: Iterable[str] = ()) -> AssessmentORM:
        """Create an in-progress assessment for a catalog item."""
        item = self.catalog.require(item_code)
        tags = normalize_tags(initial_tags)

        with self.uow.begin("assessments", "tags") as s:
            repo = AssessmentRepo(s)
            if repo.find(item_code, STATUS_IN_PROGRESS) is not None:
                raise AssessmentStateError(
                    f"An assessment of {item_code} is already in progress", item_code=item_code
                )
            now = utcnow()
            assessment = repo.create(
                id=new_id(),
                item_code=item.code,
                grouping_key=item.grouping_key,
                display_name=item.display_name,
                status=STATUS_IN_PROGRESS,
                tags=tags,
                catalog_version=item.catalog_version or self.catalog.version,
                created_at=now,
                updated_at=now,
            )
            if tags:
                record_usage(s, tags)

        logger.info(f"Started assessment {assessment.id} for {item_code}")
        return assessment

    def save_rating(
        self,
        assessment_id: str,
        question_index: int,
        level: int | None,
        notes: str = "",
    ) -> str:
        """
        Upsert the rating of one question and touch the assessment; returns the rating id.

        Calls for the same question are serialized in-process; a unique-key
        collision with another writer is retried once as an update.
        """
        level = clamp_rating(level)
        validation = validate_input(
            RatingInput, {"question_index": question_index, "level": level, "notes": notes}
        )
        if not validation.success:
            first = validation.errors[0]
            raise ValidationError(first.field, first.message, first.value)

        with LogContext(assessment_id=assessment_id), self.rating_locks.hold(
            (assessment_id, question_index)
        ):
            try:
                return self._upsert_rating(assessment_id, question_index, level, notes)
            except IntegrityError:
                logger.warning(
                    f"Concurrent insert for question {question_index} of {assessment_id}; retrying"
                )
                return self._upsert_rating(assessment_id, question_index, level, notes)

    def _upsert_rating(
        self, assessment_id: str, question_index: int, level: int | None, notes: str
    ) -> str:
        with self.uow.begin("ratings", "assessments") as s:
            repo = AssessmentRepo(s)
            assessment = repo.get_required(assessment_id)
            if assessment.status != STATUS_IN_PROGRESS:
                raise AssessmentStateError(
                    "Finalized assessments are read-only; edit the assessment first",
                    assessment_id=assessment_id,
                    item_code=assessment.item_code,
                )
            self._check_question(assessment, question_index)

            now = utcnow()
            rating = RatingRepo(s).upsert(assessment.id, question_index, level, notes, now)
            repo.update(assessment, updated_at=now)
            return rating.id

    @log_operation("finalize_assessment")
    def finalize(self, assessment_id: str) -> AssessmentORM:
        """
        Score and finalize. A different finalized assessment of the same item is
        snapshotted to history (when scored) and deleted first.
        """
        freed: list[str] = []
        with self.uow.begin(*ALL_TABLES) as s:
            repo = AssessmentRepo(s)
            ratings = RatingRepo(s)
            assessment = repo.get_required(assessment_id)
            score = compute_score(r.level for r in ratings.list_for_assessment(assessment.id))

            previous = repo.find(assessment.item_code, STATUS_FINALIZED)
            if previous is not None and previous.id != assessment.id:
                if previous.score is not None:
                    HistoryRepo(s).create(
                        id=new_id(),
                        **snapshot_fields(previous, ratings.list_for_assessment(previous.id)),
                    )
                freed = repo.delete_cascade(previous)
                logger.info(f"Replaced finalized assessment {previous.id} of {assessment.item_code}")

            now = utcnow()
            repo.update(
                assessment,
                status=STATUS_FINALIZED,
                score=score,
                finalized_at=now,
                updated_at=now,
            )
            if assessment.tags:
                record_usage(s, assessment.tags)

        self._release_blobs(freed)
        logger.info(f"Finalized {assessment_id} with score {score}")
        return assessment

    @log_operation("edit_assessment")
    def edit_assessment(self, assessment_id: str) -> AssessmentORM:
        """
        Reopen a finalized assessment. The finalized state goes to history and
        each answered level becomes a carry-forward suggestion.
        """
        with self.uow.begin("assessments", "ratings", "history_snapshots") as s:
            repo = AssessmentRepo(s)
            assessment = repo.get_required(assessment_id)
            if assessment.status == STATUS_IN_PROGRESS:
                return assessment

            if repo.find(assessment.item_code, STATUS_IN_PROGRESS) is not None:
                raise AssessmentStateError(
                    f"Another assessment of {assessment.item_code} is already in progress",
                    assessment_id=assessment_id,
                    item_code=assessment.item_code,
                )

            ratings = RatingRepo(s).list_for_assessment(assessment.id)
            if assessment.score is not None:
                HistoryRepo(s).create(id=new_id(), **snapshot_fields(assessment, ratings))

            now = utcnow()
            for rating in ratings:
                if rating.level is not None:
                    rating.previous_level = rating.level
                    rating.level = None
                    rating.carried_forward = True
                    rating.updated_at = now
            repo.update(assessment, status=STATUS_IN_PROGRESS, updated_at=now)

        return assessment

    @log_operation("revert_edit")
    def revert_edit(self, assessment_id: str) -> AssessmentORM:
        """
        Undo an edit by consuming the newest history entry of the item.

        Ratings are rebuilt from the snapshot; attachments it references are
        re-linked to the rebuilt ratings, attachments of discarded answers are
        removed. Without history only the status is restored.
        """
        freed: list[str] = []
        with self.uow.begin(*ALL_TABLES) as s:
            repo = AssessmentRepo(s)
            assessment = repo.get_required(assessment_id)

            other = repo.find(assessment.item_code, STATUS_FINALIZED)
            if other is not None and other.id != assessment.id:
                raise AssessmentStateError(
                    f"{assessment.item_code} already has a finalized assessment",
                    assessment_id=assessment_id,
                    item_code=assessment.item_code,
                )

            history = HistoryRepo(s)
            latest = history.latest_for_item(assessment.item_code)
            now = utcnow()
            if latest is None:
                logger.warning(f"No history to revert {assessment_id}; restoring status only")
                repo.update(assessment, status=STATUS_FINALIZED, updated_at=now)
                return assessment

            attachments = AttachmentRepo(s)
            current_attachments = attachments.list_for_assessment(assessment.id)
            ratings = RatingRepo(s)
            ratings.delete_for_assessment(assessment.id)

            owner_of: dict[str, str] = {}
            for entry in latest.ratings:
                rating = ratings.create(
                    id=new_id(),
                    assessment_id=assessment.id,
                    question_index=entry["question_index"],
                    level=entry["level"],
                    previous_level=None,
                    notes=entry.get("notes") or "",
                    carried_forward=False,
                    attachment_ids=list(entry.get("attachment_ids") or []),
                    updated_at=now,
                )
                for attachment_id in rating.attachment_ids:
                    owner_of[attachment_id] = rating.id

            for attachment in current_attachments:
                if attachment.id in owner_of:
                    attachment.rating_id = owner_of[attachment.id]
                elif attachment.rating_id is not None:
                    freed.append(attachment.blob_ref)
                    attachments.delete(attachment)

            repo.update(
                assessment,
                status=STATUS_FINALIZED,
                tags=list(latest.tags or []),
                score=latest.score,
                finalized_at=latest.snapshot_date,
                updated_at=now,
            )
            history.delete(latest)

        self._release_blobs(freed)
        return assessment

    @log_operation("discard_assessment")
    def discard_assessment(self, assessment_id: str) -> None:
        """Delete an in-progress assessment with its ratings and attachments."""
        freed: list[str] = []
        with self.uow.begin("assessments", "ratings", "attachments") as s:
            repo = AssessmentRepo(s)
            assessment = repo.get_required(assessment_id)
            if assessment.status == STATUS_FINALIZED:
                raise AssessmentStateError(
                    "Finalized assessments cannot be discarded; delete it instead",
                    assessment_id=assessment_id,
                    item_code=assessment.item_code,
                )
            freed = repo.delete_cascade(assessment)
        self._release_blobs(freed)

    @log_operation("update_tags")
    def update_tags(self, assessment_id: str, tags: Iterable[str]) -> AssessmentORM:
        """Replace the tag set and count each tag as used."""
        normalized = normalize_tags(tags)
        with self.uow.begin("assessments", "tags") as s:
            repo = AssessmentRepo(s)
            assessment = repo.get_required(assessment_id)
            repo.update(assessment, tags=normalized, updated_at=utcnow())
            record_usage(s, normalized)
        return assessment

    @log_operation("delete_assessment")
    def delete_assessment(self, assessment_id: str) -> None:
        """Delete regardless of status."""
        with self.uow.begin("assessments", "ratings", "attachments") as s:
            repo = AssessmentRepo(s)
            freed = repo.delete_cascade(repo.get_required(assessment_id))
        self._release_blobs(freed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, assessment_id: str) -> AssessmentORM:
        with self.uow.read() as s:
            return AssessmentRepo(s).get_required(assessment_id)

    def list_assessments(
        self,
        item_code: str | None = None,
        status: str | None = None,
        grouping_key: str | None = None,
    ) -> list[AssessmentORM]:
        with self.uow.read() as s:
            return AssessmentRepo(s).search(
                item_codes=[item_code] if item_code else None,
                status=status,
                grouping_key=grouping_key,
            )

    def ratings_for(self, assessment_id: str) -> list[RatingORM]:
        with self.uow.read() as s:
            AssessmentRepo(s).get_required(assessment_id)
            return RatingRepo(s).list_for_assessment(assessment_id)

    def item_state(self, item_code: str) -> ItemState:
        with self.uow.read() as s:
            repo = AssessmentRepo(s)
            if repo.find(item_code, STATUS_IN_PROGRESS) is not None:
                return "in_progress"
            if repo.find(item_code, STATUS_FINALIZED) is not None:
                return "finalized"
        return "absent"

    def current_for_item(self, item_code: str) -> AssessmentORM | None:
        """The in-progress assessment when there is one, else the finalized one."""
        with self.uow.read() as s:
            repo = AssessmentRepo(s)
            return repo.find(item_code, STATUS_IN_PROGRESS) or repo.find(
                item_code, STATUS_FINALIZED
            )

    def progress(self, assessment_id: str) -> int:
        """Percent of the item's catalog questions that have an answer."""
        with self.uow.read() as s:
            assessment = AssessmentRepo(s).get_required(assessment_id)
            answered = sum(
                1 for r in RatingRepo(s).list_for_assessment(assessment_id) if r.level is not None
            )
        item = self.catalog.by_code(assessment.item_code)
        return progress_percent(answered, item.question_count if item else 0)

    # ------------------------------------------------------------------

    def _check_question(self, assessment: AssessmentORM, question_index: int) -> None:
        item = self.catalog.by_code(assessment.item_code)
        if item is not None and item.question_count and question_index >= item.question_count:
            raise ValidationError(
                "question_index",
                f"{assessment.item_code} has {item.question_count} questions",
                question_index,
            )

    def _release_blobs(self, blob_refs: Iterable[str]) -> None:
        """Drop blobs of deleted attachments once their rows are committed away."""
        if self.blob_store is None:
            return
        for ref in blob_refs:
            try:
                self.blob_store.delete(ref)
            except (OSError, StorageError):
                logger.exception(f"Could not delete blob {ref}; it is now orphaned")
