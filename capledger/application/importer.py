"""
Import reconciler: merges an interchange document into the local store.

Merge with history: an incoming assessment newer than its local counterpart
becomes current and the local finalized state moves to history; an older
finalized one is appended to history and the local state stays current.
Each item is applied in its own transaction and failures are recorded on the
result instead of raised, so one bad item never blocks the rest.
"""

from __future__ import annotations

import json
from typing import Any

from ..domain.models import (
    CancellationToken,
    ImportItemResult,
    ImportResult,
    ProgressCallback,
)
from ..domain.schemas import (
    AssessmentRecord,
    AttachmentRecord,
    DocumentAccepted,
    DocumentValidation,
    ExportDocument,
    RatingRecord,
    validate_document,
)
from ..domain.services import is_same_state, scores_match, snapshot_fields, timestamps_match
from ..infrastructure.blobstore import BlobStore
from ..infrastructure.config import Settings, get_settings
from ..infrastructure.exceptions import CapabilityLedgerError, StorageError, ValidationError
from ..infrastructure.locks import KeyedLocks
from ..infrastructure.logging import LogContext, get_logger, log_operation
from ..infrastructure.models import STATUS_FINALIZED, AssessmentORM, new_id
from ..infrastructure.repositories import (
    AssessmentRepo,
    AttachmentRepo,
    HistoryRepo,
    RatingRepo,
    TagRepo,
)
from ..infrastructure.uow import UnitOfWork
from ..utils.archive import attachment_id_from_name, read_archive

logger = get_logger(__name__)


def _report(progress: ProgressCallback | None, percent: float, message: str) -> None:
    if progress is not None:
        progress(int(percent), message)


def _describe(exc: Exception) -> str:
    return exc.message if isinstance(exc, CapabilityLedgerError) else str(exc)


class ImportReconciler:
    """
    Write-side of the interchange format.

    Example:
        >>> reconciler = ImportReconciler(uow, blob_store)
        >>> result = reconciler.import_json(text)
        >>> result.success, result.imported_as_current, result.skipped
        (True, 0, 3)
    """

    def __init__(
        self,
        uow: UnitOfWork,
        blob_store: BlobStore | None = None,
        settings: Settings | None = None,
        rating_locks: KeyedLocks | None = None,
    ):
        self.uow = uow
        self.blob_store = blob_store
        self.settings = settings or get_settings()
        self.rating_locks = rating_locks or KeyedLocks()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def validate(self, raw: str | bytes | dict[str, Any] | ExportDocument) -> DocumentValidation:
        return validate_document(raw, self.settings.imports.supported_versions)

    def import_json(
        self,
        text: str | bytes,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ImportResult:
        """Parse and merge a plain JSON document."""
        _report(progress, 10, "Parsing JSON...")
        if self._too_large(text):
            return ImportResult.rejected(
                f"Import exceeds the {self.settings.security.max_import_size_mb} MB limit"
            )
        try:
            raw = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ImportResult.rejected("Invalid JSON format")
        return self.import_document(raw, progress, cancel_token)

    @log_operation("import_document")
    def import_document(
        self,
        raw: str | bytes | dict[str, Any] | ExportDocument,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ImportResult:
        outcome = self.validate(raw)
        if not isinstance(outcome, DocumentAccepted):
            logger.warning(f"Rejected import document: {outcome.message}")
            return ImportResult.rejected(f"Invalid export data structure: {outcome.message}")

        _report(progress, 30, "Processing assessments...")
        return self._process(outcome.document, progress, cancel_token, span=(30, 100))

    @log_operation("import_archive")
    def import_archive(
        self,
        raw: bytes,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ImportResult:
        """Merge ``data.json`` from an archive, then restore attachment payloads."""
        _report(progress, 10, "Reading ZIP file...")
        if self._too_large(raw):
            return ImportResult.rejected(
                f"Import exceeds the {self.settings.security.max_import_size_mb} MB limit"
            )
        try:
            contents = read_archive(raw)
        except ValidationError as e:
            return ImportResult.rejected(e.reason)

        _report(progress, 20, "Parsing data...")
        try:
            data = json.loads(contents.data_text)
        except json.JSONDecodeError:
            return ImportResult.rejected("Invalid JSON in data.json")

        outcome = self.validate(data)
        if not isinstance(outcome, DocumentAccepted):
            logger.warning(f"Rejected archive document: {outcome.message}")
            return ImportResult.rejected(f"Invalid export data structure: {outcome.message}")

        _report(progress, 40, "Processing assessments...")
        result = self._process(outcome.document, progress, cancel_token, span=(40, 70))
        if result.cancelled:
            return result

        _report(progress, 70, "Importing attachments...")
        self._restore_attachments(outcome.document, contents.attachments, result)

        _report(progress, 100, "Complete")
        return result

    def _too_large(self, raw: str | bytes) -> bool:
        limit = self.settings.security.max_import_size_mb * 1024 * 1024
        return len(raw) > limit

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _process(
        self,
        document: ExportDocument,
        progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
        span: tuple[int, int],
    ) -> ImportResult:
        result = ImportResult()
        inserted: set[str] = set()
        ratings_of: dict[str, list[RatingRecord]] = {}
        for rating in document.data.ratings:
            ratings_of.setdefault(rating.assessment_id, []).append(rating)

        start, end = span
        total = len(document.data.assessments)
        for i, incoming in enumerate(document.data.assessments):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Import cancelled after {i} of {total} assessments")
                result.cancelled = True
                return result

            _report(
                progress,
                start + (end - start) * 0.9 * (i + 1) / total,
                f"Processing {incoming.display_name or incoming.item_code}...",
            )
            with LogContext(item_code=incoming.item_code):
                try:
                    item = self._merge_one(incoming, ratings_of.get(incoming.id, []), inserted)
                except Exception as e:
                    logger.exception(f"Failed to import {incoming.item_code}")
                    reason = _describe(e)
                    result.errors.append(
                        f"Failed to import {incoming.display_name or incoming.item_code}: {reason}"
                    )
                    item = ImportItemResult(
                        incoming.item_code, incoming.display_name, "error", reason
                    )
            result.record(item)

        _report(progress, start + (end - start) * 0.95, "Importing tags and history...")
        self._merge_tags_and_history(document, result)

        logger.info(
            f"Import finished: {result.imported_as_current} current, "
            f"{result.imported_as_history} history, {result.skipped} skipped, "
            f"{len(result.errors)} errors"
        )
        if span[1] == 100:
            _report(progress, 100, "Complete")
        return result

    @staticmethod
    def _counterpart(
        candidates: list[AssessmentORM], incoming: AssessmentRecord, inserted: set[str]
    ) -> AssessmentORM | None:
        """Same-status local row when there is one, else the most recently updated."""
        local = [a for a in candidates if a.id not in inserted]
        for a in local:
            if a.status == incoming.status:
                return a
        return local[0] if local else None

    def _merge_one(
        self,
        incoming: AssessmentRecord,
        ratings: list[RatingRecord],
        inserted: set[str],
    ) -> ImportItemResult:
        freed: list[str] = []
        item = self._apply_merge(incoming, ratings, inserted, freed)
        self._release_blobs(freed)
        return item

    def _apply_merge(
        self,
        incoming: AssessmentRecord,
        ratings: list[RatingRecord],
        inserted: set[str],
        freed: list[str],
    ) -> ImportItemResult:
        tol = self.settings.imports

        def outcome(action, reason=None) -> ImportItemResult:
            return ImportItemResult(incoming.item_code, incoming.display_name, action, reason)

        with self.uow.begin("assessments", "ratings", "attachments", "history_snapshots") as s:
            repo = AssessmentRepo(s)
            existing = self._counterpart(repo.list_for_item(incoming.item_code), incoming, inserted)

            if existing is None:
                created = repo.create(
                    id=new_id(),
                    item_code=incoming.item_code,
                    grouping_key=incoming.grouping_key,
                    display_name=incoming.display_name,
                    status=incoming.status,
                    tags=list(incoming.tags),
                    catalog_version=incoming.catalog_version,
                    created_at=incoming.created_at,
                    updated_at=incoming.updated_at,
                    finalized_at=incoming.finalized_at,
                    score=incoming.score,
                )
                self._insert_ratings(s, created.id, ratings)
                inserted.add(created.id)
                return outcome("imported_current")

            if is_same_state(
                incoming.updated_at,
                existing.updated_at,
                incoming.score,
                existing.score,
                tol.timestamp_tolerance_ms,
                tol.score_tolerance,
            ):
                return outcome("skipped", "Identical to current assessment")

            if incoming.updated_at > existing.updated_at:
                rating_repo = RatingRepo(s)
                if existing.status == STATUS_FINALIZED and existing.score:
                    HistoryRepo(s).create(
                        id=new_id(),
                        **snapshot_fields(existing, rating_repo.list_for_assessment(existing.id)),
                    )
                # replaced ratings take their evidence with them
                attachments = AttachmentRepo(s)
                for attachment in attachments.list_for_assessment(existing.id):
                    freed.append(attachment.blob_ref)
                    attachments.delete(attachment)
                rating_repo.delete_for_assessment(existing.id)
                repo.update(
                    existing,
                    status=incoming.status,
                    tags=list(incoming.tags),
                    updated_at=incoming.updated_at,
                    finalized_at=incoming.finalized_at,
                    score=incoming.score,
                )
                self._insert_ratings(s, existing.id, ratings)
                return outcome("imported_current", "Replaced older local assessment (moved to history)")

            if incoming.status == STATUS_FINALIZED and incoming.score:
                history = HistoryRepo(s)
                duplicate = any(
                    timestamps_match(h.snapshot_date, incoming.updated_at, tol.timestamp_tolerance_ms)
                    and scores_match(h.score, incoming.score, tol.score_tolerance)
                    for h in history.list_for_item(incoming.item_code)
                )
                if duplicate:
                    return outcome("skipped", "Historical entry already exists")

                history.create(
                    id=new_id(),
                    item_code=incoming.item_code,
                    snapshot_date=incoming.updated_at,
                    tags=list(incoming.tags),
                    score=incoming.score,
                    ratings=[
                        {
                            "question_index": r.question_index,
                            "level": r.level,
                            "notes": r.notes,
                            "attachment_ids": list(r.attachment_ids),
                        }
                        for r in sorted(ratings, key=lambda r: r.question_index)
                        if r.level is not None
                    ],
                    catalog_version=incoming.catalog_version,
                )
                return outcome("imported_history", "Added as historical entry (local is newer)")

            return outcome("skipped", "Local assessment is newer and imported is not finalized")

    @staticmethod
    def _insert_ratings(s, assessment_id: str, ratings: list[RatingRecord]) -> None:
        """Copies of the incoming ratings with new ids and no attachment links."""
        repo = RatingRepo(s)
        for r in ratings:
            repo.create(
                id=new_id(),
                assessment_id=assessment_id,
                question_index=r.question_index,
                level=r.level,
                previous_level=r.previous_level,
                notes=r.notes,
                carried_forward=r.carried_forward,
                attachment_ids=[],
                updated_at=r.updated_at,
            )

    def _merge_tags_and_history(self, document: ExportDocument, result: ImportResult) -> None:
        """Insert tags whose name is unknown and history entries whose id is unknown."""
        try:
            with self.uow.begin("tags", "history_snapshots") as s:
                tags = TagRepo(s)
                for tag in document.data.tags:
                    # counts are copied only for new names; existing counts stay local
                    tags.insert_if_absent(
                        tag.name, usage_count=tag.usage_count, last_used=tag.last_used, id_=tag.id
                    )

                history = HistoryRepo(s)
                for entry in document.data.history:
                    if history.get(entry.id) is not None:
                        continue
                    history.create(
                        id=entry.id,
                        item_code=entry.item_code,
                        snapshot_date=entry.snapshot_date,
                        tags=list(entry.tags),
                        score=entry.score,
                        ratings=[
                            {
                                "question_index": r.question_index,
                                "level": r.level,
                                "notes": r.notes,
                                "attachment_ids": list(r.attachment_ids),
                            }
                            for r in entry.ratings
                        ],
                        catalog_version=entry.catalog_version,
                    )
        except CapabilityLedgerError as e:
            logger.exception("Failed to import tags and history")
            result.errors.append(f"Failed to import tags and history: {_describe(e)}")

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _restore_attachments(
        self, document: ExportDocument, files: dict[str, bytes], result: ImportResult
    ) -> None:
        if not files:
            return
        if self.blob_store is None:
            result.warnings.append("No blob store configured; attachments were not restored")
            return

        by_id = {a.id: a for a in document.data.attachments}
        by_name = {a.file_name: a for a in document.data.attachments}
        for path, payload in files.items():
            attachment_id = attachment_id_from_name(path)
            meta = by_id.get(attachment_id) if attachment_id else None
            if meta is None:
                meta = by_name.get(path.rsplit("/", 1)[-1])
            if meta is None:
                result.warnings.append(f"{path}: no attachment metadata in the document")
                continue
            try:
                if self._restore_one(document, meta, payload):
                    result.attachments_restored += 1
            except (CapabilityLedgerError, OSError) as e:
                logger.warning(f"Could not restore attachment {path}: {e}")
                result.warnings.append(f"{path}: {_describe(e)}")

    def _release_blobs(self, blob_refs: list[str]) -> None:
        if self.blob_store is None:
            return
        for ref in blob_refs:
            try:
                self.blob_store.delete(ref)
            except (OSError, StorageError):
                logger.exception(f"Could not delete blob {ref}; it is now orphaned")

    def _restore_one(self, document: ExportDocument, meta: AttachmentRecord, payload: bytes) -> bool:
        """Attach one payload to the matching local rating; False when it already exists."""
        exported = next((a for a in document.data.assessments if a.id == meta.assessment_id), None)
        if exported is None:
            raise ValidationError("assessment_id", "attachment references an unknown assessment")
        exported_rating = next((r for r in document.data.ratings if r.id == meta.rating_id), None)
        if exported_rating is None:
            raise ValidationError("rating_id", "attachment references an unknown rating")

        with self.uow.read() as s:
            if AttachmentRepo(s).get(meta.id) is not None:
                return False
            repo = AssessmentRepo(s)
            local = repo.find(exported.item_code, exported.status)
            if local is None:
                candidates = repo.list_for_item(exported.item_code)
                local = candidates[0] if candidates else None
            if local is None:
                raise ValidationError("item_code", "no local assessment", exported.item_code)
            local_id = local.id

        question_index = exported_rating.question_index
        blob_ref = self.blob_store.put(payload)
        try:
            with self.rating_locks.hold((local_id, question_index)):
                with self.uow.begin("attachments", "ratings") as s:
                    rating = RatingRepo(s).get_for_question(local_id, question_index)
                    if rating is None:
                        raise ValidationError(
                            "question_index", "no local rating for question", question_index
                        )
                    AttachmentRepo(s).create(
                        id=meta.id,
                        assessment_id=local_id,
                        rating_id=rating.id,
                        file_name=meta.file_name,
                        file_type=meta.file_type,
                        file_size=meta.file_size or len(payload),
                        blob_ref=blob_ref,
                        description=meta.description,
                        uploaded_at=meta.uploaded_at,
                    )
                    rating.attachment_ids = [*(rating.attachment_ids or []), meta.id]
        except Exception:
            self.blob_store.delete(blob_ref)
            raise
        return True
