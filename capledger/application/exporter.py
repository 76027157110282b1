"""
Export collector: builds the interchange document and its archive/xlsx renditions.

Scope narrows the assessments; ratings and attachment metadata follow the
selected assessments, history follows their item codes and the tag ledger is
always exported in full.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..domain.models import CancellationToken, ExportScope, ProgressCallback
from ..domain.schemas import (
    FORMAT_VERSION,
    AssessmentRecord,
    AttachmentRecord,
    DocumentData,
    DocumentMetadata,
    ExportDocument,
    HistoricalRatingRecord,
    HistoryRecord,
    RatingRecord,
    ScopeDetails,
    TagRecord,
    iso_z,
)
from ..infrastructure.blobstore import BlobStore
from ..infrastructure.catalog import ReferenceCatalog
from ..infrastructure.config import Settings, get_settings
from ..infrastructure.exceptions import (
    BlobNotFoundError,
    ExportError,
    OperationCancelledError,
    StorageError,
    ValidationError,
)
from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import AttachmentORM, utcnow
from ..infrastructure.repositories import (
    AssessmentRepo,
    AttachmentRepo,
    HistoryRepo,
    RatingRepo,
    TagRepo,
)
from ..infrastructure.uow import UnitOfWork
from ..utils.archive import attachment_path, build_archive
from ..utils.exports import make_xlsx_export_bytes

logger = get_logger(__name__)


def _report(progress: ProgressCallback | None, percent: int, message: str) -> None:
    if progress is not None:
        progress(percent, message)


def _check_cancel(token: CancellationToken | None, operation: str) -> None:
    if token is not None and token.cancelled:
        logger.info(f"{operation} cancelled by caller")
        raise OperationCancelledError(operation)


class ExportCollector:
    """
    Read-side of the interchange format.

    Example:
        >>> collector = ExportCollector(uow, catalog, blob_store)
        >>> text = collector.export_json(scope="item", item_code="CM_Establish_Case")
        >>> archive = collector.export_archive()
    """

    def __init__(
        self,
        uow: UnitOfWork,
        catalog: ReferenceCatalog,
        blob_store: BlobStore | None = None,
        settings: Settings | None = None,
    ):
        self.uow = uow
        self.catalog = catalog
        self.blob_store = blob_store
        self.settings = settings or get_settings()

    def _scope_details(
        self, scope: ExportScope, grouping_key: str | None, item_code: str | None
    ) -> ScopeDetails | None:
        if scope == "item":
            if not item_code:
                raise ValidationError("item_code", "Item scope requires an item code")
            item = self.catalog.by_code(item_code)
            return ScopeDetails(
                item_code=item_code,
                display_name=item.display_name if item else None,
                grouping_key=item.grouping_key if item else None,
            )
        if scope == "grouping_key":
            if not grouping_key:
                raise ValidationError("grouping_key", "Grouping scope requires a grouping key")
            return ScopeDetails(grouping_key=grouping_key)
        if scope == "full":
            return None
        raise ValidationError("scope", f"Unknown export scope '{scope}'", scope)

    @log_operation("collect_export")
    def collect(
        self,
        scope: ExportScope = "full",
        grouping_key: str | None = None,
        item_code: str | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExportDocument:
        """Gather the document from one consistent read of the store."""
        _report(progress, 10, "Resolving export scope...")
        scope_details = self._scope_details(scope, grouping_key, item_code)
        _check_cancel(cancel_token, "export")

        _report(progress, 40, "Reading store...")
        with self.uow.read() as s:
            if scope == "item":
                assessments = AssessmentRepo(s).search(item_codes=[item_code])
            elif scope == "grouping_key":
                assessments = AssessmentRepo(s).search(grouping_key=grouping_key)
            else:
                assessments = AssessmentRepo(s).search()

            ids = [a.id for a in assessments]
            codes = list(dict.fromkeys(a.item_code for a in assessments))
            ratings = RatingRepo(s).list_for_assessments(ids)
            history = HistoryRepo(s).list_for_items(codes)
            tags = TagRepo(s).list_by_usage()
            attachments = AttachmentRepo(s).list_for_assessments(ids)

        _check_cancel(cancel_token, "export")
        _report(progress, 70, "Building document...")
        data = DocumentData(
            assessments=[
                AssessmentRecord(
                    id=a.id,
                    item_code=a.item_code,
                    grouping_key=a.grouping_key,
                    display_name=a.display_name,
                    status=a.status,
                    tags=list(a.tags or []),
                    catalog_version=a.catalog_version,
                    created_at=a.created_at,
                    updated_at=a.updated_at,
                    finalized_at=a.finalized_at,
                    score=a.score,
                )
                for a in assessments
            ],
            ratings=[
                RatingRecord(
                    id=r.id,
                    assessment_id=r.assessment_id,
                    question_index=r.question_index,
                    level=r.level,
                    previous_level=r.previous_level,
                    notes=r.notes or "",
                    carried_forward=r.carried_forward,
                    attachment_ids=list(r.attachment_ids or []),
                    updated_at=r.updated_at,
                )
                for r in ratings
            ],
            history=[
                HistoryRecord(
                    id=h.id,
                    item_code=h.item_code,
                    snapshot_date=h.snapshot_date,
                    tags=list(h.tags or []),
                    score=h.score,
                    ratings=[HistoricalRatingRecord(**entry) for entry in h.ratings or []],
                    catalog_version=h.catalog_version,
                )
                for h in history
            ],
            tags=[
                TagRecord(id=t.id, name=t.name, usage_count=t.usage_count, last_used=t.last_used)
                for t in tags
            ],
            attachments=[
                AttachmentRecord(
                    id=att.id,
                    assessment_id=att.assessment_id,
                    rating_id=att.rating_id,
                    file_name=att.file_name,
                    file_type=att.file_type,
                    file_size=att.file_size,
                    description=att.description,
                    uploaded_at=att.uploaded_at,
                )
                for att in attachments
            ],
        )

        document = ExportDocument(
            format_version=FORMAT_VERSION,
            exported_at=utcnow(),
            app_version=self.settings.app.version,
            catalog_version=self.catalog.version or self.settings.catalog.default_version,
            scope=scope,
            scope_details=scope_details,
            data=data,
            metadata=DocumentMetadata(
                total_assessments=len(assessments),
                total_ratings=len(ratings),
                total_history=len(history),
                total_attachments=len(attachments),
                grouping_keys=list(dict.fromkeys(a.grouping_key for a in assessments)),
                item_codes=codes,
            ),
        )
        logger.info(
            f"Collected {len(assessments)} assessments, {len(history)} history entries "
            f"for {scope} export"
        )
        _report(progress, 100, "Complete")
        return document

    def export_json(
        self,
        scope: ExportScope = "full",
        grouping_key: str | None = None,
        item_code: str | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Pretty-printed camelCase JSON."""
        document = self.collect(scope, grouping_key, item_code, progress, cancel_token)
        return document.to_json(indent=2)

    @log_operation("export_archive")
    def export_archive(
        self,
        scope: ExportScope = "full",
        grouping_key: str | None = None,
        item_code: str | None = None,
        include_attachments: bool = True,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bytes:
        """Zip with ``manifest.json``, ``data.json`` and the attachment payloads."""
        _report(progress, 10, "Collecting assessment data...")
        document = self.collect(scope, grouping_key, item_code, cancel_token=cancel_token)

        _check_cancel(cancel_token, "export")
        _report(progress, 30, "Adding JSON data...")
        data_text = document.to_json(indent=2)

        _report(progress, 50, "Adding attachments...")
        files: dict[str, bytes] = {}
        if include_attachments:
            files = self._attachment_files(document, cancel_token)

        _check_cancel(cancel_token, "export")
        _report(progress, 80, "Creating manifest...")
        manifest = self._manifest(document, include_attachments)

        _report(progress, 90, "Compressing...")
        archive = build_archive(manifest, data_text, files)

        _report(progress, 100, "Complete")
        logger.info(f"Built archive with {len(files)} attachments ({len(archive)} bytes)")
        return archive

    def _attachment_files(
        self, document: ExportDocument, cancel_token: CancellationToken | None
    ) -> dict[str, bytes]:
        if self.blob_store is None:
            raise ExportError("No blob store configured for attachment export", "archive")

        code_of = {a.id: a.item_code for a in document.data.assessments}
        wanted = {att.id for att in document.data.attachments}
        with self.uow.read() as s:
            rows: list[AttachmentORM] = [
                att
                for att in AttachmentRepo(s).list_for_assessments(list(code_of))
                if att.id in wanted
            ]

        files: dict[str, bytes] = {}
        for att in rows:
            _check_cancel(cancel_token, "export")
            try:
                payload = self.blob_store.get(att.blob_ref)
            except (BlobNotFoundError, StorageError) as e:
                raise ExportError(
                    f"Attachment {att.file_name} could not be read: {e.message}",
                    "archive",
                    {"attachment_id": att.id},
                ) from e
            files[attachment_path(code_of[att.assessment_id], att.id, att.file_name)] = payload
        return files

    def _manifest(self, document: ExportDocument, include_attachments: bool) -> dict[str, Any]:
        return {
            "formatVersion": document.format_version,
            "exportedAt": iso_z(document.exported_at),
            "appVersion": document.app_version,
            "catalogVersion": document.catalog_version,
            "scope": document.scope,
            "contents": {"dataJson": True, "attachments": include_attachments},
            "stats": document.metadata.model_dump(mode="json", by_alias=True),
        }

    @log_operation("export_xlsx")
    def export_xlsx(
        self,
        scope: ExportScope = "full",
        grouping_key: str | None = None,
        item_code: str | None = None,
    ) -> bytes:
        """Single-sheet summary: one row per assessment."""
        document = self.collect(scope, grouping_key, item_code)
        answered: dict[str, int] = {}
        for r in document.data.ratings:
            if r.level is not None:
                answered[r.assessment_id] = answered.get(r.assessment_id, 0) + 1

        rows = []
        for a in document.data.assessments:
            item = self.catalog.by_code(a.item_code)
            rows.append(
                {
                    "GroupingKey": a.grouping_key,
                    "ItemCode": a.item_code,
                    "Item": a.display_name,
                    "Status": a.status,
                    "Score": a.score,
                    "Answered": answered.get(a.id, 0),
                    "Questions": item.question_count if item else None,
                    "Tags": ", ".join(a.tags),
                    "UpdatedAt": _naive(a.updated_at),
                    "FinalizedAt": _naive(a.finalized_at),
                }
            )
        return make_xlsx_export_bytes(rows)


def _naive(value: datetime | None) -> datetime | None:
    return value.replace(tzinfo=None) if value is not None else None
