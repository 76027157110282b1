from __future__ import annotations

import io
import json
import math
from datetime import UTC, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from capledger.application.attachments import AttachmentService
from capledger.application.exporter import ExportCollector
from capledger.application.history import HistoryManager
from capledger.application.importer import ImportReconciler
from capledger.application.lifecycle import LifecycleEngine
from capledger.application.tags import TagLedger
from capledger.domain.models import ImportResult
from capledger.domain.schemas import DocumentAccepted
from capledger.domain.services import ScoringService
from capledger.infrastructure.catalog import ReferenceCatalog
from capledger.infrastructure.logging import get_logger
from capledger.infrastructure.uow import UnitOfWork
from capledger.web.dependencies import (
    get_attachments,
    get_exporter,
    get_history,
    get_importer,
    get_lifecycle,
    get_reference_catalog,
    get_tags,
    get_unit_of_work,
)
from capledger.web.schemas import (
    AssessmentCreateRequest,
    AssessmentDetail,
    AssessmentResponse,
    AttachmentResponse,
    AverageScore,
    ClearHistoryResponse,
    HistoryResponse,
    ImportResponse,
    ItemScoreResponse,
    ItemStateResponse,
    RatingResponse,
    RatingSaved,
    RatingUpdateRequest,
    TagResponse,
    TagsUpdateRequest,
    ValidationOutcome,
)

router = APIRouter(prefix="/api")
logger = get_logger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
Scope = Literal["full", "grouping_key", "item"]


def _safe_average(value: float | None) -> float | None:
    if value is None:
        return None
    if math.isnan(value):
        return None
    return float(value)


def _export_filename(prefix: str, extension: str, scope: str) -> str:
    date = datetime.now(UTC).strftime("%Y-%m-%d")
    return f"capledger-{prefix}-{scope}-{date}.{extension}"


def _download(payload: bytes, media_type: str, filename: str) -> StreamingResponse:
    stream = io.BytesIO(payload)
    stream.seek(0)
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    return StreamingResponse(stream, media_type=media_type, headers=headers)


def _import_response(result: ImportResult) -> ImportResponse:
    return ImportResponse(**result.to_dict())


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Catalog items and summaries
# ---------------------------------------------------------------------------


@router.get("/items", response_model=list[ItemScoreResponse])
def list_items(
    grouping_key: Optional[str] = None,
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ReferenceCatalog = Depends(get_reference_catalog),
) -> list[ItemScoreResponse]:
    with uow.read() as s:
        rows = ScoringService(s, catalog, logger).item_scores(grouping_key)
    return [
        ItemScoreResponse(
            item_code=row.item_code,
            display_name=row.display_name,
            grouping_key=row.grouping_key,
            state=row.state,
            score=row.score,
            progress=row.progress,
            updated_at=row.updated_at,
            tags=row.tags,
        )
        for row in rows
    ]


@router.get("/items/{item_code}/state", response_model=ItemStateResponse)
def get_item_state(
    item_code: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> ItemStateResponse:
    current = engine.current_for_item(item_code)
    return ItemStateResponse(
        item_code=item_code,
        state=engine.item_state(item_code),
        current=AssessmentResponse.model_validate(current) if current else None,
    )


@router.get("/groups/averages", response_model=list[AverageScore])
def list_grouping_averages(
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ReferenceCatalog = Depends(get_reference_catalog),
) -> list[AverageScore]:
    with uow.read() as s:
        results = ScoringService(s, catalog, logger).grouping_averages()
    return [
        AverageScore(
            grouping_key=r.grouping_key,
            average=_safe_average(r.average),
            coverage=_safe_average(r.coverage),
        )
        for r in results
    ]


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


@router.get("/assessments", response_model=list[AssessmentResponse])
def list_assessments(
    item_code: Optional[str] = None,
    status_filter: Optional[Literal["in_progress", "finalized"]] = Query(None, alias="status"),
    grouping_key: Optional[str] = None,
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> list[AssessmentResponse]:
    rows = engine.list_assessments(item_code=item_code, status=status_filter, grouping_key=grouping_key)
    return [AssessmentResponse.model_validate(a) for a in rows]


@router.post("/assessments", response_model=AssessmentResponse, status_code=status.HTTP_201_CREATED)
def start_assessment(
    payload: AssessmentCreateRequest,
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> AssessmentResponse:
    return AssessmentResponse.model_validate(engine.start(payload.item_code, payload.tags))


@router.get("/assessments/{assessment_id}", response_model=AssessmentDetail)
def get_assessment(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> AssessmentDetail:
    assessment = engine.get(assessment_id)
    return AssessmentDetail(
        assessment=AssessmentResponse.model_validate(assessment),
        ratings=[RatingResponse.model_validate(r) for r in engine.ratings_for(assessment_id)],
        progress=engine.progress(assessment_id),
    )


@router.delete("/assessments/{assessment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_assessment(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> Response:
    engine.delete_assessment(assessment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/assessments/{assessment_id}/ratings/{question_index}", response_model=RatingSaved)
def save_rating(
    assessment_id: str,
    question_index: int,
    payload: RatingUpdateRequest,
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> RatingSaved:
    rating_id = engine.save_rating(assessment_id, question_index, payload.level, payload.notes)
    return RatingSaved(rating_id=rating_id)


@router.post("/assessments/{assessment_id}/finalize", response_model=AssessmentResponse)
def finalize_assessment(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> AssessmentResponse:
    return AssessmentResponse.model_validate(engine.finalize(assessment_id))


@router.post("/assessments/{assessment_id}/edit", response_model=AssessmentResponse)
def edit_assessment(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> AssessmentResponse:
    return AssessmentResponse.model_validate(engine.edit_assessment(assessment_id))


@router.post("/assessments/{assessment_id}/revert", response_model=AssessmentResponse)
def revert_edit(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> AssessmentResponse:
    return AssessmentResponse.model_validate(engine.revert_edit(assessment_id))


@router.post("/assessments/{assessment_id}/discard", status_code=status.HTTP_204_NO_CONTENT)
def discard_assessment(
    assessment_id: str, engine: LifecycleEngine = Depends(get_lifecycle)
) -> Response:
    engine.discard_assessment(assessment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/assessments/{assessment_id}/tags", response_model=AssessmentResponse)
def update_tags(
    assessment_id: str,
    payload: TagsUpdateRequest,
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> AssessmentResponse:
    return AssessmentResponse.model_validate(engine.update_tags(assessment_id, payload.tags))


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


@router.get("/assessments/{assessment_id}/attachments", response_model=list[AttachmentResponse])
def list_attachments(
    assessment_id: str, service: AttachmentService = Depends(get_attachments)
) -> list[AttachmentResponse]:
    return [AttachmentResponse.model_validate(a) for a in service.list_for_assessment(assessment_id)]


@router.post(
    "/assessments/{assessment_id}/attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def upload_attachment(
    assessment_id: str,
    question_index: int = Form(...),
    description: Optional[str] = Form(None),
    file: UploadFile = File(...),
    service: AttachmentService = Depends(get_attachments),
) -> AttachmentResponse:
    data = file.file.read()
    attachment = service.upload(
        assessment_id,
        question_index,
        file.filename or "attachment",
        file.content_type or "application/octet-stream",
        data,
        description,
    )
    return AttachmentResponse.model_validate(attachment)


@router.get("/attachments/{attachment_id}")
def download_attachment(
    attachment_id: str, service: AttachmentService = Depends(get_attachments)
) -> StreamingResponse:
    attachment = service.get(attachment_id)
    return _download(
        service.read(attachment_id),
        attachment.file_type or "application/octet-stream",
        attachment.file_name,
    )


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_attachment(
    attachment_id: str, service: AttachmentService = Depends(get_attachments)
) -> Response:
    service.delete(attachment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# History and tags
# ---------------------------------------------------------------------------


@router.get("/history", response_model=list[HistoryResponse])
def list_history(
    item_code: Optional[str] = None, history: HistoryManager = Depends(get_history)
) -> list[HistoryResponse]:
    rows = history.list_by_item(item_code) if item_code else history.list_all()
    return [HistoryResponse.model_validate(h) for h in rows]


@router.get("/history/{history_id}", response_model=HistoryResponse)
def get_history_entry(
    history_id: str, history: HistoryManager = Depends(get_history)
) -> HistoryResponse:
    return HistoryResponse.model_validate(history.get(history_id))


@router.delete("/history/{history_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_history_entry(
    history_id: str, history: HistoryManager = Depends(get_history)
) -> Response:
    history.delete(history_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/items/{item_code}/history", response_model=ClearHistoryResponse)
def clear_item_history(
    item_code: str, history: HistoryManager = Depends(get_history)
) -> ClearHistoryResponse:
    return ClearHistoryResponse(item_code=item_code, removed=history.clear_by_item(item_code))


@router.get("/tags", response_model=list[TagResponse])
def list_tags(
    prefix: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    tags: TagLedger = Depends(get_tags),
) -> list[TagResponse]:
    return [TagResponse.model_validate(t) for t in tags.suggestions(prefix, limit)]


@router.get("/tags/in-use", response_model=list[str])
def list_tags_in_use(tags: TagLedger = Depends(get_tags)) -> list[str]:
    return tags.tags_in_use()


@router.delete("/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tag(tag_id: str, tags: TagLedger = Depends(get_tags)) -> Response:
    tags.delete(tag_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Exports and imports
# ---------------------------------------------------------------------------


@router.get("/exports/json")
def export_json(
    scope: Scope = "full",
    grouping_key: Optional[str] = None,
    item_code: Optional[str] = None,
    exporter: ExportCollector = Depends(get_exporter),
) -> JSONResponse:
    document = exporter.collect(
        scope,
        grouping_key,
        item_code,
        progress=lambda percent, message: logger.debug(f"JSON export {percent}%: {message}"),
    )
    return JSONResponse(content=document.to_jsonable())


@router.get("/exports/archive")
def export_archive(
    scope: Scope = "full",
    grouping_key: Optional[str] = None,
    item_code: Optional[str] = None,
    include_attachments: bool = True,
    exporter: ExportCollector = Depends(get_exporter),
) -> StreamingResponse:
    archive = exporter.export_archive(scope, grouping_key, item_code, include_attachments)
    return _download(archive, "application/zip", _export_filename("export", "zip", scope))


@router.get("/exports/xlsx")
def export_xlsx(
    scope: Scope = "full",
    grouping_key: Optional[str] = None,
    item_code: Optional[str] = None,
    exporter: ExportCollector = Depends(get_exporter),
) -> StreamingResponse:
    payload = exporter.export_xlsx(scope, grouping_key, item_code)
    return _download(payload, XLSX_MEDIA_TYPE, _export_filename("summary", "xlsx", scope))


@router.post("/imports/validate", response_model=ValidationOutcome)
def validate_import(
    file: UploadFile = File(...),
    importer: ImportReconciler = Depends(get_importer),
) -> ValidationOutcome:
    raw = file.file.read()
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return ValidationOutcome(ok=False, errors=["Invalid JSON format"])

    outcome = importer.validate(data)
    if isinstance(outcome, DocumentAccepted):
        return ValidationOutcome(
            ok=True, metadata=outcome.document.metadata.model_dump(mode="json", by_alias=True)
        )
    return ValidationOutcome(ok=False, errors=list(outcome.errors))


@router.post("/imports/json", response_model=ImportResponse)
def import_json(
    file: UploadFile = File(...),
    importer: ImportReconciler = Depends(get_importer),
) -> ImportResponse:
    raw = file.file.read()
    return _import_response(importer.import_json(raw))


@router.post("/imports/archive", response_model=ImportResponse)
def import_archive(
    file: UploadFile = File(...),
    importer: ImportReconciler = Depends(get_importer),
) -> ImportResponse:
    raw = file.file.read()
    return _import_response(importer.import_archive(raw))
