"""
Pydantic schemas for input validation and the interchange document.

The interchange document is the versioned, camelCase JSON artifact produced by
the export collector and consumed by the import reconciler. Timestamps are
held as naive UTC in Python and written as ISO-8601 with a ``Z`` suffix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

FORMAT_VERSION = "1.0"


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def iso_z(value: datetime) -> str:
    return as_naive_utc(value).isoformat() + "Z"


IsoDateTime = Annotated[
    datetime,
    AfterValidator(as_naive_utc),
    PlainSerializer(iso_z, return_type=str, when_used="json"),
]
Level = Annotated[int, Field(ge=1, le=5)]
Score = Annotated[float, Field(ge=1, le=5)]


class BaseValidationSchema(BaseModel):
    """Base schema for API and service inputs."""

    model_config = ConfigDict(str_strip_whitespace=False, validate_assignment=True)

    @field_validator("*", mode="before")
    @classmethod
    def strip_control_characters(cls, v):
        """Remove null bytes and control characters other than tab and newlines."""
        if isinstance(v, str):
            return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", v)
        return v


class RatingInput(BaseValidationSchema):
    question_index: int = Field(..., ge=0)
    level: Level | None = None
    notes: str = Field("", max_length=10000)


class TagsInput(BaseValidationSchema):
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def drop_blank_and_duplicates(cls, v):
        seen: list[str] = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class AttachmentInput(BaseValidationSchema):
    question_index: int = Field(..., ge=0)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field("application/octet-stream", max_length=128)
    description: str | None = Field(None, max_length=2000)

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v):
        name = v.replace("\\", "/").rsplit("/", 1)[-1].strip()
        if not name or name in (".", ".."):
            raise ValueError("File name is empty")
        return name


# ---------------------------------------------------------------------------
# Interchange document
# ---------------------------------------------------------------------------


class InterchangeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AssessmentRecord(InterchangeModel):
    id: str = Field(..., min_length=1)
    item_code: str = Field(..., min_length=1)
    grouping_key: str = ""
    display_name: str = ""
    status: Literal["in_progress", "finalized"]
    tags: list[str] = Field(default_factory=list)
    catalog_version: str = ""
    created_at: IsoDateTime
    updated_at: IsoDateTime
    finalized_at: IsoDateTime | None = None
    score: Score | None = None


class RatingRecord(InterchangeModel):
    id: str = Field(..., min_length=1)
    assessment_id: str = Field(..., min_length=1)
    question_index: int = Field(..., ge=0)
    level: Level | None = None
    previous_level: Level | None = None
    notes: str = ""
    carried_forward: bool = False
    attachment_ids: list[str] = Field(default_factory=list)
    updated_at: IsoDateTime


class HistoricalRatingRecord(InterchangeModel):
    question_index: int = Field(..., ge=0)
    level: Level
    notes: str = ""
    attachment_ids: list[str] = Field(default_factory=list)


class HistoryRecord(InterchangeModel):
    id: str = Field(..., min_length=1)
    item_code: str = Field(..., min_length=1)
    snapshot_date: IsoDateTime
    tags: list[str] = Field(default_factory=list)
    score: Score
    ratings: list[HistoricalRatingRecord] = Field(default_factory=list)
    catalog_version: str = ""


class TagRecord(InterchangeModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    usage_count: int = Field(0, ge=0)
    last_used: IsoDateTime


class AttachmentRecord(InterchangeModel):
    id: str = Field(..., min_length=1)
    assessment_id: str = Field(..., min_length=1)
    rating_id: str | None = None
    file_name: str = Field(..., min_length=1)
    file_type: str = ""
    file_size: int = Field(0, ge=0)
    description: str | None = None
    uploaded_at: IsoDateTime


class ScopeDetails(InterchangeModel):
    grouping_key: str | None = None
    item_code: str | None = None
    display_name: str | None = None


class DocumentData(InterchangeModel):
    assessments: list[AssessmentRecord]
    ratings: list[RatingRecord] = Field(default_factory=list)
    history: list[HistoryRecord] = Field(default_factory=list)
    tags: list[TagRecord] = Field(default_factory=list)
    attachments: list[AttachmentRecord] = Field(default_factory=list)


class DocumentMetadata(InterchangeModel):
    total_assessments: int = Field(0, ge=0)
    total_ratings: int = Field(0, ge=0)
    total_history: int = Field(0, ge=0)
    total_attachments: int = Field(0, ge=0)
    grouping_keys: list[str] = Field(default_factory=list)
    item_codes: list[str] = Field(default_factory=list)


class ExportDocument(InterchangeModel):
    """
    The interchange artifact.

    Example:
        >>> doc = ExportDocument.model_validate_json(text)
        >>> doc.metadata.total_assessments
        3
    """

    format_version: str = Field(..., min_length=1)
    exported_at: IsoDateTime
    app_version: str = ""
    catalog_version: str = ""
    scope: Literal["full", "grouping_key", "item"]
    scope_details: ScopeDetails | None = None
    data: DocumentData
    metadata: DocumentMetadata

    @model_validator(mode="after")
    def ratings_reference_assessments(self):
        assessment_ids = {a.id for a in self.data.assessments}
        dangling = sorted({r.assessment_id for r in self.data.ratings} - assessment_ids)
        if dangling:
            raise ValueError(f"ratings reference unknown assessments: {', '.join(dangling[:5])}")
        return self

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)

    def to_jsonable(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DocumentAccepted:
    document: ExportDocument
    ok: Literal[True] = True


@dataclass(frozen=True, slots=True)
class DocumentRejected:
    errors: tuple[str, ...]
    ok: Literal[False] = False

    @property
    def message(self) -> str:
        return "; ".join(self.errors)


DocumentValidation = DocumentAccepted | DocumentRejected


def _format_pydantic_errors(exc: PydanticValidationError) -> tuple[str, ...]:
    return tuple(
        f"{'.'.join(str(part) for part in error['loc']) or 'document'}: {error['msg']}"
        for error in exc.errors()
    )


def validate_document(
    raw: str | bytes | dict[str, Any] | ExportDocument,
    supported_versions: list[str] | tuple[str, ...] = (FORMAT_VERSION,),
) -> DocumentValidation:
    """
    Structural check of an interchange document.

    Accepts JSON text, a decoded mapping, or an already-built document.

    Example:
        >>> outcome = validate_document('{"formatVersion": "9.9"}')
        >>> outcome.ok
        False
    """
    try:
        if isinstance(raw, ExportDocument):
            document = raw
        elif isinstance(raw, (str, bytes)):
            document = ExportDocument.model_validate_json(raw)
        elif isinstance(raw, dict):
            document = ExportDocument.model_validate(raw)
        else:
            return DocumentRejected(("document: expected a JSON object",))
    except PydanticValidationError as e:
        return DocumentRejected(_format_pydantic_errors(e))

    if document.format_version not in supported_versions:
        return DocumentRejected(
            (
                f"formatVersion: unsupported version {document.format_version!r} "
                f"(supported: {', '.join(supported_versions)})",
            )
        )
    return DocumentAccepted(document)


class ValidationErrorDetail(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationResponse(BaseModel):
    success: bool
    errors: list[ValidationErrorDetail] = []
    data: dict[str, Any] | None = None


def validate_input(schema_class: type[BaseModel], data: dict[str, Any]) -> ValidationResponse:
    """
    Centralized validation function that returns structured validation results.

    Example:
        >>> result = validate_input(RatingInput, {"question_index": 0, "level": 4})
        >>> result.success
        True
    """
    try:
        validated = schema_class(**data)
        return ValidationResponse(success=True, data=validated.model_dump())
    except PydanticValidationError as e:
        errors = [
            ValidationErrorDetail(
                field=".".join(str(x) for x in error["loc"]) or "general",
                message=error["msg"],
                value=error.get("input"),
            )
            for error in e.errors()
        ]
        return ValidationResponse(success=False, errors=errors)
