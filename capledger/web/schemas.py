from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ORMResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AssessmentCreateRequest(BaseModel):
    item_code: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)


class RatingUpdateRequest(BaseModel):
    level: Optional[int] = Field(default=None, ge=1, le=5)
    notes: str = ""


class TagsUpdateRequest(BaseModel):
    tags: list[str] = Field(default_factory=list)


class AssessmentResponse(ORMResponse):
    id: str
    item_code: str
    grouping_key: str
    display_name: str
    status: Literal["in_progress", "finalized"]
    tags: list[str] = Field(default_factory=list)
    catalog_version: str
    created_at: datetime
    updated_at: datetime
    finalized_at: Optional[datetime] = None
    score: Optional[float] = None


class RatingResponse(ORMResponse):
    id: str
    assessment_id: str
    question_index: int
    level: Optional[int] = None
    previous_level: Optional[int] = None
    notes: str = ""
    carried_forward: bool = False
    attachment_ids: list[str] = Field(default_factory=list)
    updated_at: datetime


class AssessmentDetail(BaseModel):
    assessment: AssessmentResponse
    ratings: list[RatingResponse]
    progress: int


class RatingSaved(BaseModel):
    rating_id: str


class AttachmentResponse(ORMResponse):
    id: str
    assessment_id: str
    rating_id: Optional[str] = None
    file_name: str
    file_type: str
    file_size: int
    description: Optional[str] = None
    uploaded_at: datetime


class HistoricalRatingResponse(BaseModel):
    question_index: int
    level: int
    notes: str = ""
    attachment_ids: list[str] = Field(default_factory=list)


class HistoryResponse(ORMResponse):
    id: str
    item_code: str
    snapshot_date: datetime
    tags: list[str] = Field(default_factory=list)
    score: float
    ratings: list[HistoricalRatingResponse] = Field(default_factory=list)
    catalog_version: str


class ClearHistoryResponse(BaseModel):
    item_code: str
    removed: int


class TagResponse(ORMResponse):
    id: str
    name: str
    usage_count: int
    last_used: datetime


class ItemStateResponse(BaseModel):
    item_code: str
    state: Literal["absent", "in_progress", "finalized"]
    current: Optional[AssessmentResponse] = None


class ItemScoreResponse(BaseModel):
    item_code: str
    display_name: str
    grouping_key: str
    state: Literal["absent", "in_progress", "finalized"]
    score: Optional[float] = None
    progress: int
    updated_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)


class AverageScore(BaseModel):
    grouping_key: str
    average: Optional[float] = None
    coverage: Optional[float] = None


class ImportItemResponse(BaseModel):
    item_code: str
    display_name: str
    action: Literal["imported_current", "imported_history", "skipped", "error"]
    reason: Optional[str] = None


class ImportResponse(BaseModel):
    success: bool
    imported_as_current: int = 0
    imported_as_history: int = 0
    skipped: int = 0
    attachments_restored: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cancelled: bool = False
    details: list[ImportItemResponse] = Field(default_factory=list)


class ValidationOutcome(BaseModel):
    ok: bool
    errors: list[str] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: str
    detail: str
    details: dict[str, Any] = Field(default_factory=dict)
