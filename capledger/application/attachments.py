"""Attachment service: evidence files hung off individual ratings."""

from __future__ import annotations

from ..domain.schemas import AttachmentInput, validate_input
from ..infrastructure.blobstore import BlobStore
from ..infrastructure.config import SecurityConfig, get_settings
from ..infrastructure.exceptions import StorageError, ValidationError
from ..infrastructure.locks import KeyedLocks
from ..infrastructure.logging import LogContext, get_logger, log_operation
from ..infrastructure.models import AttachmentORM, new_id, utcnow
from ..infrastructure.repositories import AssessmentRepo, AttachmentRepo, RatingRepo
from ..infrastructure.uow import UnitOfWork

logger = get_logger(__name__)


class AttachmentService:
    """
    Upload, read and remove attachment payloads.

    The rating's ``attachment_ids`` list is rewritten under the same per-question
    lock the lifecycle engine uses for ratings, so concurrent uploads to one
    question never lose an id.

    Example:
        >>> svc = AttachmentService(uow, blob_store, engine.rating_locks)
        >>> att = svc.upload(a.id, 0, "evidence.pdf", "application/pdf", data)
        >>> svc.read(att.id) == data
        True
    """

    def __init__(
        self,
        uow: UnitOfWork,
        blob_store: BlobStore,
        rating_locks: KeyedLocks | None = None,
        security: SecurityConfig | None = None,
    ):
        self.uow = uow
        self.blob_store = blob_store
        self.rating_locks = rating_locks or KeyedLocks()
        self.security = security or get_settings().security

    @log_operation("upload_attachment")
    def upload(
        self,
        assessment_id: str,
        question_index: int,
        file_name: str,
        file_type: str,
        data: bytes,
        description: str | None = None,
    ) -> AttachmentORM:
        validation = validate_input(
            AttachmentInput,
            {
                "question_index": question_index,
                "file_name": file_name,
                "file_type": file_type or "application/octet-stream",
                "description": description,
            },
        )
        if not validation.success:
            first = validation.errors[0]
            raise ValidationError(first.field, first.message, first.value)
        if len(data) > self.security.max_file_size_bytes:
            raise ValidationError(
                "file",
                f"File exceeds the {self.security.max_file_size_mb} MB limit",
                len(data),
            )
        fields = validation.data

        blob_ref = self.blob_store.put(data)
        try:
            with LogContext(assessment_id=assessment_id), self.rating_locks.hold(
                (assessment_id, question_index)
            ):
                with self.uow.begin("attachments", "ratings") as s:
                    AssessmentRepo(s).get_required(assessment_id)
                    rating = RatingRepo(s).ensure(assessment_id, question_index)
                    attachment = AttachmentRepo(s).create(
                        id=new_id(),
                        assessment_id=assessment_id,
                        rating_id=rating.id,
                        file_name=fields["file_name"],
                        file_type=fields["file_type"],
                        file_size=len(data),
                        blob_ref=blob_ref,
                        description=fields["description"],
                        uploaded_at=utcnow(),
                    )
                    rating.attachment_ids = [*(rating.attachment_ids or []), attachment.id]
        except Exception:
            self.blob_store.delete(blob_ref)
            raise

        logger.info(f"Stored attachment {attachment.id} ({len(data)} bytes) for {assessment_id}")
        return attachment

    @log_operation("delete_attachment")
    def delete(self, attachment_id: str) -> None:
        """Remove the row, its id from the owning rating, then the blob."""
        with self.uow.read() as s:
            attachment = AttachmentRepo(s).get_required(attachment_id)
            rating = RatingRepo(s).get(attachment.rating_id) if attachment.rating_id else None
            lock_key = (attachment.assessment_id, rating.question_index if rating else None)

        with self.rating_locks.hold(lock_key):
            with self.uow.begin("attachments", "ratings") as s:
                repo = AttachmentRepo(s)
                attachment = repo.get_required(attachment_id)
                blob_ref = attachment.blob_ref
                if attachment.rating_id:
                    owner = RatingRepo(s).get(attachment.rating_id)
                    if owner is not None:
                        owner.attachment_ids = [
                            i for i in (owner.attachment_ids or []) if i != attachment_id
                        ]
                repo.delete(attachment)

        try:
            self.blob_store.delete(blob_ref)
        except (OSError, StorageError):
            logger.exception(f"Could not delete blob {blob_ref}; it is now orphaned")

    def get(self, attachment_id: str) -> AttachmentORM:
        with self.uow.read() as s:
            return AttachmentRepo(s).get_required(attachment_id)

    def read(self, attachment_id: str) -> bytes:
        return self.blob_store.get(self.get(attachment_id).blob_ref)

    def list_for_assessment(self, assessment_id: str) -> list[AttachmentORM]:
        with self.uow.read() as s:
            AssessmentRepo(s).get_required(assessment_id)
            return AttachmentRepo(s).list_for_assessment(assessment_id)

    def total_size(self, assessment_id: str) -> int:
        with self.uow.read() as s:
            return AttachmentRepo(s).total_size(assessment_id)
