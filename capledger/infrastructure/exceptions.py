"""
Custom exception classes for the capability maturity ledger.

Provides structured error handling with user-friendly messages and proper
error categorization for lifecycle, storage and interchange failures.
"""

from __future__ import annotations

from typing import Any


class CapabilityLedgerError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.user_message = user_message or self._get_default_user_message()

    def _get_default_user_message(self) -> str:
        return "An unexpected error occurred. Please try again."

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class ValidationError(CapabilityLedgerError):
    """Raised when input or interchange document validation fails."""

    def __init__(
        self, field: str, message: str, value: Any = None, details: dict[str, Any] | None = None
    ):
        self.field = field
        self.value = value
        self.reason = message
        super().__init__(
            message=f"Validation failed for field '{field}': {message}",
            details=details or {"field": field, "value": value},
            user_message=f"Invalid {field.replace('_', ' ')}: {message}",
        )


class MultipleValidationError(CapabilityLedgerError):
    """Raised when multiple validation errors occur."""

    def __init__(self, errors: list[ValidationError]):
        self.validation_errors = errors
        messages = [f"{e.field}: {e.reason}" for e in errors]
        super().__init__(
            message=f"Multiple validation errors: {'; '.join(messages)}",
            details={
                "errors": [
                    {"field": e.field, "message": e.reason, "value": e.value} for e in errors
                ]
            },
            user_message="Please correct the following errors and try again.",
        )


class NotFoundError(CapabilityLedgerError):
    """Raised when a record addressed by id or code does not exist."""

    entity = "Record"

    def __init__(self, identifier: Any, details: dict[str, Any] | None = None):
        self.identifier = identifier
        super().__init__(
            message=f"{self.entity} {identifier!r} not found",
            details=details or {"entity": self.entity, "id": identifier},
        )

    def _get_default_user_message(self) -> str:
        return f"The requested {self.entity.lower()} could not be found. Please refresh and try again."


class AssessmentNotFoundError(NotFoundError):
    entity = "Assessment"


class RatingNotFoundError(NotFoundError):
    entity = "Rating"


class HistoryNotFoundError(NotFoundError):
    entity = "History entry"


class TagNotFoundError(NotFoundError):
    entity = "Tag"


class AttachmentNotFoundError(NotFoundError):
    entity = "Attachment"


class BlobNotFoundError(NotFoundError):
    entity = "Blob"


class ItemNotFoundError(NotFoundError):
    """Raised when an item code is unknown to the reference catalog."""

    entity = "Catalog item"


class StorageError(CapabilityLedgerError):
    """Raised when the underlying persistence layer fails."""

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Storage error during {operation}: {message}",
            details=details or {"operation": operation},
            user_message="A storage error occurred. Please try again in a moment.",
        )


class ConnectionError(StorageError):
    """Raised when the database connection fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, operation="connection", details=details)


class IntegrityError(StorageError):
    """Raised when database integrity constraints are violated."""

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.constraint = constraint
        super().__init__(
            message=message,
            operation="integrity_check",
            details=details or {"constraint": constraint},
        )


class InvalidRatingError(CapabilityLedgerError):
    """Raised when a rating level is outside 1-5."""

    def __init__(self, rating_level: Any):
        self.rating_level = rating_level
        super().__init__(
            message=f"Invalid rating level: {rating_level}. Must be between 1-5 or empty",
            details={"rating_level": rating_level},
            user_message="Please select a rating between 1 and 5, or clear the answer.",
        )


class BusinessLogicError(CapabilityLedgerError):
    """Raised when business logic constraints are violated."""

    def __init__(
        self, message: str, rule: str | None = None, details: dict[str, Any] | None = None
    ):
        self.rule = rule
        super().__init__(
            message=message,
            details=details or {"rule": rule},
            user_message="This operation cannot be completed due to business rules.",
        )


class AssessmentStateError(BusinessLogicError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    def __init__(self, message: str, assessment_id: str | None = None, item_code: str | None = None):
        self.assessment_id = assessment_id
        self.item_code = item_code
        super().__init__(
            message=message,
            rule="assessment_state",
            details={"assessment_id": assessment_id, "item_code": item_code},
        )
        self.user_message = message


class ConfigurationError(CapabilityLedgerError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            details=details or {"config_key": config_key},
            user_message="Configuration error. Please check your settings.",
        )


class ExportError(CapabilityLedgerError):
    """Raised when data export fails."""

    def __init__(
        self,
        message: str,
        export_format: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.export_format = export_format
        super().__init__(
            message=message,
            details=details or {"export_format": export_format},
            user_message="Export failed. Please try again or choose a different format.",
        )


class OperationCancelledError(CapabilityLedgerError):
    """Raised when a long-running export is cancelled through its token."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            message=f"{operation} cancelled",
            details={"operation": operation},
            user_message="The operation was cancelled.",
        )


def handle_storage_error(e: Exception, operation: str = "database operation") -> StorageError:
    """
    Convert SQLAlchemy/driver exceptions to the matching StorageError subclass.

    Example:
        >>> try:
        ...     session.commit()
        ... except SQLAlchemyError as e:
        ...     raise handle_storage_error(e, "commit transaction") from e
    """
    error_msg = str(e).lower()

    if "connection" in error_msg or "timeout" in error_msg:
        return ConnectionError(str(e))
    elif "unique constraint" in error_msg or "duplicate" in error_msg:
        return IntegrityError(str(e), constraint="unique")
    elif "foreign key" in error_msg or "foreign_key" in error_msg:
        return IntegrityError(str(e), constraint="foreign_key")
    elif "check constraint" in error_msg:
        return IntegrityError(str(e), constraint="check")
    else:
        return StorageError(str(e), operation)


def create_user_friendly_error_message(error: Exception) -> str:
    """
    Create a user-friendly error message from any exception.

    Example:
        >>> create_user_friendly_error_message(ValidationError("level", "must be 1-5"))
        'Invalid level: must be 1-5'
    """
    if isinstance(error, CapabilityLedgerError):
        return error.user_message

    error_type = type(error).__name__
    messages = {
        "ValueError": "Invalid input provided. Please check your data and try again.",
        "KeyError": "Required information is missing. Please check your input.",
        "TypeError": "Incorrect data type provided. Please check your input format.",
    }
    return messages.get(
        error_type, "An unexpected error occurred. Please try again or contact support."
    )


def log_error_details(error: Exception, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create structured error details for logging.

    Example:
        >>> details = log_error_details(StorageError("locked", "commit"), {"item_code": "X"})
        >>> details["error_type"]
        'StorageError'
    """
    details = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    if isinstance(error, CapabilityLedgerError):
        details.update({"user_message": error.user_message, "error_details": error.details})

    return details
