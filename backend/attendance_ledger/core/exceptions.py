"""
Error taxonomy for the attendance ledger.

Validation and authorization errors are raised before any store mutation.
Per-item batch errors are caught by the bulk services and reported in their
results. Pipeline errors abort the migration and trigger rollback.
"""

import traceback
from datetime import datetime
from typing import Any, Dict, Optional


class ErrorCategory:
    """Error categories used in logs and reports."""
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONSISTENCY = "consistency"
    AUDIT = "audit"
    PIPELINE = "pipeline"
    ROLLBACK = "rollback"


class LedgerError(Exception):
    """Base exception for attendance ledger errors."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.VALIDATION,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'message': self.message,
            'category': self.category,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
            'traceback': traceback.format_exc() if self.original_exception else None
        }


class ValidationError(LedgerError):
    """Input rejected before any store mutation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)


class InvalidSessionError(ValidationError):
    """Session label not allowed for the subject/class pair."""

    def __init__(self, session: str, allowed=None, **kwargs):
        allowed = list(allowed or [])
        message = f'Invalid session "{session}"'
        if allowed:
            message += f". Valid sessions are: {', '.join(allowed)}"
        details = kwargs.pop('details', {})
        details.update({'session': session, 'allowed': allowed})
        super().__init__(message, details=details, **kwargs)


class StudentNotEnrolledError(ValidationError):
    """Student is not a member of the class or not enrolled in the subject."""

    def __init__(self, student_id: int, class_id: int, subject_id: int):
        super().__init__(
            "Student is not enrolled in the specified class/subject",
            details={'student_id': student_id, 'class_id': class_id, 'subject_id': subject_id}
        )


class AttendanceAuthorizationError(LedgerError):
    """Teacher is not assigned to the subject/class pair."""

    def __init__(self, teacher_id: int, class_id: int, subject_id: int):
        super().__init__(
            "Teacher not authorized to mark attendance for this class/subject",
            category=ErrorCategory.AUTHORIZATION,
            details={'teacher_id': teacher_id, 'class_id': class_id, 'subject_id': subject_id}
        )


class NotFoundError(LedgerError):
    """Referenced entity does not exist."""

    def __init__(self, resource: str, **details):
        super().__init__(
            f"{resource} not found",
            category=ErrorCategory.NOT_FOUND,
            details=details
        )
        self.resource = resource


class ConsistencyError(LedgerError):
    """Aggregate could not be derived from the ledger."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONSISTENCY, **kwargs)


class AuditWriteError(LedgerError):
    """Audit entry could not be written after retries."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.AUDIT, **kwargs)


class PipelineError(LedgerError):
    """A migration stage failed."""

    def __init__(self, stage: str, message: str, **kwargs):
        super().__init__(f"{stage}: {message}", category=ErrorCategory.PIPELINE, **kwargs)
        self.stage = stage


class RollbackFailedError(LedgerError):
    """Rollback after a pipeline failure failed as well."""

    def __init__(self, original_error: Exception, rollback_error: Exception):
        super().__init__(
            f"Migration failed ({original_error}) and rollback also failed ({rollback_error})",
            category=ErrorCategory.ROLLBACK,
            details={
                'original_error': str(original_error),
                'rollback_error': str(rollback_error)
            },
            original_exception=rollback_error
        )
        self.original_error = original_error
        self.rollback_error = rollback_error
