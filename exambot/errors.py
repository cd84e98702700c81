"""
Error codes and exceptions shared by the exam engine and its collaborators.
"""
from enum import Enum


class ErrorCode(Enum):
    """Typed failure signals returned by session and controller operations."""
    INVALID_PHASE_TRANSITION = "invalid_phase_transition"
    INVALID_ACCESS_CODE = "invalid_access_code"
    ACKNOWLEDGMENT_REQUIRED = "acknowledgment_required"
    INVALID_OPTION = "invalid_option"
    INDEX_OUT_OF_RANGE = "index_out_of_range"
    PERSISTENCE_WRITE_FAILED = "persistence_write_failed"
    REPORT_SUBMISSION_FAILED = "report_submission_failed"
    ACCESS_DENIED = "access_denied"
    PAYMENT_REQUIRED = "payment_required"
    EXAM_NOT_FOUND = "exam_not_found"
    SESSION_NOT_FOUND = "session_not_found"


class ExamBotError(Exception):
    """Base exception for exam engine errors."""
    pass


class ExamNotFoundError(ExamBotError):
    """Raised when an exam definition cannot be found."""
    pass


class PersistenceError(ExamBotError):
    """Raised when a snapshot cannot be written, read or removed."""
    pass


class ReportSubmissionError(ExamBotError):
    """Raised when a report could not be recorded."""
    pass


def failure(code: ErrorCode, message: str, **extra) -> dict:
    """Build a failed operation result."""
    result = {'success': False, 'error': code, 'message': message}
    result.update(extra)
    return result
