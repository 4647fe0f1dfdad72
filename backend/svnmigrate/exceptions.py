"""
Custom exception classes for the application.

Engine code raises these; the HTTP layer maps them to responses in
exception_handlers.py, and the queue boundary uses them for retry
classification (is_retryable below).

Usage:
    from svnmigrate.exceptions import NotFoundError, ConflictError

    raise NotFoundError("Migration")        # 404: "Migration not found"
    raise ConflictError("push rejected")    # 409
"""


class AppException(Exception):
    """
    Base exception class for application-level errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code to return
        error_code: Machine-readable error code for client handling
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or f"ERR_{status_code}"
        super().__init__(message)


class NotFoundError(AppException):
    """
    Resource not found (404).

    Usage:
        raise NotFoundError("Migration")  # "Migration not found"
    """

    def __init__(self, resource: str = "Resource"):
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
        )


class ValidationError(AppException):
    """Validation error (400)."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
        )


class ConflictError(AppException):
    """
    State conflict (409).

    Raised when GitLab rejects a push, or when an operation is not
    allowed in the migration's current status.
    """

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONFLICT",
        )


class RemoteConnectionError(AppException):
    """
    Source or target unreachable, or credentials rejected (502).

    Usage:
        raise RemoteConnectionError("SVN", "E170013: Unable to connect")
        raise RemoteConnectionError("GitLab API", "status 401")
    """

    def __init__(self, service: str, reason: str | None = None):
        message = f"{service} connection failed"
        if reason:
            message = f"{service} connection failed: {reason}"
        self.service = service
        super().__init__(
            message=message,
            status_code=502,
            error_code="CONNECTION_FAILED",
        )


class ProcessExitError(AppException):
    """External command exited with a nonzero status."""

    def __init__(self, command: str, code: int, stderr_tail: list[str] | None = None):
        self.command = command
        self.code = code
        self.stderr_tail = list(stderr_tail or [])
        message = f"{command} failed with code {code}"
        if self.stderr_tail:
            message = f"{message}: {self.stderr_tail[-1]}"
        super().__init__(
            message=message,
            status_code=500,
            error_code="PROCESS_EXIT",
        )


class ProcessCancelledError(AppException):
    """External command was terminated by a cancellation request."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(
            message=f"{command} was cancelled",
            status_code=499,
            error_code="CANCELLED",
        )


class ResumabilityError(AppException):
    """Workspace is missing or lacks git-svn metadata (409)."""

    def __init__(self, message: str = "Local repository not found. Full migration may be required."):
        super().__init__(
            message=message,
            status_code=409,
            error_code="NOT_RESUMABLE",
        )


class CannotResumeError(AppException):
    """Resume from last revision requested without a synced revision (409)."""

    def __init__(self, migration_id: str):
        super().__init__(
            message=f"Migration {migration_id} has no synced revision to resume from",
            status_code=409,
            error_code="CANNOT_RESUME",
        )


class QueueExhaustedError(AppException):
    """Direct engine call exceeded the lane's concurrency cap (429)."""

    def __init__(self, lane: str, limit: int):
        super().__init__(
            message=f"{lane} lane is at its concurrency limit ({limit})",
            status_code=429,
            error_code="QUEUE_EXHAUSTED",
        )


# Fail fast at the queue boundary, without consuming retry budget
NON_RETRYABLE_ERRORS = (
    NotFoundError,
    ResumabilityError,
    CannotResumeError,
    ValidationError,
    ProcessCancelledError,
)


def is_retryable(error: Exception) -> bool:
    """Queue-boundary classification of an engine error."""
    return not isinstance(error, NON_RETRYABLE_ERRORS)
