from .errors import (
    ErrorCode,
    Severity,
    StandardError,
    ResourceNotFoundError,
    ResourceExistsError,
    ResourceConflictError,
    WaitTimeoutError,
    NothingElseToAddError,
    InvalidBackupsError,
    ErrorHandler,
    ErrorFormatter,
    error_formatter,
    is_code,
    wrap_error,
)
