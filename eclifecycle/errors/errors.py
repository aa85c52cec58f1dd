"""
Standardized error handling for the lifecycle orchestrators.
Every failure raised by the restore and upgrade paths carries an ErrorCode
so callers can tell transient convergence from terminal failure.
"""

from enum import Enum
from typing import Dict, Any, Optional, List


class ErrorCode(Enum):
    """Error classification codes."""

    # Cluster API errors
    KUBERNETES_API = "KUBERNETES_API"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CONFLICT = "CONFLICT"

    # Configuration and compatibility errors
    CONFIGURATION = "CONFIGURATION"
    VALIDATION = "VALIDATION"
    INCOMPATIBLE_BACKUP = "INCOMPATIBLE_BACKUP"
    BACKUP_STORE = "BACKUP_STORE"

    # Convergence errors
    IN_PROGRESS = "IN_PROGRESS"
    WAIT_TIMEOUT = "WAIT_TIMEOUT"

    # Terminal operation errors
    RESTORE_FAILED = "RESTORE_FAILED"
    PLAN_FAILED = "PLAN_FAILED"
    CHART_FAILED = "CHART_FAILED"
    NODE_MISMATCH = "NODE_MISMATCH"
    HOST_OPERATION = "HOST_OPERATION"

    # Operator chose to stop
    NOTHING_ELSE_TO_ADD = "NOTHING_ELSE_TO_ADD"

    UNKNOWN = "UNKNOWN"


class Severity(Enum):
    """Error severity levels."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class StandardError(Exception):
    """Lifecycle error carrying its code, the failing component and operation."""

    def __init__(
        self,
        code: ErrorCode,
        component: str,
        operation: str,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.component = component
        self.operation = operation
        self.message = message
        self.cause = cause
        self.context = context or {}

        # severity and retryability follow from the code
        self.severity = self._get_severity_for_code(code)
        self.retryable = self._is_retryable_code(code)

        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Render "[CODE] message", with the cause appended when there is one."""
        if self.cause:
            return f"[{self.code.value}] {self.message}: {str(self.cause)}"
        return f"[{self.code.value}] {self.message}"

    def _get_severity_for_code(self, code: ErrorCode) -> Severity:
        """Severity implied by a code; unlisted codes are MEDIUM."""
        critical_codes = {ErrorCode.NODE_MISMATCH, ErrorCode.PLAN_FAILED}
        high_codes = {
            ErrorCode.KUBERNETES_API, ErrorCode.RESTORE_FAILED,
            ErrorCode.CHART_FAILED, ErrorCode.HOST_OPERATION
        }
        medium_codes = {
            ErrorCode.NETWORK_TIMEOUT, ErrorCode.WAIT_TIMEOUT,
            ErrorCode.CONFLICT, ErrorCode.BACKUP_STORE
        }
        low_codes = {
            ErrorCode.VALIDATION, ErrorCode.INCOMPATIBLE_BACKUP,
            ErrorCode.IN_PROGRESS, ErrorCode.NOTHING_ELSE_TO_ADD,
            ErrorCode.NOT_FOUND, ErrorCode.ALREADY_EXISTS
        }

        if code in critical_codes:
            return Severity.CRITICAL
        elif code in high_codes:
            return Severity.HIGH
        elif code in medium_codes:
            return Severity.MEDIUM
        elif code in low_codes:
            return Severity.LOW
        else:
            return Severity.MEDIUM

    def _is_retryable_code(self, code: ErrorCode) -> bool:
        """Codes a caller may retry by re-running the operation."""
        retryable_codes = {
            ErrorCode.NETWORK_TIMEOUT, ErrorCode.KUBERNETES_API,
            ErrorCode.CONFLICT, ErrorCode.IN_PROGRESS
        }
        return code in retryable_codes

    def with_context(self, key: str, value: Any) -> 'StandardError':
        """Attach a context value, e.g. the resource name."""
        self.context[key] = value
        return self


class ResourceNotFoundError(StandardError):
    """The requested cluster object does not exist."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(
            ErrorCode.NOT_FOUND, "kubernetes", "get",
            f"{kind} {_qualified(name, namespace)} not found", cause
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ResourceExistsError(StandardError):
    """A create raced with (or followed) another create of the same name."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(
            ErrorCode.ALREADY_EXISTS, "kubernetes", "create",
            f"{kind} {_qualified(name, namespace)} already exists", cause
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ResourceConflictError(StandardError):
    """An optimistic-concurrency update lost against a newer resourceVersion."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(
            ErrorCode.CONFLICT, "kubernetes", "update",
            f"{kind} {_qualified(name, namespace)} was modified concurrently", cause
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class WaitTimeoutError(StandardError):
    """A readiness wait exhausted its budget without a remembered error."""

    def __init__(self, message: str = "timed out waiting for the condition"):
        super().__init__(ErrorCode.WAIT_TIMEOUT, "wait", "wait_until", message)


class NothingElseToAddError(StandardError):
    """The operator stopped the workflow on purpose; not a failure."""

    def __init__(self, message: str = "nothing else to add"):
        super().__init__(ErrorCode.NOTHING_ELSE_TO_ADD, "cli", "run", message)


class InvalidBackupsError(StandardError):
    """None of the candidate backups can be restored by this binary."""

    def __init__(self, names: List[str], reasons: List[str]):
        self.names = names
        self.reasons = reasons
        super().__init__(ErrorCode.INCOMPATIBLE_BACKUP, "restore", "confirm_backup", self._render())

    def _render(self) -> str:
        lines = "\n".join(f'"{name}" {reason}' for name, reason in zip(self.names, self.reasons))
        if len(self.names) == 1:
            return f"\nFound 1 backup, but it is not restorable:\n{lines}\n"
        return f"\nFound {len(self.names)} backups, but none are restorable:\n{lines}\n"

    def _format_message(self) -> str:
        return self.message


def _qualified(name: str, namespace: Optional[str]) -> str:
    return f"{namespace}/{name}" if namespace else name


# Factories
def new_configuration_error(component: str, operation: str, message: str, cause: Exception = None) -> StandardError:
    """Invalid or missing configuration."""
    return StandardError(ErrorCode.CONFIGURATION, component, operation, message, cause)


def new_restore_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    """Create terminal restore errors."""
    return StandardError(ErrorCode.RESTORE_FAILED, "restore", operation, message, cause)


def new_kubernetes_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    """Failed cluster API call."""
    return StandardError(ErrorCode.KUBERNETES_API, "kubernetes", operation, message, cause)


def new_in_progress_error(component: str, operation: str, message: str) -> StandardError:
    """Create errors for conditions the caller is expected to retry."""
    return StandardError(ErrorCode.IN_PROGRESS, component, operation, message)


def new_host_error(operation: str, message: str, cause: Exception = None) -> StandardError:
    """Create errors for failed host-level operations."""
    return StandardError(ErrorCode.HOST_OPERATION, "host", operation, message, cause)


# Predicates
def is_code(error: Exception, code: ErrorCode) -> bool:
    if isinstance(error, StandardError):
        return error.code == code
    return False


def wrap_error(error: Exception, code: ErrorCode, component: str, operation: str, message: str) -> StandardError:
    return StandardError(code, component, operation, message, error)


class ErrorHandler:
    """Turns arbitrary exceptions into StandardErrors and logs them by severity."""

    def __init__(self, component: str, logger=None):
        self.component = component
        self.logger = logger

    def handle(self, error: Exception, operation: str) -> StandardError:
        std_err = self.to_standard_error(error, operation)
        self._log_error(std_err)
        return std_err

    def to_standard_error(self, error: Exception, operation: str) -> StandardError:
        if isinstance(error, StandardError):
            return error

        return wrap_error(error, ErrorCode.UNKNOWN, self.component, operation, "unexpected error")

    def _log_error(self, error: StandardError) -> None:
        if not self.logger:
            return

        log_data = {
            'error_code': error.code.value,
            'severity': error.severity.value,
            'retryable': error.retryable,
            'error_context': error.context
        }

        if error.severity in [Severity.CRITICAL, Severity.HIGH]:
            self.logger.error(f"{error.operation}: {error.message}", extra=log_data, exc_info=error.cause)
        elif error.severity == Severity.MEDIUM:
            self.logger.warning(f"{error.operation}: {error.message}", extra=log_data)
        else:
            self.logger.info(f"{error.operation}: {error.message}", extra=log_data)


class ErrorFormatter:
    """Operator-facing rendering of errors."""

    def to_user_friendly(self, error: Exception) -> str:
        """Convert an error to a message an operator can act on."""
        if isinstance(error, StandardError):
            code_messages = {
                ErrorCode.IN_PROGRESS: "The operation is still converging. Re-run the command to continue.",
                ErrorCode.CONFLICT: "The resource was modified by someone else. Re-run the command to retry.",
                ErrorCode.NETWORK_TIMEOUT: "Network connection timed out. Please try again.",
            }
            if error.code in code_messages:
                return f"{error.message}. {code_messages[error.code]}"
            if error.cause:
                return f"{error.message}: {error.cause}"
            return error.message

        return str(error) or "An error occurred. Please try again."


error_formatter = ErrorFormatter()
