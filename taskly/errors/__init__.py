"""Error taxonomy for taskly.

Every failure surfaced by taskly is a ``TasklyError`` carrying a stable
``ErrorCode``, a structured ``ErrorContext`` and the time it was raised.
Codes map to a severity which drives how the ``ErrorHandler`` logs them and
whether they can trigger a graceful shutdown.

Example:
    >>> from taskly.errors import ErrorCode, ErrorFactory
    >>> err = ErrorFactory.create(ErrorCode.TASK_FAILED, "build exited 2", task_id="build")
    >>> err.detailed_message()
    'build exited 2 | Task: build'
"""

import errno
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Broad family an error code belongs to."""

    VALIDATION = "validation"
    PACKAGE_MANAGER = "package_manager"
    PROCESS = "process"
    TASK_EXECUTION = "task_execution"
    CONFIGURATION = "configuration"
    SYSTEM = "system"
    SECURITY = "security"
    CLI = "cli"
    COLOR = "color"


class ErrorCode(Enum):
    """Stable error codes, grouped by ``ErrorKind``."""

    # Validation
    INVALID_COMMAND = "INVALID_COMMAND"
    INVALID_TASK_CONFIG = "INVALID_TASK_CONFIG"
    INVALID_OPTIONS = "INVALID_OPTIONS"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Package manager
    PM_NOT_FOUND = "PM_NOT_FOUND"
    PM_DETECTION_FAILED = "PM_DETECTION_FAILED"
    PM_VALIDATION_FAILED = "PM_VALIDATION_FAILED"

    # Process
    SPAWN_FAILED = "SPAWN_FAILED"
    PROCESS_TIMEOUT = "PROCESS_TIMEOUT"
    PROCESS_KILLED = "PROCESS_KILLED"
    PROCESS_RESOURCE_LIMIT = "PROCESS_RESOURCE_LIMIT"

    # Task execution
    TASK_FAILED = "TASK_FAILED"
    TASK_DEPENDENCY_FAILED = "TASK_DEPENDENCY_FAILED"
    TASK_RETRY_EXHAUSTED = "TASK_RETRY_EXHAUSTED"

    # Configuration
    CONFIG_ERROR = "CONFIG_ERROR"
    CONFIG_FILE_NOT_FOUND = "CONFIG_FILE_NOT_FOUND"
    CONFIG_PARSE_ERROR = "CONFIG_PARSE_ERROR"

    # System
    SYSTEM_ERROR = "SYSTEM_ERROR"
    FILE_SYSTEM_ERROR = "FILE_SYSTEM_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"

    # Security
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    COMMAND_INJECTION = "COMMAND_INJECTION"

    # CLI
    CLI_PARSE_ERROR = "CLI_PARSE_ERROR"
    CLI_INVALID_ARGUMENT = "CLI_INVALID_ARGUMENT"

    # Color
    COLOR_ASSIGNMENT_FAILED = "COLOR_ASSIGNMENT_FAILED"
    INVALID_COLOR = "INVALID_COLOR"

    @property
    def kind(self) -> ErrorKind:
        """Family this code belongs to."""
        return _CODE_KINDS[self]


_CODE_KINDS: dict[ErrorCode, ErrorKind] = {
    ErrorCode.INVALID_COMMAND: ErrorKind.VALIDATION,
    ErrorCode.INVALID_TASK_CONFIG: ErrorKind.VALIDATION,
    ErrorCode.INVALID_OPTIONS: ErrorKind.VALIDATION,
    ErrorCode.VALIDATION_ERROR: ErrorKind.VALIDATION,
    ErrorCode.PM_NOT_FOUND: ErrorKind.PACKAGE_MANAGER,
    ErrorCode.PM_DETECTION_FAILED: ErrorKind.PACKAGE_MANAGER,
    ErrorCode.PM_VALIDATION_FAILED: ErrorKind.PACKAGE_MANAGER,
    ErrorCode.SPAWN_FAILED: ErrorKind.PROCESS,
    ErrorCode.PROCESS_TIMEOUT: ErrorKind.PROCESS,
    ErrorCode.PROCESS_KILLED: ErrorKind.PROCESS,
    ErrorCode.PROCESS_RESOURCE_LIMIT: ErrorKind.PROCESS,
    ErrorCode.TASK_FAILED: ErrorKind.TASK_EXECUTION,
    ErrorCode.TASK_DEPENDENCY_FAILED: ErrorKind.TASK_EXECUTION,
    ErrorCode.TASK_RETRY_EXHAUSTED: ErrorKind.TASK_EXECUTION,
    ErrorCode.CONFIG_ERROR: ErrorKind.CONFIGURATION,
    ErrorCode.CONFIG_FILE_NOT_FOUND: ErrorKind.CONFIGURATION,
    ErrorCode.CONFIG_PARSE_ERROR: ErrorKind.CONFIGURATION,
    ErrorCode.SYSTEM_ERROR: ErrorKind.SYSTEM,
    ErrorCode.FILE_SYSTEM_ERROR: ErrorKind.SYSTEM,
    ErrorCode.PERMISSION_DENIED: ErrorKind.SYSTEM,
    ErrorCode.RESOURCE_EXHAUSTED: ErrorKind.SYSTEM,
    ErrorCode.SECURITY_VIOLATION: ErrorKind.SECURITY,
    ErrorCode.COMMAND_INJECTION: ErrorKind.SECURITY,
    ErrorCode.CLI_PARSE_ERROR: ErrorKind.CLI,
    ErrorCode.CLI_INVALID_ARGUMENT: ErrorKind.CLI,
    ErrorCode.COLOR_ASSIGNMENT_FAILED: ErrorKind.COLOR,
    ErrorCode.INVALID_COLOR: ErrorKind.COLOR,
}


class ErrorSeverity(Enum):
    """Severity levels used for logging and shutdown decisions."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Structured context attached to a ``TasklyError``.

    Attributes:
        task_id: Task the error relates to
        command: Command line being run
        cwd: Working directory of the command
        pid: OS process id, when one existed
        exit_code: Exit code observed, if any
        retry_attempt: Attempt number when the error happened
        max_retries: Restart budget of the task
        metadata: Free-form extra details
    """

    task_id: str | None = None
    command: str | None = None
    cwd: str | None = None
    pid: int | None = None
    exit_code: int | None = None
    retry_attempt: int | None = None
    max_retries: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_log_fields(self) -> dict[str, Any]:
        """Return the populated fields, flattened for structured logging."""
        fields = {k: v for k, v in asdict(self).items() if v is not None and k != "metadata"}
        fields.update(self.metadata)
        return fields


class TasklyError(Exception):
    """Base class for all taskly errors.

    Attributes:
        message: Human readable description
        code: Stable ``ErrorCode``
        context: Structured ``ErrorContext``
        original_error: Underlying exception, when wrapping one
        timestamp: Wall clock time the error was created
    """

    default_code = ErrorCode.SYSTEM_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        context: ErrorContext | None = None,
        original_error: BaseException | None = None,
    ):
        """Initialize the error.

        Args:
            message: Description of the error
            code: Error code (defaults to the class default)
            context: Structured context
            original_error: Exception being wrapped
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or ErrorContext()
        self.original_error = original_error
        self.timestamp = time.time()

    @property
    def severity(self) -> ErrorSeverity:
        return get_error_severity(self.code)

    def detailed_message(self) -> str:
        """Message with the most relevant context appended."""
        parts = [self.message]
        ctx = self.context
        if ctx.task_id:
            parts.append(f"Task: {ctx.task_id}")
        if ctx.command:
            parts.append(f"Command: {ctx.command}")
        if ctx.cwd:
            parts.append(f"Working Directory: {ctx.cwd}")
        if ctx.exit_code is not None:
            parts.append(f"Exit Code: {ctx.exit_code}")
        if ctx.retry_attempt is not None and ctx.max_retries is not None:
            parts.append(f"Retry: {ctx.retry_attempt}/{ctx.max_retries}")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "context": asdict(self.context),
            "original_error": (
                {"type": type(self.original_error).__name__, "message": str(self.original_error)}
                if self.original_error
                else None
            ),
        }


class ValidationError(TasklyError):
    """Invalid task input, options or run configuration."""

    default_code = ErrorCode.VALIDATION_ERROR


class PackageManagerError(TasklyError):
    """Package manager shortcut or script lookup failed."""

    default_code = ErrorCode.PM_NOT_FOUND


class ProcessError(TasklyError):
    """Spawning or supervising a child process failed."""

    default_code = ErrorCode.SPAWN_FAILED


class TaskExecutionError(TasklyError):
    """A task or the run as a whole could not be executed."""

    default_code = ErrorCode.TASK_FAILED


class ConfigurationError(TasklyError):
    """Configuration file or environment overrides are invalid."""

    default_code = ErrorCode.CONFIG_ERROR


class SecurityViolation(TasklyError):
    """A command matched a security deny rule and was not spawned."""

    default_code = ErrorCode.SECURITY_VIOLATION


class CLIError(TasklyError):
    """Command line arguments could not be parsed."""

    default_code = ErrorCode.CLI_PARSE_ERROR


class SystemFault(TasklyError):
    """Operating system level failure (filesystem, permissions, limits)."""

    default_code = ErrorCode.SYSTEM_ERROR


_KIND_CLASSES: dict[ErrorKind, type[TasklyError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.COLOR: ValidationError,
    ErrorKind.PACKAGE_MANAGER: PackageManagerError,
    ErrorKind.PROCESS: ProcessError,
    ErrorKind.TASK_EXECUTION: TaskExecutionError,
    ErrorKind.CONFIGURATION: ConfigurationError,
    ErrorKind.SECURITY: SecurityViolation,
    ErrorKind.CLI: CLIError,
    ErrorKind.SYSTEM: SystemFault,
}


class ErrorFactory:
    """Builds the right ``TasklyError`` subclass for a code or OS error."""

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        original_error: BaseException | None = None,
        **context: Any,
    ) -> TasklyError:
        """Create an error of the class that owns ``code``.

        Args:
            code: Error code
            message: Description of the error
            original_error: Exception being wrapped
            **context: ``ErrorContext`` fields; unknown keys go to metadata

        Returns:
            A ``TasklyError`` subclass instance
        """
        error_cls = _KIND_CLASSES[code.kind]
        return error_cls(message, code, _build_context(context), original_error)

    @staticmethod
    def from_os_error(error: OSError, **context: Any) -> TasklyError:
        """Map an ``OSError`` from the filesystem or process layer."""
        filename = error.filename or "unknown"
        match error.errno:
            case errno.ENOENT:
                code = ErrorCode.FILE_SYSTEM_ERROR
                message = f"File or directory not found: {filename}"
            case errno.EACCES | errno.EPERM:
                code = ErrorCode.PERMISSION_DENIED
                message = f"Permission denied: {filename}"
            case errno.EMFILE | errno.ENFILE:
                code = ErrorCode.RESOURCE_EXHAUSTED
                message = "Too many open files"
            case errno.ENOTDIR:
                code = ErrorCode.FILE_SYSTEM_ERROR
                message = f"Not a directory: {filename}"
            case errno.EISDIR:
                code = ErrorCode.FILE_SYSTEM_ERROR
                message = f"Is a directory: {filename}"
            case _:
                code = ErrorCode.SYSTEM_ERROR
                message = f"System error: {error.strerror or error}"
        return ErrorFactory.create(code, message, original_error=error, **context)

    @staticmethod
    def from_spawn_error(error: OSError, command: str, **context: Any) -> ProcessError:
        """Wrap a failure raised while creating a child process."""
        if isinstance(error, FileNotFoundError):
            message = f"Command not found: {command}"
        elif isinstance(error, PermissionError):
            message = "Permission denied executing command"
        else:
            message = f"Failed to spawn process: {error}"
        ctx = _build_context({"command": command, **context})
        ctx.metadata.setdefault("errno", error.errno)
        return ProcessError(message, ErrorCode.SPAWN_FAILED, ctx, error)


def _build_context(values: dict[str, Any]) -> ErrorContext:
    known = {k: v for k, v in values.items() if k in ErrorContext.__dataclass_fields__}
    extra = {k: v for k, v in values.items() if k not in ErrorContext.__dataclass_fields__}
    ctx = ErrorContext(**known)
    ctx.metadata.update(extra)
    return ctx


_SEVERITIES: dict[ErrorCode, ErrorSeverity] = {
    ErrorCode.SECURITY_VIOLATION: ErrorSeverity.CRITICAL,
    ErrorCode.COMMAND_INJECTION: ErrorSeverity.CRITICAL,
    ErrorCode.RESOURCE_EXHAUSTED: ErrorSeverity.CRITICAL,
    ErrorCode.SPAWN_FAILED: ErrorSeverity.HIGH,
    ErrorCode.TASK_FAILED: ErrorSeverity.HIGH,
    ErrorCode.PERMISSION_DENIED: ErrorSeverity.HIGH,
    ErrorCode.CONFIG_ERROR: ErrorSeverity.HIGH,
    ErrorCode.PM_NOT_FOUND: ErrorSeverity.MEDIUM,
    ErrorCode.PROCESS_TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCode.VALIDATION_ERROR: ErrorSeverity.MEDIUM,
    ErrorCode.CLI_PARSE_ERROR: ErrorSeverity.MEDIUM,
}


def get_error_severity(code: ErrorCode) -> ErrorSeverity:
    """Return the severity for an error code (LOW when unlisted)."""
    return _SEVERITIES.get(code, ErrorSeverity.LOW)


def is_recoverable(error: TasklyError) -> bool:
    """Whether retrying the operation that raised ``error`` may succeed."""
    return error.code in {
        ErrorCode.PROCESS_TIMEOUT,
        ErrorCode.RESOURCE_EXHAUSTED,
        ErrorCode.SYSTEM_ERROR,
    }


def user_friendly_message(error: TasklyError) -> str:
    """Short actionable message for terminal output."""
    match error.code:
        case ErrorCode.PM_NOT_FOUND:
            manager = error.context.metadata.get("package_manager", "the required package manager")
            return f"Package manager not found. Please install {manager}."
        case ErrorCode.SPAWN_FAILED:
            command = error.context.command or "unknown"
            return f'Failed to run command "{command}". Check if the command exists and is executable.'
        case ErrorCode.PERMISSION_DENIED:
            return "Permission denied. Check file permissions and try running with appropriate privileges."
        case ErrorCode.PROCESS_TIMEOUT:
            return "Command timed out. Consider increasing the timeout or optimizing the command."
        case ErrorCode.VALIDATION_ERROR:
            return "Invalid configuration. Please check your command syntax and options."
        case ErrorCode.CONFIG_ERROR:
            return "Configuration error. Please check your taskly configuration file."
        case _:
            return error.message


__all__ = [
    "CLIError",
    "ConfigurationError",
    "ErrorCode",
    "ErrorContext",
    "ErrorFactory",
    "ErrorKind",
    "ErrorSeverity",
    "PackageManagerError",
    "ProcessError",
    "SecurityViolation",
    "SystemFault",
    "TaskExecutionError",
    "TasklyError",
    "ValidationError",
    "get_error_severity",
    "is_recoverable",
    "user_friendly_message",
]
