"""Tests for the error taxonomy, severities and the error factory."""

import errno

import pytest

from taskly.errors import (
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    ErrorFactory,
    ErrorKind,
    ErrorSeverity,
    PackageManagerError,
    ProcessError,
    SecurityViolation,
    SystemFault,
    TaskExecutionError,
    TasklyError,
    ValidationError,
    get_error_severity,
    is_recoverable,
    user_friendly_message,
)


class TestErrorCodes:
    """Test cases for error code grouping and severities."""

    def test_every_code_has_a_kind(self):
        """Test that every error code belongs to a kind."""
        for code in ErrorCode:
            assert isinstance(code.kind, ErrorKind)

    @pytest.mark.parametrize(
        ("code", "severity"),
        [
            (ErrorCode.SECURITY_VIOLATION, ErrorSeverity.CRITICAL),
            (ErrorCode.COMMAND_INJECTION, ErrorSeverity.CRITICAL),
            (ErrorCode.RESOURCE_EXHAUSTED, ErrorSeverity.CRITICAL),
            (ErrorCode.SPAWN_FAILED, ErrorSeverity.HIGH),
            (ErrorCode.TASK_FAILED, ErrorSeverity.HIGH),
            (ErrorCode.CONFIG_ERROR, ErrorSeverity.HIGH),
            (ErrorCode.PROCESS_TIMEOUT, ErrorSeverity.MEDIUM),
            (ErrorCode.PM_NOT_FOUND, ErrorSeverity.MEDIUM),
            (ErrorCode.INVALID_COLOR, ErrorSeverity.LOW),
        ],
    )
    def test_severity_mapping(self, code, severity):
        """Test the severity assigned to representative codes."""
        assert get_error_severity(code) == severity

    def test_recoverable_codes(self):
        """Test that only transient codes are recoverable."""
        assert is_recoverable(ProcessError("slow", ErrorCode.PROCESS_TIMEOUT))
        assert not is_recoverable(SecurityViolation("rm -rf /"))


class TestTasklyError:
    """Test cases for the error base class."""

    def test_default_codes(self):
        """Test that each subclass carries its default code."""
        assert ValidationError("x").code == ErrorCode.VALIDATION_ERROR
        assert ProcessError("x").code == ErrorCode.SPAWN_FAILED
        assert TaskExecutionError("x").code == ErrorCode.TASK_FAILED
        assert ConfigurationError("x").code == ErrorCode.CONFIG_ERROR
        assert SecurityViolation("x").code == ErrorCode.SECURITY_VIOLATION

    def test_detailed_message(self):
        """Test that context is appended to the message."""
        error = TaskExecutionError(
            "Task failed",
            context=ErrorContext(
                task_id="build",
                command="make",
                cwd="/src",
                exit_code=2,
                retry_attempt=1,
                max_retries=3,
            ),
        )
        assert error.detailed_message() == (
            "Task failed | Task: build | Command: make | Working Directory: /src | Exit Code: 2 | Retry: 1/3"
        )

    def test_to_dict(self):
        """Test the serialized form of an error."""
        cause = OSError("boom")
        error = ProcessError("spawn failed", context=ErrorContext(task_id="a"), original_error=cause)
        data = error.to_dict()

        assert data["name"] == "ProcessError"
        assert data["code"] == "SPAWN_FAILED"
        assert data["severity"] == "high"
        assert data["context"]["task_id"] == "a"
        assert data["original_error"] == {"type": "OSError", "message": "boom"}

    def test_log_fields_flatten_metadata(self):
        """Test that only populated context fields are logged."""
        context = ErrorContext(task_id="a", pid=42, metadata={"rule": "sudo"})
        assert context.as_log_fields() == {"task_id": "a", "pid": 42, "rule": "sudo"}

    def test_errors_are_exceptions(self):
        """Test that taskly errors can be raised and caught as TasklyError."""
        with pytest.raises(TasklyError, match="bad input"):
            raise ValidationError("bad input")


class TestErrorFactory:
    """Test cases for ErrorFactory."""

    @pytest.mark.parametrize(
        ("code", "error_cls"),
        [
            (ErrorCode.INVALID_COMMAND, ValidationError),
            (ErrorCode.INVALID_COLOR, ValidationError),
            (ErrorCode.PM_VALIDATION_FAILED, PackageManagerError),
            (ErrorCode.PROCESS_TIMEOUT, ProcessError),
            (ErrorCode.TASK_RETRY_EXHAUSTED, TaskExecutionError),
            (ErrorCode.CONFIG_PARSE_ERROR, ConfigurationError),
            (ErrorCode.COMMAND_INJECTION, SecurityViolation),
            (ErrorCode.PERMISSION_DENIED, SystemFault),
        ],
    )
    def test_create_picks_class_by_code(self, code, error_cls):
        """Test that create() returns the class owning the code."""
        error = ErrorFactory.create(code, "message")
        assert type(error) is error_cls
        assert error.code == code

    def test_create_splits_context_and_metadata(self):
        """Test that unknown context keys end up in metadata."""
        error = ErrorFactory.create(ErrorCode.SPAWN_FAILED, "failed", task_id="a", rule="x")
        assert error.context.task_id == "a"
        assert error.context.metadata == {"rule": "x"}

    @pytest.mark.parametrize(
        ("err", "code"),
        [
            (errno.ENOENT, ErrorCode.FILE_SYSTEM_ERROR),
            (errno.EACCES, ErrorCode.PERMISSION_DENIED),
            (errno.EPERM, ErrorCode.PERMISSION_DENIED),
            (errno.EMFILE, ErrorCode.RESOURCE_EXHAUSTED),
            (errno.ENOTDIR, ErrorCode.FILE_SYSTEM_ERROR),
            (errno.EIO, ErrorCode.SYSTEM_ERROR),
        ],
    )
    def test_from_os_error(self, err, code):
        """Test the errno mapping of OS errors."""
        error = ErrorFactory.from_os_error(OSError(err, "failure", "/tmp/x"))
        assert error.code == code

    def test_from_spawn_error_not_found(self):
        """Test wrapping a FileNotFoundError raised at spawn."""
        error = ErrorFactory.from_spawn_error(
            FileNotFoundError(errno.ENOENT, "No such file"),
            "missing-cmd --flag",
            task_id="t",
        )
        assert isinstance(error, ProcessError)
        assert error.message == "Command not found: missing-cmd --flag"
        assert error.context.command == "missing-cmd --flag"
        assert error.context.metadata["errno"] == errno.ENOENT

    def test_from_spawn_error_permission(self):
        """Test wrapping a PermissionError raised at spawn."""
        error = ErrorFactory.from_spawn_error(PermissionError(errno.EACCES, "denied"), "./script.sh")
        assert error.message == "Permission denied executing command"


class TestUserFriendlyMessage:
    """Test cases for user_friendly_message."""

    def test_spawn_failed_message(self):
        """Test the message for spawn failures."""
        error = ProcessError("x", context=ErrorContext(command="foo"))
        assert user_friendly_message(error) == (
            'Failed to run command "foo". Check if the command exists and is executable.'
        )

    def test_falls_back_to_message(self):
        """Test that codes without a friendly message use the error message."""
        error = ValidationError("At least one task is required", ErrorCode.INVALID_OPTIONS)
        assert user_friendly_message(error) == "At least one task is required"
