"""Custom exceptions for releasectl."""

from typing import Any


class ReleaseCtlError(Exception):
    """Base exception for all releasectl errors."""

    reason = "error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(ReleaseCtlError):
    """Configuration-related errors."""

    reason = "config_error"


class ValidationError(ReleaseCtlError):
    """Input validation errors."""

    reason = "invalid_input"


class StateError(ReleaseCtlError):
    """Release store errors."""

    reason = "state_error"

    def __init__(
        self,
        message: str,
        release_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.release_id = release_id


class InvalidTransitionError(StateError):
    """Illegal release status transition."""

    reason = "invalid_transition"


class BuildFailure(ReleaseCtlError):
    """A build stage failed locally."""

    def __init__(
        self,
        message: str,
        stage: str,
        exit_code: int | None = None,
        output: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.stage = stage
        self.exit_code = exit_code
        self.output = output

    @property
    def reason(self) -> str:  # type: ignore[override]
        return f"build_failed:{self.stage}"


class TransportError(ReleaseCtlError):
    """Secure transport errors."""

    reason = "transport_error"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host


class ConnectionError(TransportError):
    """Host unreachable or session dropped."""

    reason = "connection_error"


class AuthError(TransportError):
    """Credential rejected by the host."""

    reason = "auth_error"


class HostKeyMismatchError(TransportError):
    """Host key does not match the known fingerprint."""

    reason = "host_key_mismatch"


class RemoteCommandError(ReleaseCtlError):
    """A remote command exited non-zero."""

    reason = "remote_command_failed"

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class SupervisorError(RemoteCommandError):
    """Process supervisor command failed."""

    reason = "supervisor_error"


class HealthCheckTimeout(ReleaseCtlError):
    """Liveness endpoint did not become healthy before the deadline."""

    reason = "health_check_timeout"

    def __init__(
        self,
        message: str,
        url: str = "",
        timeout_seconds: float | None = None,
        attempts: int = 0,
        last_error: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        self.last_error = last_error


class HostBusyError(ReleaseCtlError):
    """Another release holds the host lock."""

    reason = "host_busy"

    def __init__(
        self,
        message: str,
        host: str,
        holder: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.host = host
        self.holder = holder
