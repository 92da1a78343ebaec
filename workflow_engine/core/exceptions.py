"""Custom exceptions for workflow engine errors.

Every failure a task or the configuration layer can report is expressed as
one of the classes below so the CLI can map it onto a stable process exit
code.

Exception Hierarchy:
    WorkflowEngineException (base)
    ├── ConfigurationError
    │   ├── MissingOptionError
    │   ├── DecodeError
    │   ├── UnsupportedInterfaceError
    │   └── UnknownTaskError
    ├── CommandError
    │   ├── SpawnError
    │   ├── CommandFailedError
    │   ├── CommandCanceledError
    │   └── KillFailedError
    ├── ArtifactIOError
    └── JoinedError
"""

from __future__ import annotations

from collections.abc import Iterable


class WorkflowEngineException(Exception):
    """Base exception for all workflow engine errors.

    Attributes:
        message: Descriptive error message
        error_code: Machine-readable error identifier
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to a dictionary suitable for structured logs."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details if self.details else None,
        }


# ============================================================================
# CONFIGURATION ERRORS
# ============================================================================


class ConfigurationError(WorkflowEngineException):
    """Raised before any child is spawned when the configuration is unusable."""

    pass


class MissingOptionError(ConfigurationError):
    """Raised when a task requires an option that resolved to an empty value.

    Example:
        >>> raise MissingOptionError(
        ...     message="Grype image scan task pre-start error -> image name is required",
        ...     details={"option": "image_name"},
        ... )
    """

    pass


class DecodeError(ConfigurationError):
    """Raised when a flag, environment or default value cannot be decoded."""

    pass


class UnsupportedInterfaceError(ConfigurationError):
    """Raised when the container CLI interface is not one of the known values."""

    pass


class UnknownTaskError(ConfigurationError):
    """Raised when `run-task` is asked for a task that does not exist."""

    pass


# ============================================================================
# CHILD PROCESS ERRORS
# ============================================================================


class CommandError(WorkflowEngineException):
    """Base exception for a child process that did not finish cleanly.

    Attributes:
        exit_code: Runner exit code (child exit status or one of the runner's
            reserved codes)
    """

    def __init__(
        self,
        message: str,
        exit_code: int,
        error_code: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.exit_code = exit_code
        details = {"exit_code": exit_code, **(details or {})}
        super().__init__(message, error_code=error_code, details=details)


class SpawnError(CommandError):
    """Raised when the child could not be started (missing binary, permissions)."""

    pass


class CommandFailedError(CommandError):
    """Raised when the child exited with a non-zero status."""

    pass


class CommandCanceledError(CommandError):
    """Raised when the cancel scope fired and the child was terminated."""

    pass


class KillFailedError(CommandError):
    """Raised when the cancel scope fired but the child could not be terminated.

    Operators should treat this as a possibly leaked process.
    """

    pass


# ============================================================================
# ARTIFACT ERRORS
# ============================================================================


class ArtifactIOError(WorkflowEngineException):
    """Raised when an artifact file cannot be opened, written or closed."""

    pass


# ============================================================================
# AGGREGATION
# ============================================================================


class JoinedError(WorkflowEngineException):
    """Several errors reported together.

    Validation collects every problem before failing so the operator sees all
    missing parameters at once.
    """

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        message = "\n".join(str(error) for error in self.errors)
        super().__init__(message, details={"count": len(self.errors)})


def join_errors(errors: Iterable[BaseException | None]) -> BaseException | None:
    """Collapse a list of errors into None, the single error, or a JoinedError.

    Nested JoinedErrors are flattened so every failure is reported at one level.
    """
    collected: list[BaseException] = []
    for error in errors:
        if isinstance(error, JoinedError):
            collected.extend(error.errors)
        elif error is not None:
            collected.append(error)
    if not collected:
        return None
    if len(collected) == 1:
        return collected[0]
    return JoinedError(collected)
