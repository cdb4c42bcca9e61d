"""Exceptions raised by the family engine.

Every failure that leaves a component is one of these; the error classifier
turns them (and third-party failures) into a :class:`ClassifiedError`.
"""

import enum


class FamsyncError(Exception):
    """Base class for all engine errors."""


class ValidationFailed(FamsyncError):
    """Input failed one or more format checks.

    ``messages`` holds every violation found, not only the first.
    """

    def __init__(self, messages: list[str]) -> None:
        self.messages = list(messages)
        super().__init__("Validation failed: " + ", ".join(self.messages))


class ConstraintViolation(FamsyncError):
    """A write would break a relational invariant of the store."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Constraint violation: {message}")


class CodeCollision(ConstraintViolation):
    """The join code is already taken by another family."""

    def __init__(self, code: str = "", message: str = "Family code already exists") -> None:
        self.code = code
        super().__init__(message)


class RoleChangeRejected(ValidationFailed, ConstraintViolation):
    """A role transition conflicts with the single-parent-admin invariant.

    Catchable as either :class:`ValidationFailed` or
    :class:`ConstraintViolation`.
    """

    def __init__(self, message: str) -> None:
        self.messages = [message]
        self.message = message
        FamsyncError.__init__(self, f"Role change rejected: {message}")


class NotFound(FamsyncError):
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Not found: {message}")


class CodeGenerationFailure(str, enum.Enum):
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    UNIQUENESS_CHECK_FAILED = "uniqueness_check_failed"
    FORMAT_VALIDATION_FAILED = "format_validation_failed"


class CodeGenerationFailed(FamsyncError):
    def __init__(
        self,
        reason: CodeGenerationFailure,
        cause: BaseException | None = None,
        attempts: int = 0,
    ) -> None:
        self.reason = reason
        self.cause = cause
        self.attempts = attempts
        detail = f"Code generation failed: {reason.value}"
        if cause is not None:
            detail += f" ({cause})"
        super().__init__(detail)


class NetworkUnavailable(FamsyncError):
    def __init__(self, message: str = "Network unavailable") -> None:
        super().__init__(message)


class ConnectionTimeout(FamsyncError):
    def __init__(self, message: str = "Connection timeout") -> None:
        super().__init__(message)


class ServerError(FamsyncError):
    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Server error: HTTP {status_code}")


class CloudSyncFailed(FamsyncError):
    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"Cloud sync failed: {cause}")


class CloudUnavailable(FamsyncError):
    """The remote backend is throttling or temporarily refusing requests."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Cloud unavailable: HTTP {status_code}")


class AuthenticationRequired(FamsyncError):
    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class InsufficientPermissions(FamsyncError):
    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message)


class UnknownError(FamsyncError):
    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Unknown error: {cause!r}")


class IllegalTransition(FamsyncError):
    """A creation attempt tried to move along an edge its state machine rejects."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition {current} -> {target}")
