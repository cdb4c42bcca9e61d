"""Error classification and recovery strategies.

Any failure raised while creating a family, joining one, changing a role or
mirroring to the remote backend is mapped onto a closed set of
:class:`ErrorKind` values.  Everything that follows from the kind (category,
priority, retryability, recovery strategy, user-facing message) lives in the
``ERROR_TRAITS`` table, so the mapping is plain data and exhaustively
testable.

:class:`ErrorClassifier` adds the stateful parts: escalation of recurring
low-priority errors, suppression of duplicate reports inside a rolling
window, and a short history for pattern analysis.
"""

import asyncio
import enum
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from famsync.config import settings
from famsync.errors import (
    AuthenticationRequired,
    CloudSyncFailed,
    CloudUnavailable,
    CodeCollision,
    CodeGenerationFailed,
    CodeGenerationFailure,
    ConnectionTimeout,
    ConstraintViolation,
    InsufficientPermissions,
    NetworkUnavailable,
    NotFound,
    ServerError,
    UnknownError,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    CLOUD_SYNC = "cloud_sync"
    CODE_GENERATION = "code_generation"
    LOCAL_DATABASE = "local_database"
    UNKNOWN = "unknown"


class ErrorPriority(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class InterventionKind(str, enum.Enum):
    SIGN_IN = "sign_in"
    CORRECT_INPUT = "correct_input"
    RETRY_LATER = "retry_later"
    REQUEST_ACCESS = "request_access"
    CONTACT_SUPPORT = "contact_support"


class UserAction(str, enum.Enum):
    DISMISS = "dismiss"
    RETRY = "retry"
    SIGN_IN = "sign_in"
    EDIT_INPUT = "edit_input"
    CHECK_CONNECTION = "check_connection"
    WORK_OFFLINE = "work_offline"
    MANAGE_STORAGE = "manage_storage"


# ---------------------------------------------------------------------------
# Recovery strategies (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AutomaticRetry:
    delay: float
    max_attempts: int


@dataclass(frozen=True)
class FallbackToLocal:
    pass


@dataclass(frozen=True)
class UserIntervention:
    kind: InterventionKind


@dataclass(frozen=True)
class NoRecovery:
    pass


RecoveryStrategy = AutomaticRetry | FallbackToLocal | UserIntervention | NoRecovery


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

class ErrorKind(str, enum.Enum):
    VALIDATION_FAILED = "validation_failed"
    CONSTRAINT_VIOLATION = "constraint_violation"
    NOT_FOUND = "not_found"
    CODE_COLLISION = "code_collision"
    UNIQUENESS_CHECK_FAILED = "uniqueness_check_failed"
    MAX_CODE_ATTEMPTS_EXCEEDED = "max_code_attempts_exceeded"
    CODE_FORMAT_INVALID = "code_format_invalid"
    DATABASE_UNAVAILABLE = "database_unavailable"
    LOCAL_CREATION_FAILED = "local_creation_failed"
    CLOUD_SYNC_FAILED = "cloud_sync_failed"
    CLOUD_UNAVAILABLE = "cloud_unavailable"
    NETWORK_UNAVAILABLE = "network_unavailable"
    CONNECTION_TIMEOUT = "connection_timeout"
    SERVER_ERROR = "server_error"
    NOT_AUTHENTICATED = "not_authenticated"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    OPERATION_CANCELLED = "operation_cancelled"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorTraits:
    category: ErrorCategory
    priority: ErrorPriority
    retryable: bool
    strategy: RecoveryStrategy
    user_message: str


_C = ErrorCategory
_P = ErrorPriority

ERROR_TRAITS: dict[ErrorKind, ErrorTraits] = {
    ErrorKind.VALIDATION_FAILED: ErrorTraits(
        _C.VALIDATION, _P.MEDIUM, False,
        UserIntervention(InterventionKind.CORRECT_INPUT),
        "Please check your input and try again.",
    ),
    ErrorKind.CONSTRAINT_VIOLATION: ErrorTraits(
        _C.LOCAL_DATABASE, _P.MEDIUM, False,
        UserIntervention(InterventionKind.CORRECT_INPUT),
        "This change conflicts with the family's current members.",
    ),
    ErrorKind.NOT_FOUND: ErrorTraits(
        _C.LOCAL_DATABASE, _P.MEDIUM, False,
        UserIntervention(InterventionKind.CORRECT_INPUT),
        "We couldn't find that family or member.",
    ),
    ErrorKind.CODE_COLLISION: ErrorTraits(
        _C.CODE_GENERATION, _P.LOW, True,
        AutomaticRetry(delay=1.0, max_attempts=5),
        "That family code is taken. Generating a new one...",
    ),
    ErrorKind.UNIQUENESS_CHECK_FAILED: ErrorTraits(
        _C.CODE_GENERATION, _P.LOW, True,
        AutomaticRetry(delay=2.0, max_attempts=3),
        "We couldn't verify the family code right now. Please try again.",
    ),
    ErrorKind.MAX_CODE_ATTEMPTS_EXCEEDED: ErrorTraits(
        _C.CODE_GENERATION, _P.HIGH, False,
        UserIntervention(InterventionKind.RETRY_LATER),
        "Unable to create a unique family code. Please try again in a moment.",
    ),
    ErrorKind.CODE_FORMAT_INVALID: ErrorTraits(
        _C.CODE_GENERATION, _P.MEDIUM, False,
        NoRecovery(),
        "Something went wrong while creating the family code.",
    ),
    ErrorKind.DATABASE_UNAVAILABLE: ErrorTraits(
        _C.LOCAL_DATABASE, _P.LOW, True,
        AutomaticRetry(delay=1.0, max_attempts=3),
        "Local storage is temporarily unavailable. Please try again.",
    ),
    ErrorKind.LOCAL_CREATION_FAILED: ErrorTraits(
        _C.LOCAL_DATABASE, _P.MEDIUM, True,
        AutomaticRetry(delay=1.0, max_attempts=2),
        "We couldn't save your family on this device.",
    ),
    ErrorKind.CLOUD_SYNC_FAILED: ErrorTraits(
        _C.CLOUD_SYNC, _P.LOW, True,
        FallbackToLocal(),
        "Saved on this device. It will sync later.",
    ),
    ErrorKind.CLOUD_UNAVAILABLE: ErrorTraits(
        _C.CLOUD_SYNC, _P.LOW, True,
        AutomaticRetry(delay=2.0, max_attempts=3),
        "Sync is temporarily unavailable. Saved on this device.",
    ),
    ErrorKind.NETWORK_UNAVAILABLE: ErrorTraits(
        _C.NETWORK, _P.LOW, True,
        AutomaticRetry(delay=2.0, max_attempts=3),
        "No internet connection. Saved on this device and will sync when connected.",
    ),
    ErrorKind.CONNECTION_TIMEOUT: ErrorTraits(
        _C.NETWORK, _P.LOW, True,
        AutomaticRetry(delay=2.0, max_attempts=3),
        "The connection timed out. Saved on this device and will sync later.",
    ),
    # 5xx shape; 4xx is derived in traits_for()
    ErrorKind.SERVER_ERROR: ErrorTraits(
        _C.NETWORK, _P.LOW, True,
        AutomaticRetry(delay=5.0, max_attempts=2),
        "The server had a problem. Saved on this device and will sync later.",
    ),
    ErrorKind.NOT_AUTHENTICATED: ErrorTraits(
        _C.AUTHENTICATION, _P.HIGH, False,
        UserIntervention(InterventionKind.SIGN_IN),
        "Please sign in to continue.",
    ),
    ErrorKind.INSUFFICIENT_PERMISSIONS: ErrorTraits(
        _C.AUTHENTICATION, _P.MEDIUM, False,
        UserIntervention(InterventionKind.REQUEST_ACCESS),
        "You don't have permission to do that.",
    ),
    ErrorKind.MAX_RETRIES_EXCEEDED: ErrorTraits(
        _C.UNKNOWN, _P.HIGH, False,
        NoRecovery(),
        "That didn't work after several tries. Please try again later.",
    ),
    ErrorKind.OPERATION_CANCELLED: ErrorTraits(
        _C.UNKNOWN, _P.LOW, False,
        NoRecovery(),
        "The operation was cancelled.",
    ),
    ErrorKind.UNKNOWN: ErrorTraits(
        _C.UNKNOWN, _P.MEDIUM, False,
        NoRecovery(),
        "Something unexpected happened.",
    ),
}


def traits_for(kind: ErrorKind, status_code: int | None = None) -> ErrorTraits:
    """Look up the traits of *kind*; server errors depend on the status class."""
    traits = ERROR_TRAITS[kind]
    if kind == ErrorKind.SERVER_ERROR and status_code is not None and status_code < 500:
        return ErrorTraits(
            _C.NETWORK, _P.MEDIUM, False,
            UserIntervention(InterventionKind.CONTACT_SUPPORT),
            "The server rejected the request.",
        )
    return traits


@dataclass(frozen=True)
class ClassifiedError:
    """A failure mapped onto the closed taxonomy."""

    kind: ErrorKind
    technical_description: str
    status_code: int | None = None
    messages: tuple[str, ...] = ()
    cause: BaseException | None = field(default=None, compare=False, repr=False)

    @property
    def traits(self) -> ErrorTraits:
        return traits_for(self.kind, self.status_code)

    @property
    def category(self) -> ErrorCategory:
        return self.traits.category

    @property
    def priority(self) -> ErrorPriority:
        return self.traits.priority

    @property
    def retryable(self) -> bool:
        return self.traits.retryable

    @property
    def strategy(self) -> RecoveryStrategy:
        return self.traits.strategy

    @property
    def user_message(self) -> str:
        if self.messages:
            return " ".join(self.messages)
        return self.traits.user_message

    @property
    def fingerprint(self) -> tuple[ErrorKind, str]:
        return self.kind, self.technical_description


def _http_status_kind(status_code: int) -> ErrorKind:
    if status_code == 401:
        return ErrorKind.NOT_AUTHENTICATED
    if status_code == 403:
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status_code == 429:
        return ErrorKind.CLOUD_UNAVAILABLE
    return ErrorKind.SERVER_ERROR


def classify(exc: BaseException) -> ClassifiedError:
    """Map any exception onto a :class:`ClassifiedError`.  Never raises."""
    description = str(exc) or type(exc).__name__

    def _c(kind: ErrorKind, **kwargs) -> ClassifiedError:
        return ClassifiedError(kind, description, cause=exc, **kwargs)

    if isinstance(exc, asyncio.CancelledError):
        return _c(ErrorKind.OPERATION_CANCELLED)
    if isinstance(exc, CodeCollision):
        return _c(ErrorKind.CODE_COLLISION)
    # Before ValidationFailed: a rejected role change is both
    if isinstance(exc, ConstraintViolation):
        return _c(ErrorKind.CONSTRAINT_VIOLATION, messages=(exc.message,))
    if isinstance(exc, ValidationFailed):
        return _c(ErrorKind.VALIDATION_FAILED, messages=tuple(exc.messages))
    if isinstance(exc, NotFound):
        return _c(ErrorKind.NOT_FOUND)
    if isinstance(exc, CodeGenerationFailed):
        return _c({
            CodeGenerationFailure.MAX_ATTEMPTS_EXCEEDED: ErrorKind.MAX_CODE_ATTEMPTS_EXCEEDED,
            CodeGenerationFailure.UNIQUENESS_CHECK_FAILED: ErrorKind.UNIQUENESS_CHECK_FAILED,
            CodeGenerationFailure.FORMAT_VALIDATION_FAILED: ErrorKind.CODE_FORMAT_INVALID,
        }[exc.reason])
    if isinstance(exc, NetworkUnavailable):
        return _c(ErrorKind.NETWORK_UNAVAILABLE)
    if isinstance(exc, ConnectionTimeout):
        return _c(ErrorKind.CONNECTION_TIMEOUT)
    if isinstance(exc, ServerError):
        return _c(ErrorKind.SERVER_ERROR, status_code=exc.status_code)
    if isinstance(exc, CloudSyncFailed):
        return _c(ErrorKind.CLOUD_SYNC_FAILED)
    if isinstance(exc, CloudUnavailable):
        return _c(ErrorKind.CLOUD_UNAVAILABLE, status_code=exc.status_code)
    if isinstance(exc, AuthenticationRequired):
        return _c(ErrorKind.NOT_AUTHENTICATED)
    if isinstance(exc, InsufficientPermissions):
        return _c(ErrorKind.INSUFFICIENT_PERMISSIONS)
    if isinstance(exc, UnknownError):
        return _c(ErrorKind.UNKNOWN)

    # Third-party failures
    if isinstance(exc, httpx.TimeoutException):
        return _c(ErrorKind.CONNECTION_TIMEOUT)
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        return _c(_http_status_kind(status_code), status_code=status_code)
    if isinstance(exc, httpx.TransportError):
        return _c(ErrorKind.NETWORK_UNAVAILABLE)
    if isinstance(exc, IntegrityError):
        return _c(ErrorKind.CONSTRAINT_VIOLATION)
    if isinstance(exc, OperationalError):
        return _c(ErrorKind.DATABASE_UNAVAILABLE)
    if isinstance(exc, SQLAlchemyError):
        return _c(ErrorKind.LOCAL_CREATION_FAILED)
    if isinstance(exc, TimeoutError):
        return _c(ErrorKind.CONNECTION_TIMEOUT)
    if isinstance(exc, ConnectionError):
        return _c(ErrorKind.NETWORK_UNAVAILABLE)

    return _c(ErrorKind.UNKNOWN)


def effective_priority(priority: ErrorPriority, retry_count: int) -> ErrorPriority:
    """Escalate a recurring low-priority error: medium at 3 retries, high at 5."""
    if priority != ErrorPriority.LOW:
        return priority
    if retry_count >= 5:
        return ErrorPriority.HIGH
    if retry_count >= 3:
        return ErrorPriority.MEDIUM
    return priority


# ---------------------------------------------------------------------------
# Stateful classifier
# ---------------------------------------------------------------------------

class ErrorThrottle:
    """Rolling-window duplicate suppression keyed by error fingerprint.

    Every occurrence is counted; only the first inside each window is
    reported.  A key not seen for a whole window is forgotten, and at most
    ``max_keys`` keys are tracked (least recently seen evicted first).
    """

    def __init__(
        self,
        window_seconds: float = settings.ERROR_THROTTLE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = settings.ERROR_THROTTLE_MAX_KEYS,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        # Insertion order is least recently seen first
        self._last_seen: dict[tuple, float] = {}
        self._last_reported: dict[tuple, float] = {}
        self._counts: dict[tuple, int] = {}

    def __len__(self) -> int:
        return len(self._last_seen)

    def hit(self, key: tuple) -> bool:
        """Count one occurrence of *key*; True if it should be reported."""
        now = self._clock()
        self._evict(now)
        self._last_seen.pop(key, None)
        self._last_seen[key] = now
        self._counts[key] = self._counts.get(key, 0) + 1
        last = self._last_reported.get(key)
        if last is not None and now - last < self.window_seconds:
            return False
        self._last_reported[key] = now
        return True

    def count(self, key: tuple) -> int:
        return self._counts.get(key, 0)

    def clear(self) -> None:
        self._last_seen.clear()
        self._last_reported.clear()
        self._counts.clear()

    def _evict(self, now: float) -> None:
        for key, seen in list(self._last_seen.items()):
            if now - seen < self.window_seconds and len(self._last_seen) < self.max_keys:
                break
            del self._last_seen[key]
            self._last_reported.pop(key, None)
            self._counts.pop(key, None)


@dataclass(frozen=True)
class ErrorReport:
    error: ClassifiedError
    effective_priority: ErrorPriority
    occurrences: int
    should_surface: bool


@dataclass(frozen=True)
class RecoveryAction:
    strategy: RecoveryStrategy
    retry_permitted: bool
    delay: float = 0.0
    attempts_remaining: int = 0
    user_actions: tuple[UserAction, ...] = ()


class ErrorPatternType(str, enum.Enum):
    NONE = "none"
    REPEATED_NETWORK_FAILURE = "repeated_network_failure"
    REPEATED_CLOUD_SYNC_FAILURE = "repeated_cloud_sync_failure"
    REPEATED_VALIDATION_FAILURE = "repeated_validation_failure"
    SPORADIC = "sporadic"


@dataclass(frozen=True)
class ErrorPattern:
    type: ErrorPatternType
    frequency: int
    recommendation: UserAction | None


_PATTERN_RULES = (
    (ErrorCategory.NETWORK, ErrorPatternType.REPEATED_NETWORK_FAILURE, UserAction.CHECK_CONNECTION),
    (ErrorCategory.CLOUD_SYNC, ErrorPatternType.REPEATED_CLOUD_SYNC_FAILURE, UserAction.WORK_OFFLINE),
    (ErrorCategory.VALIDATION, ErrorPatternType.REPEATED_VALIDATION_FAILURE, UserAction.EDIT_INPUT),
)

_MAX_BACKOFF_SECONDS = 60.0

_LOG_LEVELS = {
    ErrorPriority.LOW: logging.INFO,
    ErrorPriority.MEDIUM: logging.WARNING,
    ErrorPriority.HIGH: logging.ERROR,
}


class ErrorClassifier:
    """Classify failures, decide recovery, and throttle duplicate reports."""

    def __init__(
        self,
        throttle: ErrorThrottle | None = None,
        history_size: int = 20,
    ) -> None:
        self.throttle = throttle or ErrorThrottle()
        self._history: deque[ClassifiedError] = deque(maxlen=history_size)

    def classify(self, exc: BaseException) -> ClassifiedError:
        return classify(exc)

    def report(self, error: ClassifiedError | BaseException, retry_count: int = 0) -> ErrorReport:
        """Record one occurrence and decide whether to surface it to the user."""
        if not isinstance(error, ClassifiedError):
            error = classify(error)
        self._history.append(error)

        surface = self.throttle.hit(error.fingerprint)
        priority = effective_priority(error.priority, retry_count)
        occurrences = self.throttle.count(error.fingerprint)

        if surface:
            logger.log(
                _LOG_LEVELS[priority],
                "Category: %s | Priority: %s | Retryable: %s | Retry Count: %d | Description: %s",
                error.category.value, priority.name, error.retryable, retry_count,
                error.technical_description,
            )
        else:
            logger.debug(
                "Suppressed duplicate %s report (%d occurrences)", error.kind.value, occurrences,
            )

        return ErrorReport(
            error=error,
            effective_priority=priority,
            occurrences=occurrences,
            should_surface=surface,
        )

    def recovery_action(self, error: ClassifiedError, retry_count: int = 0) -> RecoveryAction:
        """Turn the error's strategy into a concrete next step.

        Automatic retries back off exponentially from the strategy's base
        delay; once ``max_attempts`` retries are used the retry is no longer
        permitted.
        """
        strategy = error.strategy
        if isinstance(strategy, AutomaticRetry):
            remaining = max(0, strategy.max_attempts - retry_count)
            delay = min(strategy.delay * (2 ** retry_count), _MAX_BACKOFF_SECONDS)
            actions = (UserAction.RETRY, UserAction.DISMISS)
            if error.category == ErrorCategory.NETWORK:
                actions = (UserAction.CHECK_CONNECTION,) + actions
            return RecoveryAction(
                strategy=strategy,
                retry_permitted=error.retryable and remaining > 0,
                delay=delay,
                attempts_remaining=remaining,
                user_actions=actions,
            )
        if isinstance(strategy, FallbackToLocal):
            return RecoveryAction(
                strategy=strategy,
                retry_permitted=error.retryable,
                user_actions=(UserAction.WORK_OFFLINE, UserAction.DISMISS),
            )
        if isinstance(strategy, UserIntervention):
            action = {
                InterventionKind.SIGN_IN: UserAction.SIGN_IN,
                InterventionKind.CORRECT_INPUT: UserAction.EDIT_INPUT,
                InterventionKind.RETRY_LATER: UserAction.RETRY,
            }.get(strategy.kind, UserAction.DISMISS)
            actions = (action,) if action == UserAction.DISMISS else (action, UserAction.DISMISS)
            return RecoveryAction(
                strategy=strategy,
                retry_permitted=error.retryable,
                user_actions=actions,
            )
        return RecoveryAction(
            strategy=strategy, retry_permitted=False, user_actions=(UserAction.DISMISS,),
        )

    def analyze_pattern(self) -> ErrorPattern:
        """Look at the last three recorded errors for a repeated category."""
        errors = list(self._history)
        if not errors:
            return ErrorPattern(ErrorPatternType.NONE, 0, None)
        if len(errors) >= 3:
            recent = errors[-3:]
            for category, pattern_type, recommendation in _PATTERN_RULES:
                if all(e.category == category for e in recent):
                    return ErrorPattern(pattern_type, len(recent), recommendation)
        return ErrorPattern(ErrorPatternType.SPORADIC, len(errors), None)

    def clear(self) -> None:
        self._history.clear()
        self.throttle.clear()
