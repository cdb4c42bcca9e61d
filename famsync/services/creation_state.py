"""State machine for a single creation, join or role-update attempt.

One instance per in-flight attempt; not safe for concurrent transitions.
"""

import enum
import logging
from datetime import datetime, timezone

from famsync.services.error_classifier import ClassifiedError

logger = logging.getLogger(__name__)


class CreationStage(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    GENERATING_CODE = "generating_code"
    CREATING_LOCALLY = "creating_locally"
    SYNCING_REMOTE = "syncing_remote"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def progress(self) -> float:
        return _PROGRESS[self]

    @property
    def status_text(self) -> str:
        return _STATUS_TEXT[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CreationStage.COMPLETED, CreationStage.FAILED)


_PROGRESS = {
    CreationStage.IDLE: 0.0,
    CreationStage.VALIDATING: 0.2,
    CreationStage.GENERATING_CODE: 0.4,
    CreationStage.CREATING_LOCALLY: 0.6,
    CreationStage.SYNCING_REMOTE: 0.8,
    CreationStage.COMPLETED: 1.0,
    CreationStage.FAILED: 0.0,
}

_STATUS_TEXT = {
    CreationStage.IDLE: "Ready",
    CreationStage.VALIDATING: "Checking details...",
    CreationStage.GENERATING_CODE: "Creating family code...",
    CreationStage.CREATING_LOCALLY: "Saving...",
    CreationStage.SYNCING_REMOTE: "Syncing...",
    CreationStage.COMPLETED: "Done",
    CreationStage.FAILED: "Failed",
}

# Happy path, in order
STAGE_ORDER = (
    CreationStage.IDLE,
    CreationStage.VALIDATING,
    CreationStage.GENERATING_CODE,
    CreationStage.CREATING_LOCALLY,
    CreationStage.SYNCING_REMOTE,
    CreationStage.COMPLETED,
)

_NEXT_STAGE = dict(zip(STAGE_ORDER, STAGE_ORDER[1:]))


def can_transition(current: CreationStage, target: CreationStage) -> bool:
    """Return True if *current* -> *target* is a legal edge.

    Legal edges are the forward steps of the happy path plus any non-terminal
    stage into FAILED.  Retry out of FAILED goes through
    :meth:`CreationStateMachine.retry`, not through this table.
    """
    if current.is_terminal:
        return False
    if target == CreationStage.FAILED:
        return True
    return _NEXT_STAGE.get(current) == target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreationStateMachine:
    """Track stage, progress, attempts and the classified failure of one attempt."""

    def __init__(self) -> None:
        self.state = CreationStage.IDLE
        self.error: ClassifiedError | None = None
        self.attempt_count = 0
        self.history: list[CreationStage] = [CreationStage.IDLE]
        self.stage_entered_at: list[tuple[CreationStage, datetime]] = [
            (CreationStage.IDLE, _utcnow()),
        ]

    # -- transitions -----------------------------------------------------------

    def can_transition(self, target: CreationStage) -> bool:
        return can_transition(self.state, target)

    def transition(self, target: CreationStage) -> bool:
        """Move to *target* if the edge is legal; otherwise leave state untouched."""
        if target == CreationStage.FAILED:
            # Failures must carry their error
            return False
        if not can_transition(self.state, target):
            logger.warning("Rejected transition %s -> %s", self.state.value, target.value)
            return False
        if self.state == CreationStage.IDLE and target == CreationStage.VALIDATING:
            self.attempt_count += 1
        self._enter(target)
        return True

    def fail(self, error: ClassifiedError) -> bool:
        if not can_transition(self.state, CreationStage.FAILED):
            logger.warning(
                "Cannot fail from terminal state %s (%s)", self.state.value, error.kind.value,
            )
            return False
        self.error = error
        self._enter(CreationStage.FAILED)
        return True

    def retry(self) -> bool:
        """Return to IDLE after a retryable failure.

        A no-op returning False unless the machine is FAILED with a
        retryable error.
        """
        if self.state != CreationStage.FAILED or self.error is None or not self.error.retryable:
            return False
        self.error = None
        self._enter(CreationStage.IDLE)
        return True

    def reset(self) -> None:
        self.state = CreationStage.IDLE
        self.error = None
        self.attempt_count = 0
        self.history = [CreationStage.IDLE]
        self.stage_entered_at = [(CreationStage.IDLE, _utcnow())]

    def _enter(self, stage: CreationStage) -> None:
        logger.debug("Creation stage %s -> %s", self.state.value, stage.value)
        self.state = stage
        self.history.append(stage)
        self.stage_entered_at.append((stage, _utcnow()))

    # -- diagnostics -----------------------------------------------------------

    @property
    def progress(self) -> float:
        return self.state.progress

    @property
    def is_active(self) -> bool:
        return self.state not in (
            CreationStage.IDLE, CreationStage.COMPLETED, CreationStage.FAILED,
        )

    @property
    def is_cancellable(self) -> bool:
        # Nothing to undo once the local commit is done
        return self.state in (CreationStage.VALIDATING, CreationStage.GENERATING_CODE)

    @property
    def allows_retry(self) -> bool:
        return (
            self.state == CreationStage.FAILED
            and self.error is not None
            and self.error.retryable
        )

    @property
    def next_stage(self) -> CreationStage | None:
        return _NEXT_STAGE.get(self.state)

    @property
    def status_message(self) -> str:
        if self.state == CreationStage.FAILED and self.error is not None:
            return self.error.user_message
        return self.state.status_text

    @property
    def technical_description(self) -> str:
        parts = [
            f"state={self.state.value}",
            f"attempt={self.attempt_count}",
            "history=" + ">".join(stage.value for stage in self.history),
        ]
        if self.error is not None:
            parts.append(f"error={self.error.kind.value}: {self.error.technical_description}")
        return " ".join(parts)

    def stage_durations(self) -> list[tuple[CreationStage, float]]:
        """Seconds spent in each visited stage, current stage excluded."""
        return [
            (stage, (later - entered).total_seconds())
            for (stage, entered), (_, later) in zip(self.stage_entered_at, self.stage_entered_at[1:])
        ]
