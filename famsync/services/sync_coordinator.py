"""Best-effort mirroring of local commits to the remote backend.

A failed mirror never undoes the local commit: the record keeps
``needs_sync`` and is picked up again by :meth:`SyncCoordinator.sync_pending`,
which runs on a timer and on explicit request.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from famsync.config import settings
from famsync.models.family import Family
from famsync.models.membership import Membership
from famsync.models.user import UserProfile
from famsync.services.data_service import DataService
from famsync.services.error_classifier import (
    AutomaticRetry,
    ClassifiedError,
    ErrorClassifier,
)
from famsync.services.remote_backend import RemoteBackend, to_remote_record

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Parents before the memberships that reference them
SYNC_ORDER = (Family, UserProfile, Membership)


@dataclass(frozen=True)
class SyncOutcome:
    synced: bool
    error: ClassifiedError | None = None

    @property
    def pending(self) -> bool:
        return not self.synced


@dataclass(frozen=True)
class SyncReport:
    attempted: int = 0
    synced: int = 0
    failed: int = 0


class SyncCoordinator:
    def __init__(
        self,
        data: DataService,
        remote: RemoteBackend | None,
        classifier: ErrorClassifier,
        max_attempts: int = settings.SYNC_MAX_ATTEMPTS,
        base_delay: float = settings.SYNC_BASE_DELAY_SECONDS,
        batch_size: int = settings.SYNC_BATCH_SIZE,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.data = data
        self.remote = remote
        self.classifier = classifier
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.batch_size = batch_size
        self._sleep = sleep
        self._drain_lock = asyncio.Lock()
        self.last_sync_at: datetime | None = None

    @property
    def is_syncing(self) -> bool:
        return self._drain_lock.locked()

    async def pending_count(self) -> int:
        return await self.data.count_records_needing_sync()

    async def mirror(self, record: Family | UserProfile | Membership) -> SyncOutcome:
        """Mirror one committed record.

        Retryable failures are retried up to ``max_attempts`` times with
        exponential backoff.  The record keeps ``needs_sync`` on any failure.
        """
        if self.remote is None:
            logger.debug(
                "No remote backend configured; %s %s stays local", type(record).__name__, record.id,
            )
            return SyncOutcome(synced=False)

        payload = to_remote_record(record)
        version = record.sync_version
        retry_count = 0
        while True:
            try:
                remote_id = await self.remote.save(payload)
            except Exception as exc:
                error = self.classifier.classify(exc)
                self.classifier.report(error, retry_count=retry_count)
                if not self._should_retry(error, retry_count):
                    logger.warning(
                        "Mirror of %s %s deferred: %s",
                        payload.record_type, record.id, error.technical_description,
                    )
                    return SyncOutcome(synced=False, error=error)
                delay = self._delay(error, retry_count)
                retry_count += 1
                logger.info(
                    "Retrying mirror of %s %s in %.1fs (attempt %d/%d)",
                    payload.record_type, record.id, delay, retry_count, self.max_attempts,
                )
                await self._sleep(delay)
                continue

            cleared = await self.data.mark_synced(record, remote_id, version)
            self.last_sync_at = record.last_sync_at
            logger.info("Mirrored %s %s as %s", payload.record_type, record.id, remote_id)
            return SyncOutcome(synced=cleared)

    def _should_retry(self, error: ClassifiedError, retry_count: int) -> bool:
        if retry_count >= self.max_attempts or not isinstance(error.strategy, AutomaticRetry):
            return False
        return self.classifier.recovery_action(error, retry_count).retry_permitted

    def _delay(self, error: ClassifiedError, retry_count: int) -> float:
        action = self.classifier.recovery_action(error, retry_count)
        return max(action.delay, self.base_delay * (2 ** retry_count))

    async def sync_pending(self) -> SyncReport:
        """Drain the needs-sync backlog once: families, then profiles, then memberships."""
        if self.remote is None:
            return SyncReport()

        attempted = synced = failed = 0
        async with self._drain_lock:
            for model in SYNC_ORDER:
                records = await self.data.fetch_records_needing_sync(model, limit=self.batch_size)
                for record in records:
                    attempted += 1
                    outcome = await self.mirror(record)
                    if outcome.synced:
                        synced += 1
                    else:
                        failed += 1
            self.last_sync_at = datetime.now(timezone.utc)

        if attempted:
            logger.info("Backlog sync: %d attempted, %d synced, %d failed", attempted, synced, failed)
        return SyncReport(attempted=attempted, synced=synced, failed=failed)

    async def run_periodic(self, interval: float = settings.SYNC_INTERVAL_SECONDS) -> None:
        """Drain the backlog every *interval* seconds until cancelled."""
        while True:
            await self._sleep(interval)
            try:
                await self.sync_pending()
            except Exception:
                logger.exception("Backlog sync error")
