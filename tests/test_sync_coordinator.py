"""Tests for remote mirroring and the needs-sync backlog."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from famsync.errors import CloudSyncFailed, CloudUnavailable, NetworkUnavailable, ServerError
from famsync.models.membership import Role
from famsync.services.error_classifier import ErrorKind
from famsync.services.sync_coordinator import SyncCoordinator


class TestMirror:
    async def test_success_clears_needs_sync(self, data, sync, remote, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)

        outcome = await sync.mirror(family)

        assert outcome.synced is True
        assert remote.saved[family.id].record_type == "family"
        assert remote.saved[family.id].fields["code"] == "ABC123"
        assert "needs_sync" not in remote.saved[family.id].fields
        stored = await data.fetch_family(family.id)
        assert stored.needs_sync is False
        assert stored.remote_record_id == f"remote-family-{family.id}"
        assert sync.last_sync_at is not None

    async def test_transient_failure_is_retried_with_backoff(self, data, sync, remote, sleeps, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)
        remote.failures = [NetworkUnavailable(), ServerError(503)]

        outcome = await sync.mirror(family)

        assert outcome.synced is True
        assert remote.save_calls == 3
        assert sleeps.calls[0] == 2.0
        assert sleeps.calls[1] >= 4.0

    async def test_persistent_failure_keeps_needs_sync(self, data, sync, remote, sleeps, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)
        remote.offline = True

        outcome = await sync.mirror(family)

        assert outcome.synced is False
        assert outcome.error.kind == ErrorKind.NETWORK_UNAVAILABLE
        assert remote.save_calls == 1 + 3
        assert (await data.fetch_family(family.id)).needs_sync is True

    async def test_fallback_errors_are_not_retried(self, data, sync, remote, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)
        remote.failures = [CloudSyncFailed("HTTP 400")]

        outcome = await sync.mirror(family)

        assert outcome.pending
        assert outcome.error.kind == ErrorKind.CLOUD_SYNC_FAILED
        assert remote.save_calls == 1

    async def test_rate_limited_save_is_retried(self, data, sync, remote, sleeps, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)
        remote.failures = [CloudUnavailable(429)]

        outcome = await sync.mirror(family)

        assert outcome.synced is True
        assert remote.save_calls == 2
        assert sleeps.calls == [2.0]

    async def test_change_during_mirror_stays_pending(self, data, sync, remote, make_user):
        parent = await make_user("Parent")
        kid = await make_user("Kid")
        family, _ = await data.create_family_with_admin("Smith", "ABC123", parent)
        membership = await data.create_membership(family, kid, Role.KID)
        save = remote.save

        async def save_then_promote(record):
            remote_id = await save(record)
            if record.id == membership.id and record.fields["role"] == "kid":
                await data.update_membership_role(membership, Role.ADULT)
            return remote_id

        remote.save = save_then_promote
        outcome = await sync.mirror(membership)

        assert outcome.synced is False
        assert remote.saved[membership.id].fields["role"] == "kid"
        stored = await data.fetch_membership(membership.id)
        assert stored.role == Role.ADULT
        assert stored.needs_sync is True
        assert stored.remote_record_id == f"remote-membership-{membership.id}"

        # The backlog pass sends the newer role and only then clears the flag
        report = await sync.sync_pending()
        assert report.failed == 0
        assert remote.saved[membership.id].fields["role"] == "adult"
        assert (await data.fetch_membership(membership.id)).needs_sync is False

    async def test_local_only_mode(self, local_data, classifier):
        sync = SyncCoordinator(local_data, None, classifier)
        user = await local_data.create_user_profile("Pat", "p" * 64)
        outcome = await sync.mirror(user)
        assert outcome.synced is False
        assert outcome.error is None
        assert (await sync.sync_pending()).attempted == 0

    async def test_cancellation_propagates(self, data, classifier, make_user):
        user = await make_user()
        family = await data.create_family("Smith", "ABC123", user.id)
        remote = AsyncMock()
        remote.save.side_effect = asyncio.CancelledError()
        sync = SyncCoordinator(data, remote, classifier)

        with pytest.raises(asyncio.CancelledError):
            await sync.mirror(family)
        assert (await data.fetch_family(family.id)).needs_sync is True


class TestBacklog:
    async def test_sync_pending_drains_in_order(self, data, sync, remote, make_user):
        user = await make_user()
        family, membership = await data.create_family_with_admin("Smith", "ABC123", user)
        order = []
        original_save = remote.save

        async def recording_save(record):
            order.append(record.record_type)
            return await original_save(record)

        remote.save = recording_save

        report = await sync.sync_pending()

        assert (report.attempted, report.synced, report.failed) == (3, 3, 0)
        assert order == ["family", "user_profile", "membership"]
        assert await sync.pending_count() == 0
        assert not sync.is_syncing

    async def test_failed_records_stay_in_backlog(self, data, sync, remote, make_user):
        user = await make_user()
        await data.create_family_with_admin("Smith", "ABC123", user)
        remote.offline = True

        report = await sync.sync_pending()
        assert (report.attempted, report.synced, report.failed) == (3, 0, 3)
        assert await sync.pending_count() == 3

        remote.offline = False
        report = await sync.sync_pending()
        assert report.synced == 3
        assert await sync.pending_count() == 0

    async def test_run_periodic_survives_errors(self, data, remote, classifier):
        calls = []

        async def fake_sleep(delay):
            calls.append(delay)
            if len(calls) > 2:
                raise asyncio.CancelledError()

        sync = SyncCoordinator(data, remote, classifier, sleep=fake_sleep)
        sync.sync_pending = AsyncMock(side_effect=[RuntimeError("db locked"), None])

        with pytest.raises(asyncio.CancelledError):
            await sync.run_periodic(interval=30)
        assert calls == [30, 30, 30]
        assert sync.sync_pending.await_count == 2
