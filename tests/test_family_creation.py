"""End-to-end tests for create / join / membership-change attempts."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from famsync.errors import (
    AuthenticationRequired,
    CodeCollision,
    CodeGenerationFailed,
    CodeGenerationFailure,
    IllegalTransition,
    NetworkUnavailable,
)
from famsync.models.membership import MembershipStatus, Role
from famsync.services.code_generator import CodeGenerator
from famsync.services.creation_state import CreationStage, CreationStateMachine
from famsync.services.error_classifier import (
    ErrorCategory,
    ErrorKind,
    InterventionKind,
    UserIntervention,
    classify,
)
from famsync.services.family_creation import FamilyCreationService
from famsync.services.identity import Identity, SessionIdentityProvider, hash_subject
from famsync.services.sync_coordinator import SyncCoordinator


class TestCreateFamily:
    async def test_happy_path(self, service, data, remote):
        result = await service.create_family("Smith Family")

        assert result.succeeded
        assert result.sync_pending is False
        assert result.message == "Family created."
        assert result.machine.history == [
            CreationStage.IDLE,
            CreationStage.VALIDATING,
            CreationStage.GENERATING_CODE,
            CreationStage.CREATING_LOCALLY,
            CreationStage.SYNCING_REMOTE,
            CreationStage.COMPLETED,
        ]
        assert result.machine.progress == 1.0

        family = await data.fetch_family(result.family.id)
        assert family.name == "Smith Family"
        assert CodeGenerator.is_valid_format(family.code)
        assert family.needs_sync is False
        assert result.membership.role == Role.PARENT_ADMIN
        assert set(remote.saved) == {family.id, result.membership.id, result.membership.user_id}

    async def test_creator_profile_uses_identity_hash(self, service, data):
        result = await service.create_family("Smith Family")
        profile = await data.fetch_user_profile(result.membership.user_id)
        assert profile.identity_hash == hash_subject("auth0|smith-parent")
        assert profile.display_name == "Pat Smith"
        assert "auth0|smith-parent" not in profile.identity_hash

    async def test_remote_offline_completes_locally(self, service, data, remote):
        remote.offline = True

        result = await service.create_family("Smith Family")

        assert result.state == CreationStage.COMPLETED
        assert result.error is None
        assert result.sync_pending is True
        assert result.message == "Family saved locally and will sync later."
        family = await data.fetch_family(result.family.id)
        assert family.needs_sync is True
        assert family.remote_record_id is None

    async def test_not_signed_in(self, service, data, identity_provider):
        identity_provider.sign_out()

        result = await service.create_family("Smith Family")

        assert result.state == CreationStage.FAILED
        assert result.error.category == ErrorCategory.AUTHENTICATION
        assert result.error.strategy == UserIntervention(InterventionKind.SIGN_IN)
        assert result.message == "Please sign in to continue."
        assert await data.fetch_all_families() == []

    async def test_empty_name(self, service, data, sleeps):
        result = await service.create_family("   ")

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert "Family name cannot be empty" in result.message
        assert result.machine.history[-2] == CreationStage.VALIDATING
        assert sleeps.calls == []
        assert await data.fetch_all_families() == []

    async def test_code_collision_at_commit_is_retried(self, service, data, sleeps):
        original = data.create_family_with_admin
        codes = []

        async def racing_commit(name, code, creator):
            codes.append(code)
            if len(codes) == 1:
                raise CodeCollision(code)
            return await original(name, code, creator)

        data.create_family_with_admin = racing_commit

        result = await service.create_family("Smith Family")

        assert result.succeeded
        assert result.machine.attempt_count == 2
        assert sleeps.calls == [1.0]
        assert len(await data.fetch_all_families()) == 1

    async def test_code_taken_on_another_device_is_skipped(self, service, remote):
        remote.codes.add("TAKEN1")
        candidates = iter(["TAKEN1", "FREE12"])
        service.code_generator.generate = lambda: next(candidates)

        result = await service.create_family("Smith Family")

        assert result.succeeded
        assert result.family.code == "FREE12"
        assert remote.code_checks == ["TAKEN1", "FREE12"]

    async def test_exhausted_codes_fail_without_retry(self, service, data, sleeps):
        service.code_generator.generate_unique = AsyncMock(
            side_effect=CodeGenerationFailed(CodeGenerationFailure.MAX_ATTEMPTS_EXCEEDED),
        )

        result = await service.create_family("Smith Family")

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.MAX_CODE_ATTEMPTS_EXCEEDED
        assert result.machine.allows_retry is False
        assert sleeps.calls == []
        assert await data.fetch_all_families() == []

    async def test_auto_retries_are_bounded(self, service, data, sleeps):
        service.code_generator.generate_unique = AsyncMock(
            side_effect=CodeGenerationFailed(
                CodeGenerationFailure.UNIQUENESS_CHECK_FAILED, cause=NetworkUnavailable(),
            ),
        )

        result = await service.create_family("Smith Family")

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.UNIQUENESS_CHECK_FAILED
        assert service.code_generator.generate_unique.await_count == 4
        assert sleeps.calls == [2.0, 4.0, 8.0]
        assert result.machine.attempt_count == 4

    async def test_caller_machine_is_queryable_while_suspended(self, service):
        machine = CreationStateMachine()
        gate = asyncio.Event()
        seen = []

        async def slow_check(code):
            seen.append(machine.state)
            await gate.wait()
            return True

        generator = CodeGenerator()
        service.code_generator.generate_unique = lambda check: generator.generate_unique(slow_check)
        task = asyncio.create_task(service.create_family("Smith Family", machine=machine))
        while not seen:
            await asyncio.sleep(0)
        assert machine.state == CreationStage.GENERATING_CODE
        assert machine.progress == 0.4
        gate.set()
        result = await task
        assert result.succeeded and result.machine is machine

    async def test_cancellation_before_commit(self, service, data):
        machine = CreationStateMachine()
        started = asyncio.Event()

        async def hanging(check):
            started.set()
            await asyncio.sleep(10)

        service.code_generator.generate_unique = hanging
        task = asyncio.create_task(service.create_family("Smith Family", machine=machine))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert machine.state == CreationStage.FAILED
        assert machine.error.kind == ErrorKind.OPERATION_CANCELLED
        assert await data.fetch_all_families() == []

    async def test_failed_machine_starts_over(self, service, data):
        machine = CreationStateMachine()
        machine.transition(CreationStage.VALIDATING)
        machine.fail(classify(AuthenticationRequired()))

        result = await service.create_family("Smith Family", machine=machine)

        assert result.succeeded
        assert machine.history == [
            CreationStage.IDLE,
            CreationStage.VALIDATING,
            CreationStage.GENERATING_CODE,
            CreationStage.CREATING_LOCALLY,
            CreationStage.SYNCING_REMOTE,
            CreationStage.COMPLETED,
        ]
        assert len(await data.fetch_all_families()) == 1

    async def test_machine_mid_attempt_is_refused(self, service, data):
        machine = CreationStateMachine()
        machine.transition(CreationStage.VALIDATING)

        with pytest.raises(IllegalTransition):
            await service.create_family("Smith Family", machine=machine)
        assert machine.state == CreationStage.VALIDATING
        assert await data.fetch_all_families() == []

    async def test_rejected_stage_stops_before_commit(self, service, data, remote):
        class StuckMachine(CreationStateMachine):
            def transition(self, target):
                if target == CreationStage.CREATING_LOCALLY:
                    return False
                return super().transition(target)

        result = await service.create_family("Smith Family", machine=StuckMachine())

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.UNKNOWN
        assert await data.fetch_all_families() == []
        assert remote.save_calls == 0


class TestJoinFamily:
    async def _family(self, service):
        return (await service.create_family("Smith Family")).family

    async def test_join_by_code_case_insensitive(self, service, data, identity_provider):
        family = await self._family(service)
        identity_provider.sign_in("auth0|kid", "Alex")

        result = await service.join_family(family.code.lower(), Role.KID)

        assert result.succeeded
        assert result.membership.role == Role.KID
        assert result.membership.status == MembershipStatus.ACTIVE
        assert result.family.id == family.id
        assert await data.get_active_member_count(family.id) == 2

    async def test_join_twice(self, service, identity_provider):
        family = await self._family(service)
        identity_provider.sign_in("auth0|kid", "Alex")
        await service.join_family(family.code, Role.KID)

        result = await service.join_family(family.code, Role.ADULT)

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.CONSTRAINT_VIOLATION
        assert result.message == "User is already a member of this family"

    async def test_join_as_second_parent_admin(self, service, data, identity_provider):
        family = await self._family(service)
        identity_provider.sign_in("auth0|other-parent", "Sam")

        result = await service.join_family(family.code, Role.PARENT_ADMIN)

        assert result.error.kind == ErrorKind.CONSTRAINT_VIOLATION
        admins = [m for m in await data.fetch_active_memberships(family.id) if m.is_parent_admin]
        assert len(admins) == 1

    async def test_unknown_code(self, service):
        result = await service.join_family("ZZZZ99")
        assert result.error.kind == ErrorKind.NOT_FOUND

    async def test_malformed_code(self, service):
        result = await service.join_family("no!")
        assert result.error.kind == ErrorKind.VALIDATION_FAILED

    async def test_code_is_validated_before_uppercasing(self, service):
        result = await service.join_family("ABCDE\u00df")
        assert result.error.kind == ErrorKind.VALIDATION_FAILED

    async def test_join_with_remote_offline(self, service, remote, identity_provider):
        family = await self._family(service)
        remote.offline = True
        identity_provider.sign_in("auth0|kid", "Alex")

        result = await service.join_family(family.code, Role.KID)

        assert result.succeeded
        assert result.sync_pending
        assert result.message == "Membership saved locally and will sync later."


class TestUpdateRole:
    async def _family_with_adult(self, service, identity_provider):
        created = await service.create_family("Smith Family")
        identity_provider.sign_in("auth0|adult", "Jo")
        joined = await service.join_family(created.family.code, Role.ADULT)
        identity_provider.sign_in("auth0|smith-parent", "Pat Smith")
        return created.membership, joined.membership

    async def test_admin_changes_role(self, service, identity_provider):
        _, adult = await self._family_with_adult(service, identity_provider)

        result = await service.update_role(adult.id, Role.KID)

        assert result.succeeded
        assert result.membership.role == Role.KID
        assert result.membership.last_role_change_at is not None
        assert result.machine.history[2] == CreationStage.GENERATING_CODE

    async def test_second_parent_admin_rejected(self, service, data, identity_provider):
        admin, adult = await self._family_with_adult(service, identity_provider)

        result = await service.update_role(adult.id, Role.PARENT_ADMIN)

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.CONSTRAINT_VIOLATION
        assert result.error.retryable is False
        assert (await data.fetch_membership(adult.id)).role == Role.ADULT

    async def test_handover(self, service, data, identity_provider):
        admin, adult = await self._family_with_adult(service, identity_provider)

        assert (await service.update_role(admin.id, Role.ADULT)).succeeded
        assert (await service.update_role(adult.id, Role.PARENT_ADMIN)).succeeded
        admins = [m for m in await data.fetch_active_memberships(admin.family_id) if m.is_parent_admin]
        assert [m.id for m in admins] == [adult.id]

    async def test_non_admin_may_not_change_roles(self, service, identity_provider):
        admin, _ = await self._family_with_adult(service, identity_provider)
        identity_provider.sign_in("auth0|adult", "Jo")

        result = await service.update_role(admin.id, Role.ADULT)

        assert result.error.kind == ErrorKind.INSUFFICIENT_PERMISSIONS

    async def test_same_role(self, service, identity_provider):
        _, adult = await self._family_with_adult(service, identity_provider)
        result = await service.update_role(adult.id, Role.ADULT)
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert result.message == "Member already has this role"


class TestRemoveAndReactivate:
    async def _family_with_adult(self, service, identity_provider):
        created = await service.create_family("Smith Family")
        identity_provider.sign_in("auth0|adult", "Jo")
        joined = await service.join_family(created.family.code, Role.ADULT)
        identity_provider.sign_in("auth0|smith-parent", "Pat Smith")
        return created.membership, joined.membership

    async def test_admin_removes_and_reactivates(self, service, data, remote, identity_provider):
        _, adult = await self._family_with_adult(service, identity_provider)

        removed = await service.remove_member(adult.id)
        assert removed.succeeded
        assert removed.membership.status == MembershipStatus.REMOVED
        assert (await data.fetch_membership(adult.id)).status == MembershipStatus.REMOVED
        assert remote.saved[adult.id].fields["status"] == "removed"

        reactivated = await service.reactivate_member(adult.id)
        assert reactivated.succeeded
        assert reactivated.message == "Member reactivated."
        assert (await data.fetch_membership(adult.id)).status == MembershipStatus.ACTIVE

    async def test_reactivation_rechecks_membership(self, service, identity_provider):
        _, adult = await self._family_with_adult(service, identity_provider)
        assert (await service.remove_member(adult.id)).succeeded
        identity_provider.sign_in("auth0|adult", "Jo")
        family_code = (await service.data.fetch_family(adult.family_id)).code
        assert (await service.join_family(family_code, Role.ADULT)).succeeded
        identity_provider.sign_in("auth0|smith-parent", "Pat Smith")

        result = await service.reactivate_member(adult.id)

        assert result.state == CreationStage.FAILED
        assert result.error.kind == ErrorKind.CONSTRAINT_VIOLATION
        assert result.message == "User is already a member of this family"

    async def test_non_admin_may_not_remove(self, service, identity_provider):
        admin, _ = await self._family_with_adult(service, identity_provider)
        identity_provider.sign_in("auth0|adult", "Jo")

        result = await service.remove_member(admin.id)

        assert result.error.kind == ErrorKind.INSUFFICIENT_PERMISSIONS

    async def test_unknown_membership(self, service, identity_provider):
        await self._family_with_adult(service, identity_provider)
        result = await service.reactivate_member(uuid.uuid4())
        assert result.error.kind == ErrorKind.NOT_FOUND


class TestLocalOnly:
    async def test_no_remote_backend(self, local_data, classifier, sleeps):
        service = FamilyCreationService(
            data=local_data,
            code_generator=CodeGenerator(),
            sync=SyncCoordinator(local_data, None, classifier),
            classifier=classifier,
            identity_provider=SessionIdentityProvider(Identity("auth0|solo")),
            sleep=sleeps,
        )

        result = await service.create_family("Solo")

        assert result.succeeded
        assert result.sync_pending
        profile = await local_data.fetch_user_profile(result.membership.user_id)
        assert profile.display_name == "Family Member"
