"""Orchestration of create-family, join-family and membership-change attempts.

Each attempt runs through a :class:`CreationStateMachine`:

    validating -> generating_code -> creating_locally -> syncing_remote -> completed

Failures before the local commit fail the attempt (with automatic re-runs
where the classifier prescribes them).  Failures while mirroring never do:
the attempt completes and its records stay marked as needing sync.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from famsync.config import settings
from famsync.errors import (
    AuthenticationRequired,
    IllegalTransition,
    InsufficientPermissions,
    NotFound,
    ValidationFailed,
)
from famsync.models.family import Family
from famsync.models.membership import Membership, Role
from famsync.models.user import UserProfile
from famsync.services.code_generator import CodeGenerator
from famsync.services.creation_state import CreationStage, CreationStateMachine
from famsync.services.data_service import DataService
from famsync.services.error_classifier import (
    AutomaticRetry,
    ClassifiedError,
    ErrorClassifier,
    classify,
)
from famsync.services.identity import IdentityProvider
from famsync.services.sync_coordinator import Sleep, SyncCoordinator
from famsync.services.validation import normalize_family_code, validate_family_code, validate_family_name

logger = logging.getLogger(__name__)


def _advance(machine: CreationStateMachine, stage: CreationStage) -> None:
    if not machine.transition(stage):
        raise IllegalTransition(machine.state.value, stage.value)


@dataclass
class CreationResult:
    machine: CreationStateMachine
    message: str
    family: Family | None = None
    membership: Membership | None = None
    sync_pending: bool = False

    @property
    def succeeded(self) -> bool:
        return self.machine.state == CreationStage.COMPLETED

    @property
    def state(self) -> CreationStage:
        return self.machine.state

    @property
    def error(self) -> ClassifiedError | None:
        return self.machine.error


@dataclass
class _Committed:
    family: Family | None
    membership: Membership | None
    records: list[Family | UserProfile | Membership] = field(default_factory=list)


@dataclass(frozen=True)
class _Attempt:
    """The three stage bodies of one kind of attempt."""

    subject: str
    done_message: str
    validate: Callable[[], Awaitable[Any]]
    prepare: Callable[[Any], Awaitable[Any]]
    commit: Callable[[Any], Awaitable[_Committed]]


class FamilyCreationService:
    def __init__(
        self,
        data: DataService,
        code_generator: CodeGenerator,
        sync: SyncCoordinator,
        classifier: ErrorClassifier,
        identity_provider: IdentityProvider,
        max_auto_retries: int = settings.CREATION_MAX_AUTO_RETRIES,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.data = data
        self.code_generator = code_generator
        self.sync = sync
        self.classifier = classifier
        self.identity_provider = identity_provider
        self.max_auto_retries = max_auto_retries
        self._sleep = sleep

    async def current_user(self) -> UserProfile:
        """The signed-in user's profile, created on first use.

        Raises:
            AuthenticationRequired: nobody is signed in.
        """
        identity = self.identity_provider.current_identity()
        if identity is None:
            raise AuthenticationRequired()
        return await self.data.get_or_create_user_profile(
            identity.name_or_default, identity.identity_hash,
        )

    # -- create ------------------------------------------------------------------

    async def create_family(
        self, name: str, machine: CreationStateMachine | None = None,
    ) -> CreationResult:
        """Create a family with a fresh join code and make the caller its parent admin."""

        async def validate() -> tuple[UserProfile, str]:
            user = await self.current_user()
            errors = validate_family_name(name)
            if errors:
                raise ValidationFailed(errors)
            return user, name.strip()

        async def prepare(ctx: tuple[UserProfile, str]) -> tuple[UserProfile, str, str]:
            user, family_name = ctx
            code = await self.code_generator.generate_unique(self.data.is_code_available)
            return user, family_name, code

        async def commit(ctx: tuple[UserProfile, str, str]) -> _Committed:
            user, family_name, code = ctx
            family, membership = await self.data.create_family_with_admin(family_name, code, user)
            return _Committed(family, membership, [family, user, membership])

        attempt = _Attempt("Family", "Family created.", validate, prepare, commit)
        return await self._run(attempt, machine or CreationStateMachine())

    # -- join --------------------------------------------------------------------

    async def join_family(
        self, code: str, role: Role = Role.ADULT, machine: CreationStateMachine | None = None,
    ) -> CreationResult:
        """Join the family identified by *code* (case-insensitive)."""

        async def validate() -> tuple[UserProfile, str]:
            user = await self.current_user()
            errors = validate_family_code(code.strip())
            if errors:
                raise ValidationFailed(errors)
            return user, normalize_family_code(code)

        async def prepare(ctx: tuple[UserProfile, str]) -> tuple[UserProfile, Family]:
            user, normalized = ctx
            family = await self.data.fetch_family_by_code(normalized)
            if family is None:
                raise NotFound(f"family with code {normalized}")
            return user, family

        async def commit(ctx: tuple[UserProfile, Family]) -> _Committed:
            user, family = ctx
            membership = await self.data.create_membership(family, user, role)
            return _Committed(family, membership, [user, membership])

        attempt = _Attempt("Membership", "Joined family.", validate, prepare, commit)
        return await self._run(attempt, machine or CreationStateMachine())

    # -- membership changes ------------------------------------------------------

    async def update_role(
        self,
        membership_id: uuid.UUID,
        new_role: Role,
        machine: CreationStateMachine | None = None,
    ) -> CreationResult:
        """Change a member's role.

        The caller must be the family's active parent admin, or any active
        member while the family has none.
        """

        async def validate() -> Membership:
            actor = await self.current_user()
            membership = await self.data.fetch_membership(membership_id)
            if membership is None:
                raise NotFound(f"membership {membership_id}")
            await self._authorize_role_change(actor, membership)
            return membership

        async def prepare(membership: Membership) -> Membership:
            return membership

        async def commit(membership: Membership) -> _Committed:
            updated = await self.data.update_membership_role(membership, new_role)
            family = await self.data.fetch_family(updated.family_id)
            return _Committed(family, updated, [updated])

        attempt = _Attempt("Role change", "Role updated.", validate, prepare, commit)
        return await self._run(attempt, machine or CreationStateMachine())

    async def remove_member(
        self, membership_id: uuid.UUID, machine: CreationStateMachine | None = None,
    ) -> CreationResult:
        """Soft-remove a member; the membership row is kept."""
        return await self._run(
            self._status_attempt(
                membership_id, "Member removal", "Member removed.",
                "remove members", self.data.remove_membership,
            ),
            machine or CreationStateMachine(),
        )

    async def reactivate_member(
        self, membership_id: uuid.UUID, machine: CreationStateMachine | None = None,
    ) -> CreationResult:
        """Return a removed member to the family under the usual invariants."""
        return await self._run(
            self._status_attempt(
                membership_id, "Member reactivation", "Member reactivated.",
                "reactivate members", self.data.reactivate_membership,
            ),
            machine or CreationStateMachine(),
        )

    def _status_attempt(
        self,
        membership_id: uuid.UUID,
        operation: str,
        success_message: str,
        action: str,
        change: Callable[[Membership], Awaitable[Membership]],
    ) -> _Attempt:
        async def validate() -> Membership:
            actor = await self.current_user()
            membership = await self.data.fetch_membership(membership_id)
            if membership is None:
                raise NotFound(f"membership {membership_id}")
            await self._authorize_role_change(actor, membership, action)
            return membership

        async def prepare(membership: Membership) -> Membership:
            return membership

        async def commit(membership: Membership) -> _Committed:
            updated = await change(membership)
            family = await self.data.fetch_family(updated.family_id)
            return _Committed(family, updated, [updated])

        return _Attempt(operation, success_message, validate, prepare, commit)

    async def _authorize_role_change(
        self, actor: UserProfile, membership: Membership, action: str = "change roles",
    ) -> None:
        active = await self.data.fetch_active_memberships(membership.family_id)
        actor_membership = next((m for m in active if m.user_id == actor.id), None)
        if actor_membership is None:
            raise InsufficientPermissions("Not a member of this family")
        has_admin = any(m.is_parent_admin for m in active)
        if has_admin and not actor_membership.is_parent_admin:
            raise InsufficientPermissions(f"Only the Parent Admin can {action}")

    # -- runner ------------------------------------------------------------------

    async def _run(self, attempt: _Attempt, machine: CreationStateMachine) -> CreationResult:
        """Drive *attempt* through *machine*.

        A machine left finished by an earlier attempt starts over; one that is
        still mid-attempt is refused with :class:`IllegalTransition`.
        """
        if machine.is_active:
            raise IllegalTransition(machine.state.value, CreationStage.VALIDATING.value)
        if machine.state != CreationStage.IDLE and not machine.retry():
            machine.reset()

        retry_count = 0
        while True:
            try:
                _advance(machine, CreationStage.VALIDATING)
                ctx = await attempt.validate()
                _advance(machine, CreationStage.GENERATING_CODE)
                ctx = await attempt.prepare(ctx)
                _advance(machine, CreationStage.CREATING_LOCALLY)
                committed = await attempt.commit(ctx)
                break
            except asyncio.CancelledError as exc:
                machine.fail(classify(exc))
                logger.info("%s attempt cancelled before local commit", attempt.subject)
                raise
            except Exception as exc:
                error = self.classifier.classify(exc)
                self.classifier.report(error, retry_count=retry_count)
                machine.fail(error)
                delay = self._auto_retry_delay(error, retry_count)
                if delay is None or not machine.retry():
                    return CreationResult(machine=machine, message=error.user_message)
                retry_count += 1
                logger.info(
                    "Re-running %s attempt in %.1fs after %s (retry %d)",
                    attempt.subject.lower(), delay, error.kind.value, retry_count,
                )
                await self._sleep(delay)

        _advance(machine, CreationStage.SYNCING_REMOTE)
        pending = await self._mirror_all(committed.records, machine)
        _advance(machine, CreationStage.COMPLETED)

        message = attempt.done_message
        if pending:
            message = f"{attempt.subject} saved locally and will sync later."
        return CreationResult(
            machine=machine,
            message=message,
            family=committed.family,
            membership=committed.membership,
            sync_pending=pending,
        )

    def _auto_retry_delay(self, error: ClassifiedError, retry_count: int) -> float | None:
        if not isinstance(error.strategy, AutomaticRetry) or retry_count >= self.max_auto_retries:
            return None
        action = self.classifier.recovery_action(error, retry_count)
        return action.delay if action.retry_permitted else None

    async def _mirror_all(
        self, records: list[Family | UserProfile | Membership], machine: CreationStateMachine,
    ) -> bool:
        """Mirror committed records; True if any is still pending."""
        pending = False
        for record in records:
            if not record.needs_sync:
                continue
            try:
                outcome = await self.sync.mirror(record)
            except asyncio.CancelledError as exc:
                machine.fail(classify(exc))
                logger.info("Cancelled during sync; %s %s stays pending", type(record).__name__, record.id)
                raise
            except Exception:
                # Local commit stands; the backlog pass picks the record up
                logger.exception("Mirror of %s %s raised", type(record).__name__, record.id)
                pending = True
                continue
            pending = pending or outcome.pending
        return pending
