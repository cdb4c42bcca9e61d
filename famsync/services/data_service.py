"""Constraint Data Layer.

The only writer of Family, UserProfile and Membership rows.  Every mutating
operation runs as one transaction: invariants are re-checked against the
rows currently committed, then the write is flushed, and either both succeed
or the transaction rolls back and nothing is visible to readers.

Two layers keep the membership invariants under concurrency:

* an ``asyncio.Lock`` serialises writers sharing this service instance;
* partial unique indexes on ``memberships`` reject a racing commit from any
  other writer, and the resulting ``IntegrityError`` is reported as a
  :class:`ConstraintViolation`.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from famsync.errors import (
    CodeCollision,
    ConstraintViolation,
    NotFound,
    RoleChangeRejected,
    ValidationFailed,
)
from famsync.models.family import Family
from famsync.models.membership import Membership, MembershipStatus, Role
from famsync.models.user import UserProfile
from famsync.services.remote_backend import RemoteBackend
from famsync.services.validation import (
    is_valid_family_code_format,
    normalize_family_code,
    validate_display_name,
    validate_family_code,
    validate_family_name,
    validate_identity_hash,
)

logger = logging.getLogger(__name__)

SyncableModel = TypeVar("SyncableModel", Family, UserProfile, Membership)

MSG_PARENT_ADMIN_EXISTS = "A Parent Admin already exists for this family"
MSG_ALREADY_MEMBER = "User is already a member of this family"
MSG_SAME_ROLE = "Member already has this role"
MSG_MEMBERSHIP_NOT_ACTIVE = "Only active memberships can change role"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _integrity_error(exc: IntegrityError) -> ConstraintViolation:
    """Name the invariant behind a store-level uniqueness failure."""
    detail = str(exc.orig).lower()
    if "families.code" in detail or "families_code" in detail:
        return CodeCollision()
    if "identity_hash" in detail:
        return ConstraintViolation("Identity hash already registered")
    if "active_user_family" in detail or "memberships.user_id" in detail:
        return ConstraintViolation(MSG_ALREADY_MEMBER)
    if "parent_admin" in detail or "memberships.family_id" in detail:
        return ConstraintViolation(MSG_PARENT_ADMIN_EXISTS)
    return ConstraintViolation("Write conflicts with existing data")


class DataService:
    """Invariant-enforcing access to the local store.

    Parameters
    ----------
    session_factory:
        Produces sessions bound to the embedded store.
    remote:
        Optional remote backend consulted for join codes and parent-admin
        memberships created on other devices.  Its failures never block a
        local write.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        remote: RemoteBackend | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._remote = remote
        self._write_lock = asyncio.Lock()

    # -- transaction helpers --------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one atomic, writer-serialised transaction."""
        async with self._write_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        yield session
            except IntegrityError as exc:
                error = _integrity_error(exc)
                logger.warning("Commit rejected by store constraint: %s", error.message)
                raise error from exc

    @asynccontextmanager
    async def _reader(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    # -- family operations ----------------------------------------------------

    async def create_family(self, name: str, code: str, created_by_user_id: uuid.UUID) -> Family:
        """Validate, check code uniqueness, then commit a new family.

        Raises:
            ValidationFailed: with every format violation found.
            ConstraintViolation: if the code is already used.
        """
        name, code = self._validated_family_fields(name, code)
        async with self._transaction() as session:
            family = await self._insert_family(session, name, code, created_by_user_id)
        logger.info("Created family %s with code %s", family.id, family.code)
        return family

    async def create_family_with_admin(
        self, name: str, code: str, creator: UserProfile,
    ) -> tuple[Family, Membership]:
        """Create a family and its creator's parent-admin membership atomically."""
        name, code = self._validated_family_fields(name, code)
        async with self._transaction() as session:
            family = await self._insert_family(session, name, code, creator.id)
            membership = await self._insert_membership(
                session, family.id, creator.id, Role.PARENT_ADMIN,
            )
        logger.info(
            "Created family %s with parent admin %s (membership %s)",
            family.id, creator.id, membership.id,
        )
        return family, membership

    def _validated_family_fields(self, name: str, code: str) -> tuple[str, str]:
        errors = validate_family_name(name) + validate_family_code(code.strip())
        if errors:
            raise ValidationFailed(errors)
        return name.strip(), normalize_family_code(code)

    async def _insert_family(
        self, session: AsyncSession, name: str, code: str, created_by_user_id: uuid.UUID,
    ) -> Family:
        existing = await session.execute(select(Family.id).where(Family.code == code))
        if existing.scalar_one_or_none() is not None:
            raise CodeCollision(code)

        family = Family(
            name=name,
            code=code,
            created_by_user_id=created_by_user_id,
            created_at=_utcnow(),
            needs_sync=True,
        )
        session.add(family)
        await session.flush()
        return family

    async def fetch_family(self, family_id: uuid.UUID) -> Family | None:
        async with self._reader() as session:
            return await session.get(Family, family_id)

    async def fetch_family_by_code(self, code: str) -> Family | None:
        async with self._reader() as session:
            result = await session.execute(
                select(Family).where(Family.code == normalize_family_code(code))
            )
            return result.scalar_one_or_none()

    async def fetch_all_families(self) -> list[Family]:
        async with self._reader() as session:
            result = await session.execute(select(Family).order_by(Family.created_at))
            return list(result.scalars().all())

    async def family_code_exists(self, code: str) -> bool:
        return await self.fetch_family_by_code(code) is not None

    async def is_code_available(self, code: str) -> bool:
        """Uniqueness check suitable for :meth:`CodeGenerator.generate_unique`.

        A code is available only if neither the local store nor the remote
        backend knows it.  If one of the two lookups fails, the other one
        decides; the check raises only when no lookup could answer.
        """
        code = normalize_family_code(code)
        local_error: Exception | None = None
        try:
            if await self.family_code_exists(code):
                return False
        except Exception as exc:
            logger.warning("Local code lookup for %s failed: %s", code, exc)
            local_error = exc

        if self._remote is None:
            if local_error is not None:
                raise local_error
            return True

        try:
            taken_remotely = await self._remote.family_code_exists(code)
        except Exception as exc:
            if local_error is not None:
                logger.error("Local and remote code lookups for %s both failed: %s", code, exc)
                raise local_error
            logger.warning("Remote code lookup for %s failed, using local result: %s", code, exc)
            return True
        if taken_remotely:
            logger.info("Code %s is taken on the remote backend", code)
        return not taken_remotely

    @staticmethod
    def is_valid_family_code_format(code: str) -> bool:
        return is_valid_family_code_format(code)

    # -- user profile operations ----------------------------------------------

    async def create_user_profile(self, display_name: str, identity_hash: str) -> UserProfile:
        """Validate then commit a new user profile.

        Raises:
            ValidationFailed: on format violations or an already-registered
                identity hash.
        """
        errors = validate_display_name(display_name) + validate_identity_hash(identity_hash)
        if errors:
            raise ValidationFailed(errors)

        async with self._transaction() as session:
            existing = await session.execute(
                select(UserProfile.id).where(UserProfile.identity_hash == identity_hash)
            )
            if existing.scalar_one_or_none() is not None:
                raise ValidationFailed(["Identity hash already registered"])

            profile = UserProfile(
                display_name=display_name.strip(),
                identity_hash=identity_hash,
                created_at=_utcnow(),
                needs_sync=True,
            )
            session.add(profile)
            await session.flush()
        logger.info("Created user profile %s", profile.id)
        return profile

    async def get_or_create_user_profile(self, display_name: str, identity_hash: str) -> UserProfile:
        profile = await self.fetch_user_profile_by_identity_hash(identity_hash)
        if profile is not None:
            return profile
        return await self.create_user_profile(display_name, identity_hash)

    async def fetch_user_profile(self, user_id: uuid.UUID) -> UserProfile | None:
        async with self._reader() as session:
            return await session.get(UserProfile, user_id)

    async def fetch_user_profile_by_identity_hash(self, identity_hash: str) -> UserProfile | None:
        async with self._reader() as session:
            result = await session.execute(
                select(UserProfile).where(UserProfile.identity_hash == identity_hash)
            )
            return result.scalar_one_or_none()

    # -- membership operations ------------------------------------------------

    async def create_membership(self, family: Family, user: UserProfile, role: Role) -> Membership:
        """Commit an active membership after re-checking both invariants.

        The checks run inside the write transaction against committed rows,
        never against a snapshot taken earlier by the caller.

        Raises:
            ConstraintViolation: naming the violated invariant.
        """
        foreign_admins = set()
        if role == Role.PARENT_ADMIN:
            foreign_admins = await self._remote_parent_admin_ids(family.id)

        async with self._transaction() as session:
            if role == Role.PARENT_ADMIN and await self._foreign_ids_unknown_locally(
                session, foreign_admins,
            ):
                raise ConstraintViolation(MSG_PARENT_ADMIN_EXISTS)
            membership = await self._insert_membership(session, family.id, user.id, role)
        logger.info(
            "User %s joined family %s as %s", user.id, family.id, role.value,
        )
        return membership

    async def _insert_membership(
        self, session: AsyncSession, family_id: uuid.UUID, user_id: uuid.UUID, role: Role,
    ) -> Membership:
        existing = await session.execute(
            select(Membership.id).where(
                Membership.family_id == family_id,
                Membership.user_id == user_id,
                Membership.status == MembershipStatus.ACTIVE,
            )
        )
        if existing.first() is not None:
            raise ConstraintViolation(MSG_ALREADY_MEMBER)

        if role == Role.PARENT_ADMIN and await self._active_parent_admin_id(session, family_id):
            raise ConstraintViolation(MSG_PARENT_ADMIN_EXISTS)

        membership = Membership(
            family_id=family_id,
            user_id=user_id,
            role=role,
            status=MembershipStatus.ACTIVE,
            joined_at=_utcnow(),
            needs_sync=True,
        )
        session.add(membership)
        await session.flush()
        return membership

    async def update_membership_role(self, membership: Membership, new_role: Role) -> Membership:
        """Change a membership's role, re-validating the parent-admin invariant.

        The membership being changed is excluded from the check.  On failure
        neither the stored row nor *membership* is modified.

        Raises:
            ValidationFailed: same role, inactive membership, or (as
                :class:`RoleChangeRejected`) another active parent admin.
            NotFound: the membership no longer exists.
        """
        foreign_admins = set()
        if new_role == Role.PARENT_ADMIN:
            foreign_admins = await self._remote_parent_admin_ids(membership.family_id)

        async with self._transaction() as session:
            current = await session.get(Membership, membership.id)
            if current is None:
                raise NotFound(f"membership {membership.id}")

            if current.status != MembershipStatus.ACTIVE:
                raise ValidationFailed([MSG_MEMBERSHIP_NOT_ACTIVE])
            if current.role == new_role:
                raise ValidationFailed([MSG_SAME_ROLE])

            if new_role == Role.PARENT_ADMIN:
                admin_id = await self._active_parent_admin_id(
                    session, current.family_id, exclude=current.id,
                )
                foreign_admins.discard(current.id)
                if admin_id is not None or await self._foreign_ids_unknown_locally(
                    session, foreign_admins,
                ):
                    raise RoleChangeRejected(MSG_PARENT_ADMIN_EXISTS)

            now = _utcnow()
            current.role = new_role
            current.last_role_change_at = now
            current.needs_sync = True
            current.sync_version += 1
            await session.flush()

        # Mirror the committed change onto the caller's instance
        membership.role = current.role
        membership.last_role_change_at = current.last_role_change_at
        membership.needs_sync = True
        membership.sync_version = current.sync_version
        logger.info("Membership %s role changed to %s", current.id, new_role.value)
        return current

    async def remove_membership(self, membership: Membership) -> Membership:
        """Soft-delete: flip status to ``removed``, keep the row."""
        return await self._set_membership_status(membership, MembershipStatus.REMOVED)

    async def reactivate_membership(self, membership: Membership) -> Membership:
        """Return a removed or invited membership to ``active``.

        Both membership invariants are re-checked against committed rows, as
        for a new membership.

        Raises:
            ValidationFailed: the membership is already active.
            ConstraintViolation: the user holds another active membership in
                the family, or the membership is a parent admin and the family
                already has an active one.
            NotFound: the membership no longer exists.
        """
        return await self._set_membership_status(membership, MembershipStatus.ACTIVE)

    async def _set_membership_status(
        self, membership: Membership, status: MembershipStatus,
    ) -> Membership:
        foreign_admins = set()
        if status == MembershipStatus.ACTIVE and membership.role == Role.PARENT_ADMIN:
            foreign_admins = await self._remote_parent_admin_ids(membership.family_id)

        async with self._transaction() as session:
            current = await session.get(Membership, membership.id)
            if current is None:
                raise NotFound(f"membership {membership.id}")
            if current.status == status:
                raise ValidationFailed([f"Membership is already {status.value}"])
            if status == MembershipStatus.ACTIVE:
                await self._check_reactivation(session, current, foreign_admins)
            current.status = status
            current.needs_sync = True
            current.sync_version += 1
            await session.flush()
        membership.status = current.status
        membership.needs_sync = True
        membership.sync_version = current.sync_version
        logger.info("Membership %s status set to %s", current.id, status.value)
        return current

    async def _check_reactivation(
        self, session: AsyncSession, membership: Membership, foreign_admins: set[uuid.UUID],
    ) -> None:
        other = await session.execute(
            select(Membership.id).where(
                Membership.family_id == membership.family_id,
                Membership.user_id == membership.user_id,
                Membership.status == MembershipStatus.ACTIVE,
                Membership.id != membership.id,
            )
        )
        if other.first() is not None:
            raise ConstraintViolation(MSG_ALREADY_MEMBER)

        if membership.role == Role.PARENT_ADMIN:
            admin_id = await self._active_parent_admin_id(
                session, membership.family_id, exclude=membership.id,
            )
            foreign_admins.discard(membership.id)
            if admin_id is not None or await self._foreign_ids_unknown_locally(
                session, foreign_admins,
            ):
                raise ConstraintViolation(MSG_PARENT_ADMIN_EXISTS)

    async def fetch_membership(self, membership_id: uuid.UUID) -> Membership | None:
        async with self._reader() as session:
            return await session.get(Membership, membership_id)

    async def fetch_memberships_for_family(self, family_id: uuid.UUID) -> list[Membership]:
        async with self._reader() as session:
            result = await session.execute(
                select(Membership).where(Membership.family_id == family_id)
            )
            return list(result.scalars().all())

    async def fetch_memberships_for_user(self, user_id: uuid.UUID) -> list[Membership]:
        async with self._reader() as session:
            result = await session.execute(
                select(Membership).where(Membership.user_id == user_id)
            )
            return list(result.scalars().all())

    async def fetch_active_memberships(self, family_id: uuid.UUID) -> list[Membership]:
        async with self._reader() as session:
            result = await session.execute(
                select(Membership).where(
                    Membership.family_id == family_id,
                    Membership.status == MembershipStatus.ACTIVE,
                )
            )
            return list(result.scalars().all())

    async def family_has_parent_admin(self, family_id: uuid.UUID) -> bool:
        async with self._reader() as session:
            return await self._active_parent_admin_id(session, family_id) is not None

    async def get_active_member_count(self, family_id: uuid.UUID) -> int:
        async with self._reader() as session:
            result = await session.execute(
                select(func.count(Membership.id)).where(
                    Membership.family_id == family_id,
                    Membership.status == MembershipStatus.ACTIVE,
                )
            )
            return result.scalar() or 0

    async def can_user_join_family(self, user: UserProfile, family: Family) -> bool:
        async with self._reader() as session:
            result = await session.execute(
                select(Membership.id).where(
                    Membership.family_id == family.id,
                    Membership.user_id == user.id,
                    Membership.status == MembershipStatus.ACTIVE,
                )
            )
            return result.first() is None

    async def _active_parent_admin_id(
        self, session: AsyncSession, family_id: uuid.UUID, exclude: uuid.UUID | None = None,
    ) -> uuid.UUID | None:
        query = select(Membership.id).where(
            Membership.family_id == family_id,
            Membership.role == Role.PARENT_ADMIN,
            Membership.status == MembershipStatus.ACTIVE,
        )
        if exclude is not None:
            query = query.where(Membership.id != exclude)
        result = await session.execute(query)
        return result.scalars().first()

    async def _remote_parent_admin_ids(self, family_id: uuid.UUID) -> set[uuid.UUID]:
        """Active parent-admin membership ids the remote backend knows about.

        Fetched before the write transaction opens so no network call runs
        while the store is locked.  A remote failure degrades to the local
        check only.
        """
        if self._remote is None:
            return set()
        try:
            records = await self._remote.fetch_active_memberships(family_id)
        except Exception as exc:
            logger.warning(
                "Remote parent-admin lookup for family %s failed, using local check: %s",
                family_id, exc,
            )
            return set()
        return {
            r.id for r in records
            if r.role == Role.PARENT_ADMIN and r.status == MembershipStatus.ACTIVE
        }

    async def _foreign_ids_unknown_locally(
        self, session: AsyncSession, ids: set[uuid.UUID],
    ) -> bool:
        """True if any of *ids* was created on another device.

        Memberships that also exist locally are governed by their local row.
        """
        if not ids:
            return False
        result = await session.execute(select(Membership.id).where(Membership.id.in_(ids)))
        known = set(result.scalars().all())
        return bool(ids - known)

    # -- sync bookkeeping -----------------------------------------------------

    async def fetch_records_needing_sync(
        self, model: type[SyncableModel], limit: int = 50,
    ) -> list[SyncableModel]:
        async with self._reader() as session:
            result = await session.execute(
                select(model).where(model.needs_sync.is_(True)).limit(limit)
            )
            return list(result.scalars().all())

    async def count_records_needing_sync(self) -> int:
        total = 0
        async with self._reader() as session:
            for model in (Family, UserProfile, Membership):
                result = await session.execute(
                    select(func.count(model.id)).where(model.needs_sync.is_(True))
                )
                total += result.scalar() or 0
        return total

    async def mark_synced(
        self, record: SyncableModel, remote_record_id: str, synced_version: int,
    ) -> bool:
        """Record a confirmed remote mirror of *record* at *synced_version*.

        ``needs_sync`` is cleared only while the stored ``sync_version`` still
        equals *synced_version*.  A mutation committed while the mirror was in
        flight keeps the row in the backlog.  Returns True if the flag was
        cleared.
        """
        now = _utcnow()
        async with self._transaction() as session:
            current = await session.get(type(record), record.id)
            if current is None:
                raise NotFound(f"{type(record).__name__} {record.id}")
            current.remote_record_id = remote_record_id
            current.last_sync_at = now
            cleared = current.sync_version == synced_version
            if cleared:
                current.needs_sync = False
            stored_version = current.sync_version
        record.remote_record_id = remote_record_id
        record.last_sync_at = now
        if cleared:
            record.needs_sync = False
        else:
            logger.info(
                "%s %s changed during mirror (v%d sent, v%d stored); still needs sync",
                type(record).__name__, record.id, synced_version, stored_version,
            )
        return cleared
