import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from famsync.database import Base
from famsync.types import ValueEnum


class Role(str, enum.Enum):
    PARENT_ADMIN = "parent_admin"
    ADULT = "adult"
    KID = "kid"
    VISITOR = "visitor"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class MembershipStatus(str, enum.Enum):
    ACTIVE = "active"
    INVITED = "invited"
    REMOVED = "removed"


# Partial unique indexes are the store-level backstop for the membership
# invariants; concurrent writers racing past the in-transaction checks still
# collide here and exactly one commit wins.
_ACTIVE = text("status = 'active'")
_ACTIVE_PARENT_ADMIN = text("status = 'active' AND role = 'parent_admin'")


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        Index(
            "uq_membership_active_user_family",
            "family_id",
            "user_id",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
        Index(
            "uq_membership_active_parent_admin",
            "family_id",
            unique=True,
            sqlite_where=_ACTIVE_PARENT_ADMIN,
            postgresql_where=_ACTIVE_PARENT_ADMIN,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id"), nullable=False, index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_profiles.id"), nullable=False, index=True,
    )
    role: Mapped[Role] = mapped_column(ValueEnum(Role), nullable=False)
    status: Mapped[MembershipStatus] = mapped_column(
        ValueEnum(MembershipStatus), nullable=False, default=MembershipStatus.ACTIVE,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_role_change_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Sync bookkeeping
    remote_record_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    needs_sync: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Bumped on every local mutation
    sync_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Relationships
    family: Mapped["Family"] = relationship(back_populates="memberships")  # noqa: F821
    user: Mapped["UserProfile"] = relationship(back_populates="memberships")  # noqa: F821

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    @property
    def is_parent_admin(self) -> bool:
        return self.role == Role.PARENT_ADMIN

    def __repr__(self) -> str:
        return (
            f"<Membership(id={self.id}, family_id={self.family_id}, "
            f"user_id={self.user_id}, role={self.role.value!r}, status={self.status.value!r})>"
        )
