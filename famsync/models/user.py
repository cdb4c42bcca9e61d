import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from famsync.database import Base


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    # One-way hash of the identity provider's subject, never the raw subject
    identity_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
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
    memberships: Mapped[list["Membership"]] = relationship(  # noqa: F821
        back_populates="user"
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, display_name={self.display_name!r})>"
