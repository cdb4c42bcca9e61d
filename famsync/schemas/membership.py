import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from famsync.models.membership import MembershipStatus, Role


class RoleUpdate(BaseModel):
    role: Role


class MembershipResponse(BaseModel):
    id: uuid.UUID
    family_id: uuid.UUID
    user_id: uuid.UUID
    role: Role
    status: MembershipStatus
    joined_at: datetime
    last_role_change_at: datetime | None = None
    remote_record_id: str | None = None
    last_sync_at: datetime | None = None
    needs_sync: bool
    model_config = ConfigDict(from_attributes=True)
