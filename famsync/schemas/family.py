import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from famsync.models.membership import Role
from famsync.schemas.membership import MembershipResponse


class FamilyCreate(BaseModel):
    name: str


class FamilyJoin(BaseModel):
    code: str
    role: Role = Role.ADULT


class FamilyResponse(BaseModel):
    id: uuid.UUID
    name: str
    code: str
    created_by_user_id: uuid.UUID
    created_at: datetime
    remote_record_id: str | None = None
    last_sync_at: datetime | None = None
    needs_sync: bool
    model_config = ConfigDict(from_attributes=True)


class CodeCheckResponse(BaseModel):
    code: str
    valid_format: bool
    available: bool


class CreationResponse(BaseModel):
    """Outcome of a completed create, join or membership-change attempt."""

    state: str
    message: str
    sync_pending: bool
    family: FamilyResponse | None = None
    membership: MembershipResponse | None = None
