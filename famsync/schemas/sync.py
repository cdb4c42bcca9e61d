import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from famsync.models.membership import MembershipStatus, Role

RecordType = Literal["family", "user_profile", "membership"]


class RemoteRecord(BaseModel):
    """Payload mirrored to the remote backend for one local row."""

    record_type: RecordType
    id: uuid.UUID
    fields: dict[str, Any]


class RemoteMembership(BaseModel):
    """Active membership as reported by the remote backend."""

    id: uuid.UUID
    family_id: uuid.UUID
    user_id: uuid.UUID
    role: Role
    status: MembershipStatus
    model_config = ConfigDict(from_attributes=True)


class SyncReportResponse(BaseModel):
    attempted: int
    synced: int
    failed: int
    pending: int
    last_sync_at: datetime | None = None
