import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UserProfileResponse(BaseModel):
    id: uuid.UUID
    display_name: str
    identity_hash: str
    created_at: datetime
    remote_record_id: str | None = None
    last_sync_at: datetime | None = None
    needs_sync: bool
    model_config = ConfigDict(from_attributes=True)
