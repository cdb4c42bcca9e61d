"""Sync router: drain the needs-sync backlog on demand."""

from typing import Annotated

from fastapi import APIRouter, Depends

from famsync.core.dependencies import EngineComponents, get_components, get_current_user
from famsync.models.user import UserProfile
from famsync.schemas.sync import SyncReportResponse

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("", response_model=SyncReportResponse)
async def sync_now(
    components: Annotated[EngineComponents, Depends(get_components)],
    current_user: Annotated[UserProfile, Depends(get_current_user)],
):
    report = await components.sync.sync_pending()
    return SyncReportResponse(
        attempted=report.attempted,
        synced=report.synced,
        failed=report.failed,
        pending=await components.sync.pending_count(),
        last_sync_at=components.sync.last_sync_at,
    )


@router.get("", response_model=SyncReportResponse)
async def sync_status(
    components: Annotated[EngineComponents, Depends(get_components)],
):
    """Backlog size and last completed pass, without syncing."""
    return SyncReportResponse(
        attempted=0,
        synced=0,
        failed=0,
        pending=await components.sync.pending_count(),
        last_sync_at=components.sync.last_sync_at,
    )
