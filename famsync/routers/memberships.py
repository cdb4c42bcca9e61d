"""Memberships router."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends

from famsync.core.dependencies import get_creation_service
from famsync.routers.families import creation_response
from famsync.schemas.family import CreationResponse
from famsync.schemas.membership import RoleUpdate
from famsync.services.family_creation import FamilyCreationService

router = APIRouter(prefix="/memberships", tags=["Memberships"])


@router.patch("/{membership_id}/role", response_model=CreationResponse)
async def update_role(
    membership_id: uuid.UUID,
    body: RoleUpdate,
    service: Annotated[FamilyCreationService, Depends(get_creation_service)],
):
    """Change a member's role. Requires the family's Parent Admin."""
    return creation_response(await service.update_role(membership_id, body.role))


@router.delete("/{membership_id}", response_model=CreationResponse)
async def remove_member(
    membership_id: uuid.UUID,
    service: Annotated[FamilyCreationService, Depends(get_creation_service)],
):
    """Soft-remove a member. The membership row is kept with status ``removed``."""
    return creation_response(await service.remove_member(membership_id))


@router.post("/{membership_id}/reactivate", response_model=CreationResponse)
async def reactivate_member(
    membership_id: uuid.UUID,
    service: Annotated[FamilyCreationService, Depends(get_creation_service)],
):
    """Return a removed member to the family."""
    return creation_response(await service.reactivate_member(membership_id))
