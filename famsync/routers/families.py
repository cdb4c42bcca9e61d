"""Families router.

Create a family, join one by code, check a code, and read a family with its
members.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from famsync.core.dependencies import (
    EngineComponents,
    get_components,
    get_creation_service,
    get_current_user,
)
from famsync.models.user import UserProfile
from famsync.routers.errors import raise_for_error
from famsync.schemas.family import (
    CodeCheckResponse,
    CreationResponse,
    FamilyCreate,
    FamilyJoin,
    FamilyResponse,
)
from famsync.schemas.membership import MembershipResponse
from famsync.services.family_creation import CreationResult, FamilyCreationService
from famsync.services.validation import is_valid_family_code_format, normalize_family_code

router = APIRouter(prefix="/families", tags=["Families"])


def creation_response(result: CreationResult) -> CreationResponse:
    """Translate a finished attempt into a response, raising on failure."""
    if not result.succeeded:
        raise_for_error(result.error)
    return CreationResponse(
        state=result.state.value,
        message=result.message,
        sync_pending=result.sync_pending,
        family=FamilyResponse.model_validate(result.family) if result.family else None,
        membership=(
            MembershipResponse.model_validate(result.membership) if result.membership else None
        ),
    )


@router.post("", response_model=CreationResponse, status_code=status.HTTP_201_CREATED)
async def create_family(
    body: FamilyCreate,
    service: Annotated[FamilyCreationService, Depends(get_creation_service)],
):
    """Create a family; the caller becomes its Parent Admin."""
    return creation_response(await service.create_family(body.name))


@router.post("/join", response_model=CreationResponse, status_code=status.HTTP_201_CREATED)
async def join_family(
    body: FamilyJoin,
    service: Annotated[FamilyCreationService, Depends(get_creation_service)],
):
    return creation_response(await service.join_family(body.code, body.role))


@router.get("/code-check/{code}", response_model=CodeCheckResponse)
async def check_code(
    code: str,
    components: Annotated[EngineComponents, Depends(get_components)],
):
    """Report whether *code* is well-formed and still unused."""
    normalized = normalize_family_code(code)
    valid = is_valid_family_code_format(code.strip())
    available = valid and await components.data.is_code_available(normalized)
    return CodeCheckResponse(code=normalized, valid_format=valid, available=available)


async def _family_for_member(
    family_id: uuid.UUID, user: UserProfile, components: EngineComponents,
):
    family = await components.data.fetch_family(family_id)
    if family is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Family not found",
        )
    if await components.data.can_user_join_family(user, family):
        # No active membership
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this family",
        )
    return family


@router.get("/{family_id}", response_model=FamilyResponse)
async def get_family(
    family_id: uuid.UUID,
    components: Annotated[EngineComponents, Depends(get_components)],
    current_user: Annotated[UserProfile, Depends(get_current_user)],
):
    """Get family details. Requires the caller to be an active member."""
    return await _family_for_member(family_id, current_user, components)


@router.get("/{family_id}/members", response_model=list[MembershipResponse])
async def list_members(
    family_id: uuid.UUID,
    components: Annotated[EngineComponents, Depends(get_components)],
    current_user: Annotated[UserProfile, Depends(get_current_user)],
):
    """Active memberships of the family."""
    await _family_for_member(family_id, current_user, components)
    return await components.data.fetch_active_memberships(family_id)
