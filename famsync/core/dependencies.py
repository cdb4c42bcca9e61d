from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from famsync.config import settings
from famsync.models.user import UserProfile
from famsync.services.code_generator import CodeGenerator
from famsync.services.data_service import DataService
from famsync.services.error_classifier import ErrorClassifier
from famsync.services.family_creation import FamilyCreationService
from famsync.services.identity import Identity, SessionIdentityProvider
from famsync.services.remote_backend import HttpRemoteBackend, RemoteBackend
from famsync.services.sync_coordinator import SyncCoordinator


@dataclass
class EngineComponents:
    """Process-wide engine objects shared by all requests."""

    data: DataService
    classifier: ErrorClassifier
    code_generator: CodeGenerator
    sync: SyncCoordinator
    remote: RemoteBackend | None = None


def build_remote_backend() -> HttpRemoteBackend | None:
    """HTTP remote backend from settings, or None for local-only mode."""
    if not settings.REMOTE_API_BASE:
        return None
    return HttpRemoteBackend(settings.REMOTE_API_BASE, token=settings.REMOTE_API_TOKEN)


def build_components(
    session_factory: async_sessionmaker[AsyncSession],
    remote: RemoteBackend | None = None,
) -> EngineComponents:
    data = DataService(session_factory, remote=remote)
    classifier = ErrorClassifier()
    return EngineComponents(
        data=data,
        classifier=classifier,
        code_generator=CodeGenerator(),
        sync=SyncCoordinator(data, remote, classifier),
        remote=remote,
    )


def get_components(request: Request) -> EngineComponents:
    return request.app.state.components


async def get_identity(
    x_identity_subject: Annotated[str | None, Header()] = None,
    x_display_name: Annotated[str | None, Header()] = None,
) -> Identity | None:
    """Identity asserted by the authentication proxy in front of the API.

    Returns None when the request carries no subject; operations that need
    a signed-in user turn that into an authentication failure.
    """
    if not x_identity_subject or not x_identity_subject.strip():
        return None
    return Identity(subject=x_identity_subject.strip(), display_name=x_display_name)


async def get_creation_service(
    components: Annotated[EngineComponents, Depends(get_components)],
    identity: Annotated[Identity | None, Depends(get_identity)],
) -> FamilyCreationService:
    return FamilyCreationService(
        data=components.data,
        code_generator=components.code_generator,
        sync=components.sync,
        classifier=components.classifier,
        identity_provider=SessionIdentityProvider(identity),
    )


async def get_current_user(
    identity: Annotated[Identity | None, Depends(get_identity)],
    components: Annotated[EngineComponents, Depends(get_components)],
) -> UserProfile:
    """Return the signed-in user's profile.

    Raises:
        HTTPException 401: If the request carries no identity.
    """
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Please sign in to continue.",
        )
    return await components.data.get_or_create_user_profile(
        identity.name_or_default, identity.identity_hash,
    )
