"""Remote synchronization backend boundary.

The engine sees the remote side only through :class:`RemoteBackend`:
``save`` mirrors one record, ``fetch_active_memberships`` lists what
other devices have committed for a family and ``family_code_exists``
looks up a join code.  :class:`HttpRemoteBackend` is the httpx
implementation; every failure it raises is a network or cloud-sync error,
never a local validation error.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from famsync.config import settings
from famsync.errors import (
    CloudSyncFailed,
    CloudUnavailable,
    ConnectionTimeout,
    NetworkUnavailable,
    ServerError,
)
from famsync.models.family import Family
from famsync.models.membership import Membership
from famsync.models.user import UserProfile
from famsync.schemas.family import FamilyResponse
from famsync.schemas.membership import MembershipResponse
from famsync.schemas.sync import RemoteMembership, RemoteRecord
from famsync.schemas.user import UserProfileResponse

log = logging.getLogger(__name__)

# Bookkeeping columns that stay local
_LOCAL_ONLY_FIELDS = {"remote_record_id", "last_sync_at", "needs_sync"}


class RemoteBackend(Protocol):
    async def save(self, record: RemoteRecord) -> str:
        """Mirror *record*; return the remote record reference or raise."""
        ...

    async def fetch_active_memberships(self, family_id: uuid.UUID) -> list[RemoteMembership]:
        ...

    async def family_code_exists(self, code: str) -> bool:
        """True if a family on the remote backend already uses *code*."""
        ...


def to_remote_record(obj: Family | UserProfile | Membership) -> RemoteRecord:
    """Build the mirror payload for a local row."""
    if isinstance(obj, Family):
        record_type, schema = "family", FamilyResponse
    elif isinstance(obj, UserProfile):
        record_type, schema = "user_profile", UserProfileResponse
    elif isinstance(obj, Membership):
        record_type, schema = "membership", MembershipResponse
    else:
        raise TypeError(f"Cannot mirror {type(obj).__name__}")

    fields = schema.model_validate(obj).model_dump(mode="json", exclude=_LOCAL_ONLY_FIELDS)
    fields.pop("id", None)
    return RemoteRecord(record_type=record_type, id=obj.id, fields=fields)


class HttpRemoteBackend:
    """Async HTTP client for the remote record store.

    Requests carry ``Authorization: Bearer <token>`` when a token is
    configured.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = settings.REMOTE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- lifecycle -----------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client gracefully."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # -- endpoints -----------------------------------------------------------

    async def save(self, record: RemoteRecord) -> str:
        """PUT /records/{record_type}/{id}

        Returns
        -------
        str
            The ``remote_record_id`` assigned by the backend.
        """
        path = f"/records/{record.record_type}/{record.id}"
        log.debug("Saving %s %s remotely", record.record_type, record.id)
        data = await self._request("PUT", path, json=record.fields)
        remote_id = data.get("remote_record_id") if isinstance(data, dict) else None
        if not remote_id:
            raise CloudSyncFailed(f"save of {record.record_type} {record.id} returned no record id")
        return str(remote_id)

    async def fetch_active_memberships(self, family_id: uuid.UUID) -> list[RemoteMembership]:
        """GET /families/{family_id}/memberships?status=active"""
        data = await self._request(
            "GET", f"/families/{family_id}/memberships", params={"status": "active"},
        )
        if not isinstance(data, list):
            raise CloudSyncFailed("membership listing is not a list")
        try:
            return [RemoteMembership.model_validate(item) for item in data]
        except ValidationError as exc:
            raise CloudSyncFailed(exc) from exc

    async def family_code_exists(self, code: str) -> bool:
        """GET /families?code={code}"""
        data = await self._request("GET", "/families", params={"code": code})
        if not isinstance(data, list):
            raise CloudSyncFailed("family lookup is not a list")
        return len(data) > 0

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        client = await self._ensure_client()
        try:
            resp = await client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException as exc:
            log.error("%s %s timed out: %s", method, path, exc)
            raise ConnectionTimeout() from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            log.error("%s %s failed with HTTP %s: %s", method, path, status_code, exc.response.text)
            if status_code >= 500:
                raise ServerError(status_code) from exc
            if status_code == 429:
                raise CloudUnavailable(status_code) from exc
            raise CloudSyncFailed(f"HTTP {status_code}") from exc
        except httpx.TransportError as exc:
            log.error("%s %s request error: %s", method, path, exc)
            raise NetworkUnavailable(str(exc)) from exc
        except ValueError as exc:
            # Body was not JSON
            raise CloudSyncFailed(exc) from exc
