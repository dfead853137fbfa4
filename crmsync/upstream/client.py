"""HubSpot CRM v3 client - typed wrapper around the contacts object API.

Translates HTTP failures into the sync error taxonomy:

- 429 -> ``RateLimited`` (carrying ``Retry-After`` when present)
- 5xx -> ``UpstreamCorruptRecord``
- timeouts and connection errors -> ``TransientNetworkError``
- any other 4xx -> ``UpstreamRejected``

Usage:
    async with HubSpotClient.from_settings() as hubspot:
        page = await hubspot.list_contacts(properties, limit=100, after=None)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx

from ..config import settings
from ..errors import (
    RateLimited,
    TransientNetworkError,
    UpstreamCorruptRecord,
    UpstreamRejected,
)

logger = logging.getLogger(__name__)

CONTACTS_ENDPOINT = "/crm/v3/objects/contacts"


@dataclass
class ContactPage:
    """One page of raw contact records plus the cursor for the next page."""

    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class UpstreamClient(Protocol):
    async def list_contacts(
        self, properties: Sequence[str], *, limit: int, after: str | None = None
    ) -> ContactPage: ...

    async def get_contact(
        self, object_id: str, properties: Sequence[str] = ()
    ) -> dict[str, Any] | None: ...

    def advance_cursor(self, cursor: str | None, count: int) -> str: ...


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


class HubSpotClient:
    """Async HubSpot contacts client."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, transport: httpx.AsyncBaseTransport | None = None) -> "HubSpotClient":
        return cls(
            access_token=settings.upstream_access_token,
            base_url=settings.upstream_base_url,
            timeout=settings.upstream_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "HubSpotClient":
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
        cursor: str | None = None,
        size: int | None = None,
    ) -> httpx.Response | None:
        if self._client is None:
            raise RuntimeError("HubSpotClient must be used as an async context manager")
        try:
            resp = await self._client.request(method, endpoint, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(f"{method} {endpoint}: {exc!r}") from exc

        if resp.status_code == 429:
            raise RateLimited(retry_after=_parse_retry_after(resp.headers.get("Retry-After")))
        if resp.status_code >= 500:
            raise UpstreamCorruptRecord(
                f"{method} {endpoint} returned {resp.status_code}",
                cursor=cursor,
                size=size,
                status_code=resp.status_code,
            )
        if resp.status_code == 404 and allow_not_found:
            return None
        if resp.status_code >= 400:
            raise UpstreamRejected(
                f"{method} {endpoint} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    async def list_contacts(
        self, properties: Sequence[str], *, limit: int, after: str | None = None
    ) -> ContactPage:
        """Fetch one page of contacts starting at the opaque ``after`` cursor."""
        params: dict[str, Any] = {"limit": limit, "archived": "false"}
        if properties:
            params["properties"] = ",".join(properties)
        if after is not None:
            params["after"] = after

        resp = await self._request("GET", CONTACTS_ENDPOINT, params=params, cursor=after, size=limit)
        try:
            data = resp.json()
        except ValueError as exc:
            # A body that does not parse is treated like a page the server failed to render.
            raise UpstreamCorruptRecord(
                f"Unparseable contacts page at after={after!r}", cursor=after, size=limit
            ) from exc

        results = data.get("results") or []
        next_cursor = (((data.get("paging") or {}).get("next")) or {}).get("after")
        return ContactPage(
            records=[r for r in results if isinstance(r, dict)],
            next_cursor=str(next_cursor) if next_cursor is not None else None,
        )

    async def get_contact(
        self, object_id: str, properties: Sequence[str] = ()
    ) -> dict[str, Any] | None:
        """Fetch the current full state of one contact. Returns None on 404."""
        params: dict[str, Any] = {}
        if properties:
            params["properties"] = ",".join(properties)
        resp = await self._request(
            "GET", f"{CONTACTS_ENDPOINT}/{object_id}", params=params, allow_not_found=True
        )
        if resp is None:
            return None
        return resp.json()

    def advance_cursor(self, cursor: str | None, count: int) -> str:
        """Skip ``count`` records past ``cursor``. HubSpot ``after`` tokens are offsets."""
        try:
            base = int(cursor) if cursor else 0
        except ValueError as exc:
            raise ValueError(f"Cannot advance non-numeric cursor {cursor!r}") from exc
        return str(base + count)


def get_upstream_client_factory():
    """FastAPI dependency returning a callable that opens an upstream client."""
    return HubSpotClient.from_settings
