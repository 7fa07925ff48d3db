"""httpx authentication backed by an :class:`~authbroker.auth.manager.OAuthManager`."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Generator
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from authbroker.auth.manager import OAuthManager

logger = logging.getLogger(__name__)


class BrokerAuth(httpx.Auth):
    """Attach ``Authorization: Bearer <token>`` from the manager to each request.

    The token is fetched per request, so an expired token is refreshed
    before the request is sent. If the API still answers ``401`` (the token
    was revoked early, for example) the token is refreshed once and the
    request replayed. A second ``401`` is returned to the caller unchanged.

    Only :class:`httpx.AsyncClient` is supported.

    Example::

        async with httpx.AsyncClient(auth=BrokerAuth(manager)) as client:
            resp = await client.get("https://www.googleapis.com/calendar/v3/colors")
    """

    def __init__(self, manager: OAuthManager) -> None:
        self._manager = manager

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("BrokerAuth requires httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._manager.get_access_token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        if response.status_code == 401:
            logger.info("Request to %s returned 401; refreshing token and retrying once", request.url.host)
            refreshed = await self._manager.refresh()
            request.headers["Authorization"] = f"Bearer {refreshed.access_token}"
            yield request
