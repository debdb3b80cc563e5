"""
Graph HTTP Client

Thin authenticated wrapper over httpx.AsyncClient shared by the user loader
and the Copilot statistics feed.
"""

import asyncio
from typing import Any
from typing import Dict
from typing import Optional

import httpx
from loguru import logger

from usercache.errors import DataLoadError
from usercache.errors import classify_graph_error
from usercache.graph_auth.token_manager import GraphTokenManager


class GraphClient:
    """Authenticated GET access to Microsoft Graph."""

    def __init__(
        self,
        token_manager: GraphTokenManager,
        base_url: str = "https://graph.microsoft.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            token_manager: Source of bearer tokens (blocking, called in a worker thread)
            base_url: Graph root URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.token_manager = token_manager
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def url(self, path: str) -> str:
        """Absolute URL for a Graph path such as /v1.0/users/delta."""
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def session(self) -> httpx.AsyncClient:
        """New AsyncClient; use as `async with client.session() as http:`."""
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _auth_headers(self) -> Dict[str, str]:
        token, _ = await asyncio.to_thread(self.token_manager.get_token)
        return {"Authorization": f"Bearer {token}"}

    async def get(
        self,
        http: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Authenticated GET. Redirects are not followed.

        A 401 invalidates the cached token and the request is sent once more
        with a fresh token; any other status is returned to the caller.
        """
        request_headers = dict(headers or {})
        for attempt in (1, 2):
            request_headers.update(await self._auth_headers())
            try:
                response = await http.get(self.url(url), params=params, headers=request_headers)
            except httpx.TimeoutException as e:
                raise DataLoadError(f"Graph request timed out: {e}") from e
            except httpx.RequestError as e:
                raise DataLoadError(f"Error connecting to Microsoft Graph: {e}") from e

            if response.status_code == 401 and attempt == 1:
                logger.warning("Graph returned 401, refreshing access token", url=str(response.request.url))
                await asyncio.to_thread(self.token_manager.invalidate_token)
                continue
            return response
        return response

    async def get_json(
        self,
        http: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Authenticated GET that raises the classified error for any non-2xx response."""
        response = await self.get(http, url, params=params, headers=headers)
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise DataLoadError(f"Graph returned a non-JSON body: {e}", status_code=response.status_code) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {"error": {"message": response.text[:500]}}
        raise classify_graph_error(response.status_code, payload)
