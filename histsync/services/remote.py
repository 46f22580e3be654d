"""HTTP client for the remote activity source.

Exposes one primitive, ``fetch(path, params)``, returning the raw
``httpx.Response``.  Status handling and retries live in
``histsync.sync.transport`` so they can be exercised against any transport.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger("histsync.services.remote")

# Most endpoints of the remote site only answer XHR style requests.
_DEFAULT_HEADERS = {"x-requested-with": "XMLHttpRequest"}


class RemoteClient:
    """Thin async wrapper around an ``httpx.AsyncClient``.

    Args:
        base_url:     Origin of the remote site.
        timeout:      Per-request timeout in seconds.
        http_client:  Injected client (tests pass one built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "https://www.strava.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=_DEFAULT_HEADERS
        )

    async def fetch(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        logger.debug("GET %s %s", path, params or "")
        return await self._http.get(path, params=params, headers=_DEFAULT_HEADERS)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
