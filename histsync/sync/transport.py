"""Retry and status classification on top of ``RemoteClient.fetch``."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from histsync.errors import FetchError, ThrottledFetchError
from histsync.services.remote import RemoteClient

logger = logging.getLogger("histsync.sync.transport")

Sleep = Callable[[float], Awaitable[Any]]


async def retry_fetch(
    client: RemoteClient,
    path: str,
    params: dict[str, Any] | None = None,
    *,
    max_retries: int = 5,
    retry_delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """Fetch ``path``, retrying server errors with a linearly growing delay.

    Args:
        client:      Remote client.
        path:        Path relative to the remote origin.
        params:      Query parameters.
        max_retries: Retries allowed for 5xx responses.
        retry_delay: Base delay; attempt ``r`` sleeps ``retry_delay * r``.
        sleep:       Injectable sleep.

    Returns:
        The successful response.

    Raises:
        ThrottledFetchError: On 429.
        FetchError:          On any other non-2xx response, or 5xx after retries.
    """
    attempt = 0
    while True:
        attempt += 1
        response = await client.fetch(path, params)
        if response.is_success:
            return response
        if 500 <= response.status_code < 600 and attempt <= max_retries:
            logger.info(
                "Server error for %s [%d] - retry %d/%d",
                path, response.status_code, attempt, max_retries,
            )
            await sleep(retry_delay * attempt)
            continue
        if response.status_code == 429:
            raise ThrottledFetchError.from_response(response)
        raise FetchError.from_response(response)
