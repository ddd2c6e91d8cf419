"""
HTTP transport for the event stream.

The stream session only needs "open a URL with these headers and give me
the body as byte chunks". Keeping that behind a small protocol lets tests
drive the session with scripted chunks.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import aiohttp

from ..exceptions import StreamConnectionError

logger = logging.getLogger(__name__)

# The stream is expected to stay open indefinitely
STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, connect=None, sock_read=None, sock_connect=None)


class EventStreamTransport(Protocol):
    """Opens one long-lived streaming request."""

    def open(
        self, url: str, headers: Mapping[str, str]
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...

    async def close(self) -> None: ...


class AiohttpEventStreamTransport:
    """aiohttp-backed transport.

    Creates its own ``ClientSession`` on first use unless one is supplied;
    a supplied session is never closed by the transport.
    """

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=STREAM_TIMEOUT)
            self._owns_session = True
        return self._session

    @asynccontextmanager
    async def open(self, url: str, headers: Mapping[str, str]) -> AsyncIterator[AsyncIterator[bytes]]:
        session = self._get_session()
        try:
            response = await session.get(url, headers=dict(headers), timeout=STREAM_TIMEOUT)
        except aiohttp.ClientError as e:
            raise StreamConnectionError(url, cause=e) from e

        async with response:
            if response.status != 200:
                raise StreamConnectionError(url, status=response.status)
            logger.debug(f"Event stream opened: {url}")
            yield response.content.iter_any()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
