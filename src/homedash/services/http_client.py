"""HTTP client wrapper shared by every backend call."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx


class HttpClient:
    """Lazily created ``httpx.AsyncClient`` bound to the dashboard backend."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    @asynccontextmanager
    async def session(self) -> AsyncIterator[httpx.AsyncClient]:
        client = await self._ensure_client()
        try:
            yield client
        finally:
            # Keep client open for reuse; teardown occurs in close()
            pass

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
