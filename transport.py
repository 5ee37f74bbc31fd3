"""
Outbound HTTP transport.

The Fetcher and the proxy health check only depend on the Transport
interface; HttpxTransport is the production implementation.
"""

import json
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    status_code: int
    text: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: Optional[float] = None

    def json(self) -> Any:
        return json.loads(self.text)


class Transport(ABC):

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        proxy: Optional[str] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> FetchResponse:
        """Perform one request or raise TransportError(timeout | refused | bad_status)."""

    async def close(self) -> None:
        return None


class HttpxTransport(Transport):
    """One pooled AsyncClient per proxy URL (None = direct)"""

    def __init__(self, follow_redirects: bool = True):
        self.follow_redirects = follow_redirects
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    def _get_client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            client = httpx.AsyncClient(proxy=proxy, follow_redirects=self.follow_redirects)
            self._clients[proxy] = client
        return client

    async def request(
        self,
        method: str,
        url: str,
        proxy: Optional[str] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> FetchResponse:
        client = self._get_client(proxy)
        started = time.monotonic()
        try:
            response = await client.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(TransportError.TIMEOUT, str(e) or "request timed out") from e
        except httpx.HTTPError as e:
            # Connect, proxy and protocol errors all mean this route did not answer
            raise TransportError(TransportError.REFUSED, str(e) or e.__class__.__name__) from e

        if response.status_code >= 400:
            raise TransportError(TransportError.BAD_STATUS, url, status_code=response.status_code)

        return FetchResponse(
            status_code=response.status_code,
            text=response.text,
            url=str(response.url),
            headers=dict(response.headers),
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
