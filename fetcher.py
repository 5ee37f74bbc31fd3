import asyncio
import time
import logging
from typing import Optional

from config import settings
from errors import TransportError
from proxy_manager import ProxyPool
from rate_limiter import RateLimiter, wait_or_cancel
from transport import FetchResponse, Transport

logger = logging.getLogger(__name__)


class Fetcher:
    """
    Rate-limited, proxy-rotating fetch with linear backoff.

    Suspension points per attempt: the limiter's pacing wait, the request
    itself (bounded by the timeout) and the backoff after a failure.
    """

    def __init__(
        self,
        pool: ProxyPool,
        limiter: RateLimiter,
        transport: Transport,
        max_retries: Optional[int] = None,
        retry_base_delay_ms: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ):
        self.pool = pool
        self.limiter = limiter
        self.transport = transport
        self.max_retries = max(1, settings.MAX_PROXY_RETRIES if max_retries is None else max_retries)
        self.retry_base_delay_ms = settings.RETRY_BASE_DELAY_MS if retry_base_delay_ms is None else retry_base_delay_ms
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self.cancel = cancel

    async def fetch(
        self, url: str, method: str = "GET", cancel: Optional[asyncio.Event] = None, **options
    ) -> FetchResponse:
        cancel = cancel or self.cancel
        extra_headers = options.pop("headers", None) or {}
        last_error: Optional[TransportError] = None

        for attempt in range(1, self.max_retries + 1):
            await self.limiter.acquire(cancel)
            proxy = await self.pool.get_next()
            route = proxy.label if proxy else "direct"

            headers = self.pool.get_random_headers()
            headers.update(extra_headers)

            started = time.monotonic()
            try:
                response = await self.transport.request(
                    method,
                    url,
                    proxy=proxy.url if proxy else None,
                    timeout=self.timeout,
                    headers=headers,
                    **options,
                )
            except TransportError as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.max_retries} failed for {url} via {route}: {e}")
                if proxy:
                    await self.pool.record_outcome(proxy.id, False)
                if attempt < self.max_retries:
                    await wait_or_cancel(self.retry_base_delay_ms * attempt / 1000, cancel)
                continue

            response_time_ms = (time.monotonic() - started) * 1000
            if proxy:
                await self.pool.record_outcome(proxy.id, True, response_time_ms)
            logger.debug(f"Fetched {url} via {route} in {response_time_ms:.0f}ms")
            return response

        logger.error(f"All {self.max_retries} attempts failed for {url}")
        raise last_error
