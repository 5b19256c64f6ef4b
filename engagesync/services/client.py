"""Rate-limited, retrying HTTP client for remote sync platforms."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional
import httpx

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base class for errors raised while talking to a remote platform."""
    pass


class AuthError(SyncError):
    """Credentials rejected by the remote platform. Never retried."""
    pass


class TransientError(SyncError):
    """Network failure or non-2xx response that survived every retry."""
    pass


class RateLimitError(TransientError):
    """Remote platform kept answering HTTP 429 after every backoff."""
    pass


class RateLimitedClient:
    """
    Async HTTP client that spaces out requests and retries with backoff.

    Every attempt, including retries, waits until at least ``delay_ms`` has
    passed since the previous outbound request.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        delay_ms: int = 500,
        max_retries: int = 3,
        rate_limit_backoff: float = 2.0,
        retry_backoff: float = 1.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip('/')
        self.headers = headers
        self.delay = delay_ms / 1000
        self.max_retries = max(1, max_retries)
        self.rate_limit_backoff = rate_limit_backoff
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self.transport = transport
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: Optional[float] = None
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                transport=self.transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _throttle(self):
        """Sleep until the minimum inter-request delay has passed."""
        if self._last_request_at is not None:
            wait = self.delay - (self._clock() - self._last_request_at)
            if wait > 0:
                await self._sleep(wait)
        self._last_request_at = self._clock()

    async def request(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET an endpoint and return its parsed JSON body.

        Raises:
            AuthError: on HTTP 401/403, without retrying.
            RateLimitError: when HTTP 429 persists through every retry.
            TransientError: on any other failure after every retry.
        """
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            await self._throttle()
            logger.info(f"GET {endpoint} (attempt {attempt}/{self.max_retries})")

            try:
                response = await client.get(url, params=params)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Request to {endpoint} failed: {last_error}")
                if attempt < self.max_retries:
                    await self._sleep(self.retry_backoff * attempt)
                continue

            if response.status_code in (401, 403):
                logger.error(f"Authentication rejected for {endpoint}: HTTP {response.status_code}")
                raise AuthError(f"Authentication failed (HTTP {response.status_code}) for {endpoint}")

            if response.status_code == 429:
                wait_time = self.rate_limit_backoff * attempt
                logger.warning(f"Rate limited on {endpoint}, waiting {wait_time}s (attempt {attempt}/{self.max_retries})")
                if attempt < self.max_retries:
                    await self._sleep(wait_time)
                    continue
                raise RateLimitError(f"Rate limited on {endpoint} after {attempt} attempts")

            if response.is_success:
                try:
                    return response.json()
                except ValueError as e:
                    last_error = f"invalid JSON: {e}, body: {response.text[:200]}"
                    logger.warning(f"{endpoint}: {last_error}")
            else:
                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(f"{endpoint} returned {last_error}")

            if attempt < self.max_retries:
                await self._sleep(self.retry_backoff * attempt)

        raise TransientError(f"{endpoint} failed after {self.max_retries} attempts ({last_error})")
