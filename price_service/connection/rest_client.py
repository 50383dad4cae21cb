# Price Service REST Client - HTTP Requests
# GET requests with null-param stripping and retry with backoff

"""
REST Client Module

Responsibilities:
- Issue GET requests against the price service HTTP API
- Strip null query parameters before transmission
- Retry transient failures (transport errors, timeouts, 429, 5xx)
- Decode JSON responses

Retry delay doubles per attempt: retry_delay * 2^attempt.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from ..exceptions import PriceServiceHTTPError
from ..utils.helpers import clean_query_params
from ..utils.logger import setup_logger

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class RestClient:
    """
    Thin aiohttp wrapper used by PriceServiceConnection

    The session is created on first request and must be released with
    close() (or by using the client as an async context manager).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        retries: int = 3,
        retry_delay: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
        logger=None
    ):
        """
        Initialize REST client.

        Args:
            base_url: Price service endpoint, e.g. "https://hermes.example.com"
            timeout: Total seconds per request (all attempts included)
            retries: Extra attempts after the first failure
            retry_delay: Base retry delay in seconds
            session: Optional externally managed session
            logger: Optional logger
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.logger = logger or setup_logger("RestClient", "INFO")
        self._session = session
        self._owns_session = session is None
        self._stats = {
            "requests": 0,
            "retries": 0,
            "errors": 0,
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a path and decode the JSON body

        Args:
            path: API path, e.g. "/api/latest_price_feeds"
            params: Query parameters; None values are dropped

        Returns:
            Decoded JSON

        Raises:
            PriceServiceHTTPError: non-retryable status, or retries exhausted on a status
            aiohttp.ClientError / asyncio.TimeoutError: retries exhausted on transport errors
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = clean_query_params(params)
        self._stats["requests"] += 1

        try:
            async with asyncio.timeout(self.timeout):
                return await self._get_with_retry(url, query)
        except Exception:
            self._stats["errors"] += 1
            raise

    async def _get_with_retry(self, url: str, query) -> Any:
        attempt = 0
        while True:
            try:
                return await self._request(url, query)

            except PriceServiceHTTPError as e:
                if e.status not in RETRYABLE_STATUSES or attempt >= self.retries:
                    raise
                error: Exception = e

            except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
                if attempt >= self.retries:
                    raise
                error = e

            attempt += 1
            self._stats["retries"] += 1
            delay = self.retry_delay * (2 ** attempt)
            self.logger.warning(
                f"Request to {url} failed ({error!r}); retrying in {delay:.2f}s "
                f"(attempt {attempt}/{self.retries})"
            )
            await asyncio.sleep(delay)

    async def _request(self, url: str, query) -> Any:
        session = self._get_session()
        async with session.get(url, params=query) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise PriceServiceHTTPError(resp.status, text[:200], url)
            return await resp.json(content_type=None)

    async def close(self):
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> dict:
        return dict(self._stats)
