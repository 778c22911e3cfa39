"""RSS/Atom feed fetching with ETag and If-Modified-Since handling."""

import asyncio
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, Optional, Any, NamedTuple, Tuple

import feedparser
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from newsweave.core.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "Newsweave/0.1 (feed reader)"
RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class FetchResult(NamedTuple):
    """Result of a feed fetch."""
    status_code: int
    feed: Optional[Any] = None  # feedparser.FeedParserDict
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    error: Optional[str] = None


class RSSFetcher:
    """Feed fetcher with conditional requests, bounded concurrency and retries."""

    def __init__(
        self,
        timeout: float = 10.0,
        max_concurrent: int = 8,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.timeout = timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _build_conditional_headers(
        self,
        etag: Optional[str] = None,
        last_modified: Optional[datetime] = None
    ) -> Dict[str, str]:
        """Build If-None-Match / If-Modified-Since headers from stored values."""
        headers = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            if isinstance(last_modified, datetime):
                if last_modified.tzinfo is None:
                    last_modified = last_modified.replace(tzinfo=timezone.utc)
                headers["If-Modified-Since"] = formatdate(last_modified.timestamp(), usegmt=True)
            else:
                headers["If-Modified-Since"] = str(last_modified)
        return headers

    def _parse_last_modified_header(self, header_value: str) -> Optional[datetime]:
        """
        Parse Last-Modified, clamping future server clocks to now.

        Args:
            header_value: Last-Modified header value

        Returns:
            UTC datetime, or None if unparseable
        """
        try:
            dt = parsedate_to_datetime(header_value)
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning(f"Failed to parse Last-Modified header '{header_value}': {e}")
            return None

        dt = dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)
        now = datetime.now(timezone.utc)
        return min(dt, now)

    def _extract_response_headers(self, response: httpx.Response) -> Tuple[Optional[str], Optional[datetime]]:
        etag = response.headers.get("ETag")
        last_modified_header = response.headers.get("Last-Modified")
        last_modified = self._parse_last_modified_header(last_modified_header) if last_modified_header else None
        return (etag.strip() if etag else None), last_modified

    @retry(
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.TimeoutException, httpx.NetworkError)),
        reraise=True
    )
    async def _fetch_with_retry(self, url: str, headers: Dict[str, str]) -> httpx.Response:
        """GET with exponential backoff on throttling, 5xx and network errors."""
        response = await self.client.get(url, headers=headers)

        if response.status_code in RETRYABLE_STATUS:
            logger.warning(f"Retryable HTTP {response.status_code} for {url}")
            response.raise_for_status()

        return response

    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[datetime] = None
    ) -> FetchResult:
        """
        Fetch and parse a feed.

        304 responses return no feed and keep the caller's cache headers.
        Errors are reported on the result, never raised.

        Args:
            url: Feed URL
            etag: Previous ETag value
            last_modified: Previous Last-Modified datetime

        Returns:
            FetchResult with status code, parsed feed, and updated headers
        """
        async with self.semaphore:
            return await self._fetch_internal(url, etag, last_modified)

    async def _fetch_internal(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[datetime] = None
    ) -> FetchResult:
        try:
            response = await self._fetch_with_retry(url, self._build_conditional_headers(etag, last_modified))
        except httpx.HTTPStatusError as e:
            return FetchResult(status_code=e.response.status_code, error=f"HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error(f"Request error fetching {url}: {e}")
            return FetchResult(status_code=0, error=f"Request error: {e}")

        if response.status_code == 304:
            logger.info(f"Feed not modified (304): {url}")
            return FetchResult(status_code=304, etag=etag, last_modified=last_modified)

        if response.status_code != 200:
            logger.error(f"HTTP error {response.status_code} for {url}")
            return FetchResult(status_code=response.status_code, error=f"HTTP {response.status_code}")

        response_etag, response_last_modified = self._extract_response_headers(response)
        if not response.text.strip():
            return FetchResult(
                status_code=200,
                etag=response_etag,
                last_modified=response_last_modified,
                error="Empty feed content"
            )

        feed = feedparser.parse(response.text)
        if feed.bozo and feed.get('bozo_exception'):
            logger.warning(f"Feed parsing warning for {url}: {feed.bozo_exception}")

        logger.info(f"Parsed {len(feed.entries)} entries from {url}")
        return FetchResult(
            status_code=200,
            feed=feed,
            etag=response_etag,
            last_modified=response_last_modified,
        )
