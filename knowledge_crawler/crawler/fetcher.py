"""
Page fetcher with anti-blocking countermeasures and inline retry.
"""

import asyncio
import aiohttp
import logging
import random
import time
from typing import Awaitable, Callable, Optional, Dict, Tuple
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError

from .providers import ValueProvider, UserAgentGenerator


BROWSER_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    'Accept-Encoding': 'gzip, deflate, br',
    'Connection': 'keep-alive',
    'Cache-Control': 'max-age=0',
    'Upgrade-Insecure-Requests': '1',
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
    'Sec-Fetch-User': '?1',
    'Pragma': 'no-cache',
}

# "验证码" is the site's captcha prompt
BLOCK_MARKERS = ('验证码', 'blocked')


class FetchError(Exception):
    """Raised when a page cannot be fetched after all inline attempts."""

    def __init__(self, message: str, url: str, status_code: Optional[int] = None,
                 blocked: bool = False):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.blocked = blocked


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    content: str = ''
    headers: Optional[Dict[str, str]] = None
    attempts: int = 1
    fetch_time: float = 0.0


def is_blocked(content: str) -> bool:
    """Check a response body for captcha or block pages."""
    return any(marker in content for marker in BLOCK_MARKERS)


class WebFetcher:
    """
    Fetches pages one at a time with jitter, rotating identity headers and a
    bounded number of attempts.
    """

    def __init__(self, request_timeout: float = 10.0,
                 user_agent_provider: Optional[ValueProvider] = None,
                 cookie_provider: Optional[ValueProvider] = None,
                 referer: str = 'https://www.jiandanxinli.com/',
                 jitter_range: Tuple[float, float] = (2.0, 5.0),
                 max_attempts: int = 3,
                 retry_delay: float = 5.0,
                 session: Optional[ClientSession] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.request_timeout = request_timeout
        self.user_agent_provider = user_agent_provider or UserAgentGenerator()
        self.cookie_provider = cookie_provider
        self.referer = referer
        self.jitter_range = jitter_range
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self.logger = logging.getLogger(__name__)
        self.session = session
        self._owns_session = session is None
        self.sleep = sleep

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'blocked_responses': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(
                    limit=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self._owns_session = True
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    def jitter_delay(self) -> float:
        """Sample a pre-request wait in [low, high)."""
        low, high = self.jitter_range
        return low + random.random() * (high - low)

    def build_headers(self) -> Dict[str, str]:
        """Headers for one attempt: browser defaults plus rotated identity."""
        headers = dict(BROWSER_HEADERS)
        headers['User-Agent'] = self.user_agent_provider.next()
        if self.cookie_provider is not None:
            headers['Cookie'] = self.cookie_provider.next()
        headers['Referer'] = self.referer
        return headers

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult for any response with status below 500

        Raises:
            FetchError: when every attempt failed
        """
        if self.session is None:
            await self.start()

        start_time = time.time()
        last_error: Optional[FetchError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._fetch_once(url)
                result.attempts = attempt
                result.fetch_time = time.time() - start_time
                return result
            except FetchError as e:
                last_error = e
                if attempt < self.max_attempts:
                    self.logger.warning(f"Retrying {attempt}/{self.max_attempts} for {url}: {e}")
                    await self.sleep(self.retry_delay)

        self.logger.error(f"Giving up on {url} after {self.max_attempts} attempts: {last_error}")
        raise FetchError(
            f"Failed to fetch {url} after {self.max_attempts} attempts: {last_error}",
            url=url,
            status_code=last_error.status_code,
            blocked=last_error.blocked
        ) from last_error

    async def _fetch_once(self, url: str) -> FetchResult:
        """Perform one attempt, raising FetchError on any failure."""
        await self.sleep(self.jitter_delay())
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(
                url,
                headers=self.build_headers(),
                timeout=ClientTimeout(total=self.request_timeout)
            ) as response:
                if response.status >= 500:
                    self.stats['failed_requests'] += 1
                    raise FetchError(f"Server error {response.status}", url=url,
                                     status_code=response.status)

                content = await self._read_content_safely(response)
                headers = dict(response.headers)

        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            raise FetchError("Request timeout", url=url) from e

        except ClientError as e:
            self.stats['failed_requests'] += 1
            raise FetchError(f"Client error: {e}", url=url) from e

        if is_blocked(content):
            self.stats['blocked_responses'] += 1
            raise FetchError("Blocked or captcha required", url=url,
                             status_code=response.status, blocked=True)

        self.stats['successful_requests'] += 1
        self.stats['total_bytes_downloaded'] += len(content)
        self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} chars)")

        return FetchResult(
            url=url,
            status_code=response.status,
            content=content,
            headers=headers
        )

    async def _read_content_safely(self, response, max_size: int = 10 * 1024 * 1024) -> str:
        """
        Read response content with a size limit.

        Args:
            response: aiohttp response object
            max_size: Maximum content size in bytes (default 10MB)

        Returns:
            Decoded content, truncated at max_size
        """
        content_bytes = b''
        truncated = False
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > max_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                content_bytes = content_bytes[:max_size]
                truncated = True
                break

        encoding = response.charset or 'utf-8'
        try:
            # the cut may split a multi-byte character
            return content_bytes.decode(encoding, errors='ignore' if truncated else 'strict')
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'gb18030']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue

            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
