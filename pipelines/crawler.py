"""Site crawler for SiteFoundry.

Plain-HTTP fetching with a fixed user agent plus page discovery:
caller seeds, then ``/sitemap.xml``, then a breadth-first walk of
same-host links bounded by the page cap.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional

import aiohttp

from .browser import BrowserRenderer
from .urls import (
    CrawlFrontier,
    extract_links,
    extract_loc_tags,
    filter_links,
    hostname_of,
    is_same_host,
    normalize_url,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SiteFoundryBot/1.0 (+https://sitefoundry.dev/bot)"
ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
MAX_PAGES_CEILING = 200


class PageFetchError(Exception):
    """A page could not be fetched or is not usable HTML."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


@dataclass
class FetchResult:
    """Raw HTTP response of a single GET."""
    url: str
    status: int
    content_type: str
    body: str
    final_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        return "text/html" in self.content_type.lower()


class SiteCrawler:
    """Asynchronous fetcher and page discoverer for a single website."""

    def __init__(self,
                 fetch_timeout: float = 12.0,
                 user_agent: str = DEFAULT_USER_AGENT,
                 max_pages_ceiling: int = MAX_PAGES_CEILING,
                 max_connections: int = 16,
                 renderer: Optional[BrowserRenderer] = None):
        """Initialize crawler.

        Args:
            fetch_timeout: Total timeout per request in seconds
            user_agent: User agent sent with every request
            max_pages_ceiling: Hard cap on discovered pages regardless of caller input
            max_connections: Connection pool size
            renderer: Optional browser used when a page yields no links
        """
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent
        self.max_pages_ceiling = max_pages_ceiling
        self.max_connections = max_connections
        self.renderer = renderer
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings, renderer: Optional[BrowserRenderer] = None) -> "SiteCrawler":
        return cls(
            fetch_timeout=settings.fetch_timeout,
            user_agent=settings.user_agent,
            max_pages_ceiling=settings.max_pages_ceiling,
            renderer=renderer,
        )

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_connections)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.fetch_timeout),
                headers={'User-Agent': self.user_agent, 'Accept': ACCEPT_HEADER}
            )
        return self.session

    async def close(self):
        """Close the crawler session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str) -> FetchResult:
        """GET ``url`` following redirects.

        Raises:
            PageFetchError: on timeout or connection failure.
        """
        session = await self._get_session()
        try:
            async with session.get(url, allow_redirects=True) as response:
                body = await response.text(errors="replace")
                return FetchResult(
                    url=url,
                    status=response.status,
                    content_type=response.headers.get('Content-Type', ''),
                    body=body,
                    final_url=str(response.url),
                )
        except asyncio.TimeoutError as e:
            raise PageFetchError(f"Timed out after {self.fetch_timeout:g}s fetching {url}") from e
        except aiohttp.ClientError as e:
            raise PageFetchError(f"Request failed for {url}: {e}") from e

    def page_cap(self, max_pages: int) -> int:
        return max(1, min(max_pages, self.max_pages_ceiling))

    async def fetch_sitemap_urls(self, root_url: str) -> List[str]:
        """``<loc>`` entries of ``/sitemap.xml``, or an empty list when unreachable."""
        sitemap_url = normalize_url("/sitemap.xml", root_url)
        if not sitemap_url:
            return []
        try:
            result = await self.fetch(sitemap_url)
        except PageFetchError as e:
            logger.debug(f"Sitemap unavailable at {sitemap_url}: {e}")
            return []
        if not result.ok:
            logger.debug(f"Sitemap unavailable at {sitemap_url}: HTTP {result.status}")
            return []
        return extract_loc_tags(result.body)

    async def discover_links(self, page_url: str, root_host: str) -> List[str]:
        """Crawlable same-host links of one page, rendering it when plain HTML has none."""
        links: List[str] = []
        try:
            result = await self.fetch(page_url)
            if result.ok and result.is_html:
                links = extract_links(result.body, page_url, root_host)
            else:
                logger.debug(f"Skipping links of {page_url}: HTTP {result.status} {result.content_type}")
        except PageFetchError as e:
            logger.debug(f"Link discovery failed for {page_url}: {e}")

        if not links and self.renderer is not None and self.renderer.available:
            rendered = await self.renderer.render(page_url)
            if rendered is not None:
                links = filter_links(rendered.links, page_url, root_host)
                logger.debug(f"Rendered {page_url} for link discovery: {len(links)} links")
        return links

    async def discover(self, website_url: str, max_pages: int,
                       seed_urls: Optional[Iterable[str]] = None) -> List[str]:
        """Return the URLs to crawl for ``website_url``.

        Seeds and sitemap entries win; the breadth-first walk only runs
        when both are empty.

        Raises:
            ValueError: if ``website_url`` is not a usable http(s) URL.
        """
        root_url = normalize_url(website_url)
        if not root_url:
            raise ValueError(f"Invalid website URL: {website_url!r}")
        root_host = hostname_of(root_url)

        frontier = CrawlFrontier(self.page_cap(max_pages))

        for seed in seed_urls or []:
            url = normalize_url(seed, root_url)
            if url and is_same_host(url, root_host):
                frontier.add(url)

        for loc in await self.fetch_sitemap_urls(root_url):
            if frontier.is_full:
                break
            url = normalize_url(loc)
            if url and is_same_host(url, root_host):
                frontier.add(url)

        if len(frontier):
            logger.info(f"Discovered {len(frontier)} URLs for {root_url} from seeds/sitemap")
            return frontier.urls()

        frontier.add(root_url)
        queue = deque([root_url])
        visited = set()

        while queue and not frontier.is_full:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            for link in await self.discover_links(current, root_host):
                if frontier.add(link):
                    queue.append(link)
                if frontier.is_full:
                    break

        logger.info(f"Discovered {len(frontier)} URLs for {root_url} by link traversal")
        return frontier.urls()
