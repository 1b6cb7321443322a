"""URL canonicalization and crawl frontier for SiteFoundry.

Every URL the crawler touches passes through :func:`normalize_url` so that
deduplication works on a single canonical form: absolute, http(s) only,
no fragment, no query string, no trailing slash except on the root path.
"""

import re
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

BLOCKED_PATH_FRAGMENTS = (
    "/wp-admin",
    "/account",
    "/checkout",
    "/cart",
    "/login",
    "/signup",
    "/auth",
    "/admin",
)

SKIPPED_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp",
    ".css", ".js", ".ico",
    ".woff", ".woff2", ".ttf",
    ".zip", ".mp4", ".mp3",
    ".xml",
)

_LOC_PATTERN = re.compile(r"<loc>(.*?)</loc>", re.IGNORECASE | re.DOTALL)


def normalize_url(raw: str, base: Optional[str] = None) -> Optional[str]:
    """Return the canonical absolute form of ``raw`` or None if it is unusable."""
    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate:
        return None

    try:
        absolute = urljoin(base, candidate) if base else candidate
        parts = urlsplit(absolute)
        # Accessing .port validates it and raises ValueError when malformed
        parts.port
    except ValueError:
        return None

    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))


def hostname_of(url: str) -> str:
    """Lower-cased hostname of ``url`` or an empty string."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_same_host(url: str, host: str) -> bool:
    """Exact hostname comparison; subdomains count as different hosts."""
    return bool(host) and hostname_of(url) == host.lower()


def should_skip_url(url: str) -> bool:
    """True for admin/auth/commerce paths and non-HTML resources.

    Only the path is inspected; a host like ``cartier.com`` is not a cart.
    """
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return True
    if any(fragment in path for fragment in BLOCKED_PATH_FRAGMENTS):
        return True
    return path.endswith(SKIPPED_EXTENSIONS)


def extract_loc_tags(xml: str) -> List[str]:
    """All ``<loc>`` values of a sitemap document, in document order."""
    return [match.strip() for match in _LOC_PATTERN.findall(xml or "") if match.strip()]


def filter_links(hrefs: Iterable[str], page_url: str, root_host: str) -> List[str]:
    """Normalize ``hrefs`` against ``page_url`` and keep crawlable same-host URLs."""
    links: List[str] = []
    seen = set()
    for href in hrefs:
        if not href:
            continue
        normalized = normalize_url(href, page_url)
        if not normalized or normalized in seen:
            continue
        if not is_same_host(normalized, root_host) or should_skip_url(normalized):
            continue
        seen.add(normalized)
        links.append(normalized)
    return links


def extract_links(html: str, page_url: str, root_host: str) -> List[str]:
    """Same-host crawlable links found in the anchors of ``html``."""
    soup = BeautifulSoup(html, "html.parser")
    hrefs = [a.get("href") for a in soup.find_all("a", href=True)]
    return filter_links(hrefs, page_url, root_host)


class CrawlFrontier:
    """Ordered, de-duplicating URL set bounded by a page cap."""

    def __init__(self, max_pages: int):
        self.max_pages = max(1, max_pages)
        self._urls: List[str] = []
        self._seen = set()

    def __len__(self) -> int:
        return len(self._urls)

    def __contains__(self, url: str) -> bool:
        return url in self._seen

    @property
    def is_full(self) -> bool:
        return len(self._urls) >= self.max_pages

    def add(self, url: Optional[str]) -> bool:
        """Accept ``url`` unless it is empty, skipped, already known or over the cap."""
        if not url or self.is_full or url in self._seen or should_skip_url(url):
            return False
        self._seen.add(url)
        self._urls.append(url)
        return True

    def urls(self) -> List[str]:
        return list(self._urls)
