"""Page fetching escalation ladder.

Each rung is an :class:`ExtractionStrategy` returning a
:class:`StrategyResult`. :class:`PageFetcher` runs them in order and stops
at the first one that yields enough text:

1. ``http``: plain GET + HTML extraction (always on)
2. ``text_service``: document-to-text reader service (optional)
3. ``browser``: headless rendering (optional)

A non-2xx, non-HTML or timed-out plain fetch is a page failure, not a
reason to escalate.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from observability.logging import get_structured_logger
from .browser import BrowserRenderer
from .chunker import normalize_text
from .crawler import PageFetchError, SiteCrawler
from .extractor import ExtractedContent, assemble_content, extract_content

slog = get_structured_logger(__name__, component="page_fetcher")


@dataclass
class StrategyResult:
    """Outcome of one strategy on one URL."""
    strategy: str
    success: bool
    text: str = ""
    title: Optional[str] = None
    links: List[str] = field(default_factory=list)
    http_status: Optional[int] = None
    content_type: Optional[str] = None
    skip_reason: Optional[str] = None
    # Plain fetch refused the page outright (non-2xx, non-HTML, timeout)
    fatal: bool = False
    extracted: Optional[ExtractedContent] = None


@dataclass
class ExtractedPage:
    """Final text for a page, ready for chunking."""
    url: str
    title: Optional[str]
    content_text: str
    http_status: Optional[int]
    strategy: str
    fallback_used: Optional[str] = None


class ExtractionStrategy(ABC):
    name = "base"

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def extract(self, url: str) -> StrategyResult:
        """Try to produce page text for ``url``."""


class HttpStrategy(ExtractionStrategy):
    """Plain HTTP GET followed by HTML extraction."""

    name = "http"

    def __init__(self, crawler: SiteCrawler, min_content_length: int = 200):
        self.crawler = crawler
        self.min_content_length = min_content_length

    async def extract(self, url: str) -> StrategyResult:
        try:
            response = await self.crawler.fetch(url)
        except PageFetchError as e:
            return StrategyResult(self.name, False, skip_reason=str(e), fatal=True)

        if not response.ok:
            return StrategyResult(
                self.name, False, http_status=response.status,
                content_type=response.content_type,
                skip_reason=f"HTTP {response.status}", fatal=True,
            )
        if not response.is_html:
            return StrategyResult(
                self.name, False, http_status=response.status,
                content_type=response.content_type,
                skip_reason=f"Unsupported content-type: {response.content_type or 'unknown'}",
                fatal=True,
            )

        extracted = extract_content(response.body, url)
        long_enough = len(extracted.body_text) >= self.min_content_length
        return StrategyResult(
            self.name,
            success=long_enough,
            text=extracted.body_text,
            title=extracted.title,
            links=extracted.links,
            http_status=response.status,
            content_type=response.content_type,
            skip_reason=None if long_enough else "thin content",
            extracted=extracted,
        )


class TextServiceStrategy(ExtractionStrategy):
    """Reader-style service: ``GET {service_url}/{page_url}`` returns plain text."""

    name = "text_service"

    def __init__(self, crawler: SiteCrawler, service_url: str,
                 enabled: bool = True, min_content_length: int = 200):
        self.crawler = crawler
        self.service_url = service_url.rstrip("/")
        self._enabled = enabled
        self.min_content_length = min_content_length

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def extract(self, url: str) -> StrategyResult:
        try:
            response = await self.crawler.fetch(f"{self.service_url}/{url}")
        except PageFetchError as e:
            return StrategyResult(self.name, False, skip_reason=str(e))

        if not response.ok:
            return StrategyResult(
                self.name, False, http_status=response.status,
                content_type=response.content_type,
                skip_reason=f"text service returned HTTP {response.status}",
            )

        text = normalize_text(response.body)
        long_enough = len(text) >= self.min_content_length
        return StrategyResult(
            self.name,
            success=long_enough,
            text=text,
            http_status=response.status,
            content_type=response.content_type,
            skip_reason=None if long_enough else "thin content",
        )


class BrowserRenderStrategy(ExtractionStrategy):
    """Headless rendering for pages that build their content in JavaScript."""

    name = "browser"

    def __init__(self, renderer: BrowserRenderer, min_content_length: int = 200):
        self.renderer = renderer
        self.min_content_length = min_content_length

    @property
    def enabled(self) -> bool:
        return self.renderer.available

    async def extract(self, url: str) -> StrategyResult:
        rendered = await self.renderer.render(url)
        if rendered is None:
            return StrategyResult(self.name, False, skip_reason="rendering unavailable or failed")

        text = normalize_text(rendered.text)
        long_enough = len(text) >= self.min_content_length
        return StrategyResult(
            self.name,
            success=long_enough,
            text=text,
            links=rendered.links,
            skip_reason=None if long_enough else "thin content",
        )


class PageFetcher:
    """Runs the strategy ladder for one URL and assembles the stored text."""

    def __init__(self, strategies: Sequence[ExtractionStrategy], min_content_length: int = 200):
        if not strategies:
            raise ValueError("PageFetcher needs at least one strategy")
        self.strategies = list(strategies)
        self.min_content_length = min_content_length

    @classmethod
    def from_settings(cls, settings, crawler: SiteCrawler,
                      renderer: Optional[BrowserRenderer] = None) -> "PageFetcher":
        min_length = settings.min_content_length
        strategies: List[ExtractionStrategy] = [HttpStrategy(crawler, min_length)]
        strategies.append(TextServiceStrategy(
            crawler, settings.text_service_url,
            enabled=settings.text_service_enabled, min_content_length=min_length,
        ))
        if renderer is not None:
            strategies.append(BrowserRenderStrategy(renderer, min_length))
        return cls(strategies, min_content_length=min_length)

    def _log_attempt(self, url: str, result: StrategyResult, fallback_used: Optional[str] = None):
        slog.info(
            "Extraction attempt",
            url=url,
            strategy=result.strategy,
            success=result.success,
            http_status=result.http_status,
            content_type=result.content_type,
            extracted_length=len(result.text),
            fallback_used=fallback_used,
            skip_reason=result.skip_reason,
        )

    async def fetch_page(self, url: str) -> ExtractedPage:
        """Fetch and extract ``url``.

        Raises:
            PageFetchError: when the plain fetch fails, is non-2xx or non-HTML.
        """
        primary, *fallbacks = self.strategies
        first = await primary.extract(url)
        self._log_attempt(url, first)

        if first.fatal:
            reason = first.skip_reason or "fetch failed"
            message = reason if url in reason else f"{reason} for {url}"
            raise PageFetchError(message, http_status=first.http_status)

        if first.success:
            return ExtractedPage(url, first.title, first.text, first.http_status, first.strategy)

        best_alternative = ""
        for strategy in fallbacks:
            if not strategy.enabled:
                continue
            result = await strategy.extract(url)
            self._log_attempt(url, result, fallback_used=strategy.name)
            if result.success:
                return ExtractedPage(
                    url, first.title, result.text, first.http_status,
                    strategy.name, fallback_used=strategy.name,
                )
            if len(result.text) > len(best_alternative):
                best_alternative = result.text

        extracted = first.extracted or ExtractedContent(title=first.title, body_text=first.text)
        text, fallback = assemble_content(
            extracted, url, rendered_text=best_alternative, min_length=self.min_content_length
        )
        slog.info(
            "Assembled thin page content",
            url=url,
            strategy=primary.name,
            http_status=first.http_status,
            content_type=first.content_type,
            extracted_length=len(text),
            fallback_used=fallback,
            skip_reason="thin content",
        )
        return ExtractedPage(url, first.title, text, first.http_status, primary.name, fallback_used=fallback)
