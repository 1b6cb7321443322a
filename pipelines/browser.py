"""Headless browser rendering for JavaScript-heavy pages.

One Chromium instance is launched lazily on first use and shared by every
page and job of the owning :class:`BrowserRenderer`. If the launch fails
(missing browser binary, sandbox restrictions) rendering is switched off
for the lifetime of the renderer and callers simply get ``None``.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import List, Optional

from playwright.async_api import async_playwright

logger = logging.getLogger(__name__)

_COLLECT_HREFS = "els => els.map(a => a.href).filter(Boolean)"


@dataclass
class RenderedPage:
    url: str
    text: str
    links: List[str] = field(default_factory=list)


class BrowserRenderer:
    """Lazily launched, process-wide Chromium used as the last fallback."""

    def __init__(self, enabled: bool = True, timeout: float = 15.0,
                 network_idle_grace: float = 1.5, max_concurrent_pages: int = 2):
        self.enabled = enabled
        self.timeout = timeout
        self.network_idle_grace = network_idle_grace
        self._init_lock = asyncio.Lock()
        self._page_semaphore = asyncio.Semaphore(max(1, max_concurrent_pages))
        self._playwright = None
        self._browser = None
        self._context = None

    @classmethod
    def from_settings(cls, settings) -> "BrowserRenderer":
        return cls(
            enabled=settings.browser_render_enabled,
            timeout=settings.browser_render_timeout,
            network_idle_grace=settings.browser_network_idle_grace,
        )

    @property
    def available(self) -> bool:
        return self.enabled

    async def _ensure_context(self):
        if not self.enabled:
            return None
        async with self._init_lock:
            if self._context is not None:
                return self._context
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=["--disable-gpu", "--no-sandbox"],
                )
                self._context = await self._browser.new_context()
                logger.info("Headless browser launched for rendering fallback")
            except Exception as e:
                self.enabled = False
                logger.warning(
                    f"Browser rendering unavailable, continuing without it: {e}. "
                    "Run `playwright install chromium` to enable it."
                )
                await self._teardown()
                return None
            return self._context

    async def render(self, url: str) -> Optional[RenderedPage]:
        """Render ``url`` and return its visible text and anchor hrefs, or None."""
        context = await self._ensure_context()
        if context is None:
            return None

        timeout_ms = int(self.timeout * 1000)
        async with self._page_semaphore:
            page = await context.new_page()
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                if self.network_idle_grace > 0:
                    # Best effort: busy pages never go idle, the DOM is usable anyway
                    with suppress(Exception):
                        await page.wait_for_load_state(
                            "networkidle", timeout=int(self.network_idle_grace * 1000)
                        )
                text = await page.inner_text("body", timeout=timeout_ms)
                links = await page.eval_on_selector_all("a[href]", _COLLECT_HREFS)
                return RenderedPage(url=url, text=text or "", links=list(links or []))
            except Exception as e:
                logger.debug(f"Browser render failed for {url}: {e}")
                return None
            finally:
                with suppress(Exception):
                    await page.close()

    async def _teardown(self):
        if self._context is not None:
            with suppress(Exception):
                await self._context.close()
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
        self._playwright = None
        self._browser = None
        self._context = None

    async def close(self):
        """Shut the browser down; only called when the owner is closing."""
        async with self._init_lock:
            await self._teardown()
