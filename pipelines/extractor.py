"""HTML content extraction for SiteFoundry.

Main text comes from trafilatura; when it finds nothing usable the
stripped ``<body>`` text is used instead. :func:`assemble_content`
guarantees a non-empty payload for every page.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup
from trafilatura import extract

from .chunker import normalize_text

logger = logging.getLogger(__name__)

NON_CONTENT_SELECTOR = "script, style, nav, footer, header, aside, noscript, svg, iframe, form"
MIN_MAIN_TEXT_CHARS = 40

PLACEHOLDER_TEMPLATE = "No textual content could be extracted from {url}."


@dataclass
class ExtractedContent:
    title: Optional[str] = None
    description: Optional[str] = None
    headings: List[str] = field(default_factory=list)
    body_text: str = ""
    links: List[str] = field(default_factory=list)


def extract_content(html: str, url: Optional[str] = None) -> ExtractedContent:
    """Pull title, description, headings, body text and raw hrefs from ``html``."""
    soup = BeautifulSoup(html or "", "html.parser")

    # Links first: navigation is stripped below but is where most links live
    links = [a["href"] for a in soup.find_all("a", href=True)]

    title = None
    if soup.title and soup.title.get_text(strip=True):
        title = normalize_text(soup.title.get_text())
    else:
        og_title = soup.find("meta", attrs={"property": "og:title"})
        if og_title and og_title.get("content"):
            title = normalize_text(og_title["content"])

    description = None
    meta = soup.find("meta", attrs={"name": "description"}) or \
        soup.find("meta", attrs={"property": "og:description"})
    if meta and meta.get("content"):
        description = normalize_text(meta["content"]) or None

    for element in soup.select(NON_CONTENT_SELECTOR):
        element.decompose()

    headings = [
        text for text in (normalize_text(h.get_text(" ")) for h in soup.find_all(["h1", "h2", "h3"]))
        if text
    ]

    body_text = ""
    try:
        body_text = normalize_text(extract(html, url=url, include_comments=False) or "")
    except Exception as e:
        logger.debug(f"trafilatura failed on {url}: {e}")

    if len(body_text) < MIN_MAIN_TEXT_CHARS:
        body = soup.body or soup
        fallback = normalize_text(body.get_text(" "))
        if len(fallback) > len(body_text):
            body_text = fallback

    return ExtractedContent(
        title=title,
        description=description,
        headings=headings,
        body_text=body_text,
        links=links,
    )


def assemble_content(extracted: ExtractedContent, url: str,
                     rendered_text: Optional[str] = None,
                     min_length: int = 200) -> Tuple[str, Optional[str]]:
    """Build the text stored for a page.

    Returns the text and the name of the fallback that produced it
    (``None`` when the body text was long enough on its own).
    """
    body = normalize_text(extracted.body_text)
    if body and len(body) >= min_length:
        return body, None

    parts: List[str] = []
    for part in [extracted.title, extracted.description, *extracted.headings, body]:
        part = normalize_text(part or "")
        if part and part not in parts:
            parts.append(part)
    enriched = " ".join(parts)
    if enriched:
        return enriched, "metadata"

    rendered = normalize_text(rendered_text or "")
    if rendered:
        return rendered, "rendered"

    return PLACEHOLDER_TEMPLATE.format(url=url), "placeholder"
