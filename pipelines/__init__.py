"""Pipelines package for SiteFoundry.

Provides URL handling, crawling, content extraction, the fetch fallback
ladder and chunking.
"""

from .urls import CrawlFrontier, normalize_url, should_skip_url, hostname_of, is_same_host
from .crawler import SiteCrawler, FetchResult, PageFetchError
from .browser import BrowserRenderer, RenderedPage
from .extractor import ExtractedContent, extract_content, assemble_content
from .strategies import (
    ExtractionStrategy,
    StrategyResult,
    ExtractedPage,
    HttpStrategy,
    TextServiceStrategy,
    BrowserRenderStrategy,
    PageFetcher,
)
from .chunker import TextChunk, chunk_text, merge_chunks, normalize_text

__all__ = [
    # URLs
    'CrawlFrontier',
    'normalize_url',
    'should_skip_url',
    'hostname_of',
    'is_same_host',

    # Crawler
    'SiteCrawler',
    'FetchResult',
    'PageFetchError',
    'BrowserRenderer',
    'RenderedPage',

    # Extraction
    'ExtractedContent',
    'extract_content',
    'assemble_content',
    'ExtractionStrategy',
    'StrategyResult',
    'ExtractedPage',
    'HttpStrategy',
    'TextServiceStrategy',
    'BrowserRenderStrategy',
    'PageFetcher',

    # Chunker
    'TextChunk',
    'chunk_text',
    'merge_chunks',
    'normalize_text',
]
