"""Tests for URL canonicalization, filtering and the crawl frontier."""

import pytest

from pipelines.urls import (
    CrawlFrontier,
    extract_links,
    extract_loc_tags,
    hostname_of,
    is_same_host,
    normalize_url,
    should_skip_url,
)


class TestNormalizeUrl:

    def test_strips_fragment_and_query(self):
        assert normalize_url("https://example.com/docs/page?x=1#top") == "https://example.com/docs/page"

    def test_strips_trailing_slash_except_root(self):
        assert normalize_url("https://example.com/docs/") == "https://example.com/docs"
        assert normalize_url("https://example.com/") == "https://example.com/"
        assert normalize_url("https://example.com") == "https://example.com/"

    def test_resolves_relative_against_base(self):
        assert normalize_url("../pricing", "https://example.com/docs/intro") == "https://example.com/pricing"
        assert normalize_url("/about/", "https://example.com/docs") == "https://example.com/about"

    def test_lowercases_scheme_and_host(self):
        assert normalize_url("HTTPS://Example.COM/Path") == "https://example.com/Path"

    @pytest.mark.parametrize("raw", ["", "   ", "not a url", "mailto:hi@example.com",
                                     "javascript:void(0)", "ftp://example.com/file",
                                     "http://example.com:notaport/"])
    def test_unusable_urls_return_none(self, raw):
        assert normalize_url(raw) is None


class TestFiltering:

    @pytest.mark.parametrize("url", [
        "https://example.com/wp-admin/options",
        "https://example.com/account/settings",
        "https://example.com/checkout",
        "https://example.com/cart",
        "https://example.com/login",
        "https://example.com/signup",
        "https://example.com/auth/callback",
        "https://example.com/admin",
        "https://example.com/files/report.PDF",
        "https://example.com/logo.png",
        "https://example.com/static/app.js",
        "https://example.com/fonts/inter.woff2",
        "https://example.com/media/intro.mp4",
        "https://x.com/cart",
        "https://example.com/sitemap-posts.xml",
    ])
    def test_blocked_urls_are_skipped(self, url):
        assert should_skip_url(url)

    @pytest.mark.parametrize("url", [
        "https://example.com/",
        "https://example.com/pricing",
        "https://example.com/blog/javascript-tips",
        "https://example.com/docs/page.html",
        "https://cartier.com/",
        "https://accountingtoday.com/news",
        "https://admin-tools.example/guide",
        "https://example.com/blog/tips?next=/admin",
    ])
    def test_content_urls_are_kept(self, url):
        assert not should_skip_url(url)

    def test_same_host_is_exact(self):
        assert hostname_of("https://Example.com/a") == "example.com"
        assert is_same_host("https://example.com/a", "example.com")
        assert not is_same_host("https://blog.example.com/a", "example.com")
        assert not is_same_host("https://other.org/a", "example.com")


def test_extract_loc_tags_handles_whitespace_and_case():
    xml = """<?xml version="1.0"?>
    <urlset>
      <url><LOC> https://example.com/a </LOC></url>
      <url><loc>https://example.com/b</loc></url>
      <url><loc>
        https://example.com/c
      </loc></url>
      <url><loc></loc></url>
    </urlset>"""
    assert extract_loc_tags(xml) == [
        "https://example.com/a",
        "https://example.com/b",
        "https://example.com/c",
    ]


def test_extract_links_filters_and_dedupes():
    html = """
    <nav><a href="/pricing">Pricing</a></nav>
    <a href="/pricing#plans">Plans</a>
    <a href="docs/?page=2">Docs</a>
    <a href="https://blog.example.com/post">Blog</a>
    <a href="https://other.org/">Other</a>
    <a href="/login">Login</a>
    <a href="/brochure.pdf">PDF</a>
    <a href="mailto:team@example.com">Mail</a>
    <a>No href</a>
    """
    links = extract_links(html, "https://example.com/", "example.com")
    assert links == ["https://example.com/pricing", "https://example.com/docs"]


class TestCrawlFrontier:

    def test_dedupes_and_preserves_order(self):
        frontier = CrawlFrontier(max_pages=10)
        assert frontier.add("https://example.com/a")
        assert frontier.add("https://example.com/b")
        assert not frontier.add("https://example.com/a")
        assert frontier.urls() == ["https://example.com/a", "https://example.com/b"]
        assert "https://example.com/b" in frontier

    def test_respects_cap(self):
        frontier = CrawlFrontier(max_pages=2)
        frontier.add("https://example.com/a")
        frontier.add("https://example.com/b")
        assert frontier.is_full
        assert not frontier.add("https://example.com/c")
        assert len(frontier) == 2

    def test_rejects_skipped_and_empty(self):
        frontier = CrawlFrontier(max_pages=5)
        assert not frontier.add(None)
        assert not frontier.add("https://example.com/admin")
        assert len(frontier) == 0

    def test_cap_is_at_least_one(self):
        assert CrawlFrontier(max_pages=0).max_pages == 1

    def test_host_named_like_blocked_path_is_accepted(self):
        frontier = CrawlFrontier(max_pages=5)
        assert frontier.add("https://cartier.com/")
        assert frontier.add("https://cartier.com/watches")
        assert not frontier.add("https://cartier.com/cart")
