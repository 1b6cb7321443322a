"""Tests for HTML extraction and the thin-content fallback chain."""

from pipelines.extractor import (
    ExtractedContent,
    assemble_content,
    extract_content,
)

ARTICLE = " ".join([
    "Our return window is thirty days from the delivery date for every order placed online.",
    "Items must be unused, in their original packaging, and accompanied by the receipt.",
    "Refunds are issued to the original payment method within five business days of inspection.",
    "Shipping costs are not refundable unless the item arrived damaged or was sent in error.",
    "Contact the support team through the help centre to request a prepaid return label.",
])

PAGE = f"""
<html>
  <head>
    <title>  Returns &amp; Refunds </title>
    <meta name="description" content="How returns work at Acme.">
    <script>var tracking = "should never appear";</script>
    <style>.hidden {{ display: none; }}</style>
  </head>
  <body>
    <header><a href="/">Home</a></header>
    <nav><a href="/pricing">Pricing</a><a href="/contact">Contact</a></nav>
    <main>
      <h1>Returns policy</h1>
      <article><p>{ARTICLE}</p></article>
      <h2>Exchanges</h2>
    </main>
    <footer>Copyright Acme footer text</footer>
  </body>
</html>
"""


class TestExtractContent:

    def test_title_and_description(self):
        content = extract_content(PAGE, "https://acme.example/returns")
        assert content.title == "Returns & Refunds"
        assert content.description == "How returns work at Acme."

    def test_body_text_excludes_non_content(self):
        content = extract_content(PAGE, "https://acme.example/returns")
        assert "thirty days" in content.body_text
        assert "should never appear" not in content.body_text
        assert "display: none" not in content.body_text
        assert "footer text" not in content.body_text
        assert "\n" not in content.body_text

    def test_headings_collected(self):
        content = extract_content(PAGE)
        assert content.headings == ["Returns policy", "Exchanges"]

    def test_links_include_navigation(self):
        content = extract_content(PAGE)
        assert content.links == ["/", "/pricing", "/contact"]

    def test_og_title_fallback(self):
        html = '<html><head><meta property="og:title" content="Launch notes"></head><body></body></html>'
        assert extract_content(html).title == "Launch notes"

    def test_short_page_uses_body_text(self):
        html = "<html><body><div>Opening hours: 9 to 5</div></body></html>"
        content = extract_content(html)
        assert content.body_text == "Opening hours: 9 to 5"

    def test_empty_document(self):
        content = extract_content("")
        assert content.body_text == ""
        assert content.title is None
        assert content.links == []


class TestAssembleContent:

    def test_long_body_is_used_as_is(self):
        extracted = ExtractedContent(title="T", body_text="x" * 250)
        text, fallback = assemble_content(extracted, "https://a.example/", min_length=200)
        assert text == "x" * 250
        assert fallback is None

    def test_thin_body_is_enriched_with_metadata(self):
        extracted = ExtractedContent(
            title="Pricing", description="Plans for teams.",
            headings=["Starter", "Business"], body_text="Contact sales.",
        )
        text, fallback = assemble_content(extracted, "https://a.example/pricing", min_length=200)
        assert text == "Pricing Plans for teams. Starter Business Contact sales."
        assert fallback == "metadata"

    def test_rendered_text_used_when_nothing_else(self):
        text, fallback = assemble_content(
            ExtractedContent(), "https://a.example/app", rendered_text="  Rendered\n dashboard copy "
        )
        assert text == "Rendered dashboard copy"
        assert fallback == "rendered"

    def test_placeholder_mentions_url(self):
        text, fallback = assemble_content(ExtractedContent(), "https://a.example/blank")
        assert "https://a.example/blank" in text
        assert fallback == "placeholder"
