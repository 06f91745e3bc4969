"""Unit tests for HTML text extraction and link discovery."""

from sitekb.services.html_parser import extract_links, parse_html, parse_html_to_text

LONG_PARAGRAPH = "This paragraph carries the real content of the page. " * 6


class TestParseHtml:
    """Tests for readable text extraction."""

    def test_extracts_title_and_body_text(self) -> None:
        html = "<html><head><title> Pricing </title></head><body><p>Plans start at $10.</p></body></html>"

        page = parse_html(html)

        assert page.title == "Pricing"
        assert page.text == "Plans start at $10."

    def test_missing_title_is_none(self) -> None:
        assert parse_html("<html><body><p>text</p></body></html>").title is None

    def test_removes_boilerplate(self) -> None:
        html = """
        <html><body>
          <nav>Home | About</nav>
          <header>Site header</header>
          <script>var tracking = 1;</script>
          <div class="cookie-banner">We use cookies</div>
          <p>Visible content</p>
          <footer>Copyright</footer>
        </body></html>
        """

        text = parse_html_to_text(html)

        assert text == "Visible content"

    def test_block_elements_become_paragraphs(self) -> None:
        html = "<body><h1>Heading</h1><p>First</p><p>Second<br>line</p></body>"

        text = parse_html_to_text(html)

        assert text == "Heading\n\nFirst\n\nSecond\nline"

    def test_prefers_main_when_long_enough(self) -> None:
        html = f"<body><div>Sidebar promo</div><main><p>{LONG_PARAGRAPH}</p></main></body>"

        text = parse_html_to_text(html)

        assert "Sidebar promo" not in text
        assert text.startswith("This paragraph carries")

    def test_falls_back_to_body_when_main_is_short(self) -> None:
        html = "<body><main><p>Tiny</p></main><div>Other body text</div></body>"

        text = parse_html_to_text(html)

        assert "Tiny" in text
        assert "Other body text" in text

    def test_uses_article_when_main_missing(self) -> None:
        html = f"<body><div>Related links</div><article><p>{LONG_PARAGRAPH}</p></article></body>"

        text = parse_html_to_text(html)

        assert "Related links" not in text


class TestExtractLinks:
    """Tests for link discovery."""

    def test_resolves_relative_links(self) -> None:
        html = '<a href="/about">About</a><a href="team">Team</a><a href="https://other.com/x">X</a>'

        links = extract_links(html, "https://example.com/company/")

        assert links == [
            "https://example.com/about",
            "https://example.com/company/team",
            "https://other.com/x",
        ]

    def test_skips_non_http_links(self) -> None:
        html = '<a href="mailto:a@b.com">m</a><a href="javascript:void(0)">j</a><a href="tel:123">t</a><a href="">e</a>'

        assert extract_links(html, "https://example.com/") == []

    def test_respects_base_element(self) -> None:
        html = '<head><base href="https://example.com/docs/"></head><body><a href="intro">Intro</a></body>'

        assert extract_links(html, "https://example.com/") == ["https://example.com/docs/intro"]

    def test_deduplicates_in_document_order(self) -> None:
        html = '<a href="/b">1</a><a href="/a">2</a><a href="/b">3</a>'

        assert extract_links(html, "https://example.com/") == ["https://example.com/b", "https://example.com/a"]
