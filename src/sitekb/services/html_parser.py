"""HTML to text extraction and link discovery for crawled pages."""

from dataclasses import dataclass

from bs4 import BeautifulSoup

from sitekb.services.text_cleaning import clean_text
from sitekb.services.url_normalizer import resolve_url

BOILERPLATE_SELECTORS = (
    "script",
    "style",
    "noscript",
    "svg",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "iframe",
    ".cookie-banner",
    ".cookie-banner__wrapper",
    '[id*="cookie"]',
    '[class*="cookie"]',
    '[id*="banner"]',
    '[class*="banner"]',
    '[role="navigation"]',
    '[aria-label="Breadcrumb"]',
)

BLOCK_TAGS = (
    "p",
    "div",
    "section",
    "article",
    "main",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "li",
    "ul",
    "ol",
    "table",
    "tr",
    "blockquote",
    "pre",
    "dd",
    "dt",
)

MIN_MAIN_CONTENT_CHARS = 200


@dataclass(frozen=True)
class ParsedPage:
    title: str | None
    text: str


def parse_html(html: str) -> ParsedPage:
    """Extract the readable text and title of an HTML page.

    Boilerplate (navigation, banners, forms, scripts) is removed first. The
    ``<main>`` element is preferred, then ``<article>``, then the whole body,
    taking the first candidate with at least 200 characters of text.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None

    for selector in BOILERPLATE_SELECTORS:
        for element in soup.select(selector):
            element.decompose()

    for tag in soup.find_all(BLOCK_TAGS):
        tag.append("\n\n")
    for br in soup.find_all("br"):
        br.replace_with("\n")

    text = ""
    for candidate in (soup.find("main"), soup.find("article")):
        if candidate is None:
            continue
        text = clean_text(candidate.get_text())
        if len(text) >= MIN_MAIN_CONTENT_CHARS:
            return ParsedPage(title=title or None, text=text)

    root = soup.body or soup
    return ParsedPage(title=title or None, text=clean_text(root.get_text()))


def parse_html_to_text(html: str) -> str:
    return parse_html(html).text


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute http(s) links found in ``<a href>`` elements, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    base = soup.find("base", href=True)
    effective_base = resolve_url(base_url, base["href"]) if base else None
    effective_base = effective_base or base_url

    links: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        resolved = resolve_url(effective_base, anchor["href"])
        if resolved:
            links.setdefault(resolved, None)
    return list(links)
