"""Sitemap discovery for seeding a domain crawl.

Reads ``Sitemap:`` directives from robots.txt, adds the well-known sitemap
locations, and walks sitemap indexes breadth-first. The number of sitemap
files fetched is capped; individual fetch or parse failures are logged and
skipped.
"""

import xml.etree.ElementTree as ET
from collections import deque
from urllib.parse import urlsplit

import httpx
import structlog

from sitekb.services.url_normalizer import is_same_domain, resolve_url

COMMON_SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/wp-sitemap.xml",
    "/index.php/sitemap_index.xml",
)

MAX_SITEMAPS_TO_FETCH = 50


class SitemapDiscoverer:
    """Resolves robots.txt and sitemap files into candidate page URLs.

    Accepts an ``httpx.AsyncClient`` via dependency injection so tests can
    supply a ``MockTransport``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_sitemaps: int = MAX_SITEMAPS_TO_FETCH,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if max_sitemaps < 1:
            raise ValueError("max_sitemaps must be at least 1")
        self._client = client
        self._max_sitemaps = max_sitemaps
        self._logger = logger or structlog.get_logger(__name__)

    async def discover(self, start_url: str, domain: str, enabled: bool = True) -> list[str]:
        """Collect same-domain page URLs from the site's sitemaps.

        Args:
            start_url: Root URL of the site; only its origin is used.
            domain: Hostname that discovered URLs must belong to.
            enabled: When False, discovery is skipped entirely.

        Returns:
            De-duplicated page URLs in discovery order.
        """
        if not enabled:
            return []

        origin = _origin(start_url)
        if origin is None:
            return []

        robots_sitemaps = await self._fetch_robots_sitemaps(origin, domain)
        candidates = list(dict.fromkeys([*robots_sitemaps, *(origin + path for path in COMMON_SITEMAP_PATHS)]))

        queue: deque[str] = deque(candidates)
        seen: set[str] = set()
        pages: dict[str, None] = {}

        while queue and len(seen) < self._max_sitemaps:
            sitemap_url = queue.popleft()
            if sitemap_url in seen:
                continue
            seen.add(sitemap_url)

            body = await self._fetch_text(sitemap_url)
            if body is None:
                continue

            try:
                nested, locs = _parse_sitemap(body)
            except ET.ParseError as exc:
                self._logger.warning("sitemap_parse_failed", url=sitemap_url, error=str(exc))
                continue

            if nested:
                for loc in nested:
                    resolved = resolve_url(sitemap_url, loc)
                    if resolved and is_same_domain(resolved, domain) and resolved not in seen:
                        queue.append(resolved)
                continue

            for loc in locs:
                resolved = resolve_url(sitemap_url, loc)
                if resolved and is_same_domain(resolved, domain):
                    pages.setdefault(resolved, None)

        if any(url not in seen for url in queue):
            self._logger.warning(
                "sitemap_limit_reached",
                domain=domain,
                max_sitemaps=self._max_sitemaps,
                pending=len(queue),
            )

        self._logger.info(
            "sitemap_discovery_completed",
            domain=domain,
            sitemaps_fetched=len(seen),
            page_count=len(pages),
        )
        return list(pages)

    async def _fetch_robots_sitemaps(self, origin: str, domain: str) -> list[str]:
        robots_url = f"{origin}/robots.txt"
        body = await self._fetch_text(robots_url)
        if body is None:
            return []

        found: list[str] = []
        for line in body.splitlines():
            key, sep, value = line.strip().partition(":")
            if not sep or key.strip().lower() != "sitemap":
                continue
            resolved = resolve_url(origin, value)
            if resolved and is_same_domain(resolved, domain):
                found.append(resolved)
        return found

    async def _fetch_text(self, url: str) -> str | None:
        try:
            response = await self._client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            self._logger.warning("sitemap_fetch_failed", url=url, error=str(exc))
            return None
        if not response.is_success:
            self._logger.debug("sitemap_fetch_skipped", url=url, status_code=response.status_code)
            return None
        return response.text


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _parse_sitemap(body: str) -> tuple[list[str], list[str]]:
    """Split a sitemap document into nested sitemap locations and page locations."""
    root = ET.fromstring(body.strip())
    nested: list[str] = []
    locs: list[str] = []
    for element in root.iter():
        if _local_name(element.tag) != "loc" or not element.text:
            continue
        locs.append(element.text.strip())
    for element in root.iter():
        if _local_name(element.tag) != "sitemap":
            continue
        for child in element:
            if _local_name(child.tag) == "loc" and child.text and child.text.strip():
                nested.append(child.text.strip())
    return nested, locs
